"""Runnable snippets showing how to build, train and save a recurrent network."""

import logging
import tempfile
from pathlib import Path

import numpy as np

from seqgraph import MinibatchLayout, Network, SGDTrainer
from seqgraph.data import ArraySequenceEnumerator, EpochConfiguration, pack
from seqgraph.engine.frontend import graph
from seqgraph.engine.numpybackend import executor

logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")

# ---------------------------------------------------------------------------
# Engine layer: a feed-forward graph
# ---------------------------------------------------------------------------

net = Network()
x = net.new("InputValue", 2, name="x")
W = net.new("LearnableParameter", 1, 2, init=np.array([[2.0, 1.0]]), name="W")
y = net.new("SumElements", net.new("Times", W, x, name="wx"), name="y")

state = executor.State(plan=net.compile(y))
layout = MinibatchLayout.from_lengths([2, 1])

# Column t * S + s holds sample t of sequence s; column 3 is padding
feeds = {"x": np.array([[1.0, 2.0, 3.0, 99.0], [1.0, 1.0, 1.0, 99.0]])}
value = executor.forward(state, layout, feeds, training=False)

# 2*1+1 + 2*2+1 + 2*3+1, the padding column does not count
assert float(value[0, 0]) == 15.0


# ---------------------------------------------------------------------------
# Recurrent loops: h_t = tanh(W x_t + U h_{t-1})
# ---------------------------------------------------------------------------

rng = np.random.default_rng(0)
net = Network()
x = net.new("InputValue", 2, name="features")
target = net.new("InputValue", 1, name="labels")
W = net.new("LearnableParameter", 4, 2, init=0.3 * rng.normal(size=(4, 2)), name="W")
U = net.new("LearnableParameter", 4, 4, init=0.3 * rng.normal(size=(4, 4)), name="U")
V = net.new("LearnableParameter", 1, 4, init=0.3 * rng.normal(size=(1, 4)), name="V")
h_prev = net.new("PastValue", None, rows=4, initial_value=0.0, name="h_prev")
h = net.new(
    "Tanh",
    net.new("Plus", net.new("Times", W, x, name="wx"), net.new("Times", U, h_prev, name="uh"), name="pre"),
    name="h",
)
h_prev.set_input(0, h)
loss = net.new("SquareError", net.new("Times", V, h, name="y"), target, name="loss")

plan = net.compile(loss)
print(plan)
print("")
print(net.describe())
print("")

# ---------------------------------------------------------------------------
# Training: learn the running sum of the first feature
# ---------------------------------------------------------------------------

features, labels = [], []
for _ in range(32):
    sequence = rng.normal(size=(int(rng.integers(2, 6)), 2))
    features.append(sequence)
    labels.append(0.5 * np.cumsum(sequence[:, :1], axis=0))

trainer = SGDTrainer(net, loss, {"features": x, "labels": target}, learning_rate=0.05)
enumerator = ArraySequenceEnumerator({"features": features, "labels": labels})
summaries = [
    trainer.train_epoch(enumerator, EpochConfiguration(epoch_index=epoch, minibatch_size=16))
    for epoch in range(20)
]
assert summaries[-1].loss_per_sample < summaries[0].loss_per_sample

# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

with tempfile.TemporaryDirectory() as tmpdir:
    path = Path(tmpdir) / "model.bin"
    net.save(path)
    loaded = Network.load(path)

layout, matrix = pack(features[:4])
_, expected = pack(labels[:4])
feeds = {"features": matrix, "labels": expected}

original = trainer.evaluate(layout, feeds)
state = executor.State(plan=loaded.compile(loaded.node("loss")))
restored = executor.forward(state, layout, feeds, training=False)
np.testing.assert_allclose(restored[0, 0], original)

# ---------------------------------------------------------------------------
# Debugging: trace a single node
# ---------------------------------------------------------------------------

graph.tracepoint(loaded.node("y"))
executor.forward(state, layout, feeds, training=False)
