"""Tests for the seqgraph.engine.numpybackend.operators module."""

# SPDX-License-Identifier: Apache-2.0

import numpy as np
import pytest

from seqgraph.engine.errors import LogicInvariantViolation
from seqgraph.engine.frontend import graph, linearize, network
from seqgraph.engine.layout import CellFlags, FrameRange, MinibatchLayout
from seqgraph.engine.numpybackend import executor, operators


def _compile(root):
    net = network.Network()
    for node in linearize.enumerate_order(root):
        net.add(node)
    return executor.State(plan=net.compile(root))


def _check_gradients(build, *shapes, trainable=None, inits=None, seed=4):
    """Compare the backward sweep against central finite differences."""
    rng = np.random.default_rng(seed)
    trainable = trainable or [True] * len(shapes)
    inits = inits or [None] * len(shapes)
    params = [
        graph.learnable_parameter(
            rows,
            cols,
            init=rng.normal(size=(rows, cols)) if init is None else init,
            parameter_update_required=flag,
        )
        for (rows, cols), flag, init in zip(shapes, trainable, inits)
    ]
    root = graph.sum_elements(build(*params))
    state = _compile(root)
    layout = MinibatchLayout(1, 1)

    executor.forward(state, layout)
    executor.backward(state, root)
    analytic = [None if p.gradient is None else p.gradient.copy() for p in params]

    eps = 1e-6
    for param, gradient in zip(params, analytic):
        if gradient is None:
            continue
        numeric = np.zeros_like(gradient)
        for index in np.ndindex(*param.value.shape):
            saved = param.value[index]
            param.value[index] = saved + eps
            upper = float(executor.forward(state, layout, training=False)[0, 0])
            param.value[index] = saved - eps
            lower = float(executor.forward(state, layout, training=False)[0, 0])
            param.value[index] = saved
            numeric[index] = (upper - lower) / (2 * eps)
        assert np.allclose(gradient, numeric, rtol=1e-5, atol=1e-6), param.name

    return params, root


@pytest.mark.parametrize(
    "build,shapes",
    [
        (graph.plus, [(3, 4), (3, 4)]),
        (graph.minus, [(3, 4), (3, 4)]),
        (graph.element_times, [(3, 4), (3, 4)]),
        (graph.times, [(3, 2), (2, 4)]),
        (graph.tanh, [(3, 4)]),
        (graph.sigmoid, [(3, 4)]),
        (graph.square_error, [(3, 4), (3, 4)]),
    ],
)
def test_gradients(build, shapes):
    """Test the gradient kernels of the standard kinds."""
    _check_gradients(build, *shapes)


# Each column of the labels is a distribution
_LABELS = np.array(
    [
        [1.0, 0.0, 0.2, 0.0],
        [0.0, 0.0, 0.5, 0.0],
        [0.0, 1.0, 0.3, 1.0],
    ]
)


def test_cross_entropy_gradient():
    """Test the gradients of cross entropy with respect to both inputs."""
    _check_gradients(graph.cross_entropy_with_softmax, (3, 4), (3, 4), inits=[_LABELS.copy(), None])


def test_broadcast_gradient():
    """Test that the gradient of a broadcast input sums over the columns."""
    params, _ = _check_gradients(lambda x, b: graph.tanh(graph.minus(x, b)), (3, 4), (3, 1))
    assert params[1].gradient.shape == (3, 1)


def test_frozen_input_gets_no_gradient():
    """Test that inputs not needing a gradient are left alone."""
    params, _ = _check_gradients(
        graph.cross_entropy_with_softmax,
        (3, 4),
        (3, 4),
        trainable=[False, True],
        inits=[_LABELS.copy(), None],
    )
    assert params[0].gradient is None


def test_forward_values():
    """Test the forward kernels against NumPy."""
    a = graph.learnable_parameter(2, 2, init=np.array([[1.0, -2.0], [0.5, 3.0]]))
    b = graph.learnable_parameter(2, 2, init=np.array([[2.0, 1.0], [-1.0, 0.0]]))
    for node, expected in (
        (graph.plus(a, b), a.value + b.value),
        (graph.minus(a, b), a.value - b.value),
        (graph.element_times(a, b), a.value * b.value),
        (graph.times(a, b), a.value @ b.value),
        (graph.tanh(a), np.tanh(a.value)),
        (graph.sigmoid(a), 1.0 / (1.0 + np.exp(-a.value))),
    ):
        node.validate(True)
        operators.evaluate_forward(node)
        assert np.allclose(node.value, expected)

    loss = graph.square_error(a, b)
    loss.validate(True)
    loss.transients["diff"] = np.zeros((2, 2))
    operators.evaluate_forward(loss)
    assert np.isclose(loss.value[0, 0], 0.5 * np.sum((a.value - b.value) ** 2))


def test_cross_entropy_value():
    """Test cross entropy against a direct computation."""
    labels = graph.learnable_parameter(3, 2, init=np.array([[1.0, 0.0], [0.0, 0.0], [0.0, 1.0]]))
    logits = graph.learnable_parameter(3, 2, init=np.array([[2.0, 0.5], [1.0, 0.5], [0.1, 3.0]]))
    node = graph.cross_entropy_with_softmax(labels, logits)
    node.validate(True)
    node.transients = {"softmax": np.zeros((3, 2)), "log_softmax": np.zeros((3, 2))}

    operators.evaluate_forward(node)

    softmax = np.exp(logits.value) / np.exp(logits.value).sum(axis=0, keepdims=True)
    assert np.isclose(node.value[0, 0], -np.sum(labels.value * np.log(softmax)))
    assert np.allclose(node.transients["softmax"], softmax)


def _past_value(layout, x_values, **kwargs):
    x = graph.input_value(1, name="x")
    x.value = np.asarray(x_values, dtype=np.float64).reshape(1, -1)
    x.layout = layout
    p = graph.past_value(x, **kwargs)
    p.validate(True)
    p.resize_for_minibatch(layout)
    return x, p


def test_past_value_forward():
    """Test that past_value reads the previous time step of the same sequence."""
    lay = MinibatchLayout.from_lengths([3, 2])

    _, p = _past_value(lay, range(6), initial_value=-1.0)
    operators.evaluate_forward(p)
    assert p.value.tolist() == [[-1, -1, 0, 1, 2, 3]]

    _, p = _past_value(lay, range(6), initial_value=-1.0, time_step=2)
    operators.evaluate_forward(p)
    assert p.value.tolist() == [[-1, -1, -1, -1, 0, 1]]

    # A single time step only touches its own columns
    _, p = _past_value(lay, range(6), initial_value=-1.0)
    operators.evaluate_forward(p, FrameRange(1))
    assert p.value.tolist() == [[0, 0, 0, 1, 0, 0]]


def test_past_value_sequence_start():
    """Test that past_value does not read across a sequence start."""
    lay = MinibatchLayout(4, 1)
    lay.set(0, 0, CellFlags.SEQUENCE_START)
    lay.set(1, 0, CellFlags.SEQUENCE_END)
    lay.set(2, 0, CellFlags.SEQUENCE_START)
    lay.set(3, 0, CellFlags.SEQUENCE_END)

    _, p = _past_value(lay, [10, 11, 12, 13], initial_value=0.5)
    operators.evaluate_forward(p)
    assert p.value.tolist() == [[0.5, 10, 0.5, 12]]

    _, p = _past_value(lay, [10, 11, 12, 13], initial_value=0.5, time_step=2)
    operators.evaluate_forward(p)
    assert p.value.tolist() == [[0.5, 0.5, 0.5, 0.5]]


def test_past_value_gradient():
    """Test that past_value sends its gradient to the previous time step."""
    lay = MinibatchLayout.from_lengths([3, 2])
    x, p = _past_value(lay, range(6))
    x.needs_gradient = p.needs_gradient = True
    x.gradient = np.zeros((1, 6))
    p.gradient = np.arange(1.0, 7.0).reshape(1, 6)

    operators.compute_input_gradient(p, 0)

    # Cells at t=0 read the initial value and send nothing back
    assert x.gradient.tolist() == [[3, 4, 5, 6, 0, 0]]


def test_whole_batch_node_rejects_partial_frames():
    """Test that whole-batch kinds cannot run on a single time step."""
    x = graph.learnable_parameter(2, 2, init=1.0)
    node = graph.sum_elements(x)
    node.validate(True)
    node.needs_gradient = True
    node.gradient = np.ones((1, 1))

    with pytest.raises(LogicInvariantViolation, match="whole minibatch"):
        operators.evaluate_forward(node, FrameRange(0))
    with pytest.raises(LogicInvariantViolation, match="whole minibatch"):
        operators.compute_input_gradient(node, 0, FrameRange(0))


def test_compute_input_gradient_errors():
    """Test the preconditions of compute_input_gradient."""
    x = graph.learnable_parameter(2, 2, init=1.0, parameter_update_required=False)
    node = graph.tanh(x)
    node.validate(True)

    with pytest.raises(LogicInvariantViolation, match="not needing gradient"):
        operators.compute_input_gradient(node, 0)

    node.needs_gradient = True
    with pytest.raises(LogicInvariantViolation, match="does not need gradient"):
        operators.compute_input_gradient(node, 0)

    x.needs_gradient = True
    x.gradient = np.zeros((2, 2))
    with pytest.raises(LogicInvariantViolation, match="not allocated"):
        operators.compute_input_gradient(node, 0)

    with pytest.raises(LogicInvariantViolation, match="no input gradient"):
        operators.lookup(x).compute_input_gradient(x, 0, FrameRange())


def test_lookup_and_register(monkeypatch):
    """Test kernel lookup by type and registration of overrides."""

    class custom(graph.Node):
        operation = "Custom"

    with pytest.raises(operators.UnsupportedNodeType):
        operators.lookup(custom())
    with pytest.raises(LogicInvariantViolation):
        operators.evaluate_forward(custom())

    class doubled_tanh(graph.tanh):
        pass

    def evaluate(node, frame):
        node.value[...] = 2 * np.tanh(node.input(0).value)

    monkeypatch.setattr(operators, "_operators", list(operators._operators))
    operators.register(doubled_tanh, operators.Operator(evaluate, operators.lookup(graph.tanh(None)).compute_input_gradient))

    x = graph.learnable_parameter(1, 1, init=0.5)
    node = doubled_tanh(x)
    node.validate(True)
    operators.evaluate_forward(node)
    assert np.isclose(node.value[0, 0], 2 * np.tanh(0.5))

    # Plain tanh nodes keep the standard kernel
    plain = graph.tanh(x)
    plain.validate(True)
    operators.evaluate_forward(plain)
    assert np.isclose(plain.value[0, 0], np.tanh(0.5))
