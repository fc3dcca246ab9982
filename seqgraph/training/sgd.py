"""Stochastic gradient descent over sequence minibatches.

The trainer compiles the graph required by a criterion node, then, for each
minibatch, binds the packed streams to the input nodes, runs a forward and
a backward sweep, and updates each learnable parameter using

    value -= learning_rate * gradient

Updating a parameter bumps its evaluation timestamp, so that nodes reading
it are recomputed even when the executor skips up-to-date nodes.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

import numpy as np

from ..data import EpochConfiguration, SequenceEnumerator, pack_streams
from ..engine import compileflags
from ..engine.errors import ConfigurationError, RuntimeComputationError
from ..engine.frontend import graph, network
from ..engine.layout import MinibatchLayout
from ..engine.numpybackend import executor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EpochSummary:
    """Summary of a training epoch.

    Attributes
    ----------
    epoch_index: the zero-based epoch index.
    minibatches: the number of minibatches.
    samples: the number of valid (non-padding) samples.
    loss: the sum of the criterion over all minibatches.
    """

    epoch_index: int
    minibatches: int
    samples: int
    loss: float

    @property
    def loss_per_sample(self) -> float:
        """Return the average loss per sample."""
        return self.loss / self.samples if self.samples else float("nan")


class SGDTrainer:
    """Train the parameters of a network with plain SGD.

    Args:
        net: the network owning the graph.
        criterion: the 1 x 1 node to minimize.
        inputs: maps each stream name to the input node it feeds.
        learning_rate: the SGD step size.
        flags: the executor debug flags.
        skip_up_to_date: whether the executor skips up-to-date nodes.
    """

    def __init__(
        self,
        net: network.Network,
        criterion: graph.Node,
        inputs: Mapping[str, graph.input_value],
        learning_rate: float = 0.01,
        flags: int = compileflags.defaults,
        skip_up_to_date: bool = False,
    ) -> None:
        if learning_rate <= 0:
            raise ConfigurationError(f"training: learning rate must be positive, got {learning_rate}")
        self.network = net
        self.criterion = criterion
        self.inputs = dict(inputs)
        self.learning_rate = learning_rate
        self.plan = net.compile(criterion)
        if criterion.value.shape != (1, 1):
            raise ConfigurationError(
                f"training: criterion '{criterion.name}' must be 1 x 1, but is "
                f"{criterion.num_rows} x {criterion.num_cols}"
            )
        self.state = executor.State(plan=self.plan, flags=flags, skip_up_to_date=skip_up_to_date)
        self.parameters = [
            node
            for node in self.plan.nodes
            if isinstance(node, graph.learnable_parameter) and node.parameter_update_required
        ]

    def _feeds(self, matrices: Mapping[str, np.ndarray]) -> dict[graph.Node, np.ndarray]:
        missing = sorted(set(self.inputs) - set(matrices))
        if missing:
            raise RuntimeComputationError(f"training: no data for streams {missing}")
        return {self.inputs[name]: matrices[name] for name in self.inputs}

    def train_minibatch(self, layout: MinibatchLayout, matrices: Mapping[str, np.ndarray]) -> float:
        """Run forward, backward and the update on one minibatch.

        Returns
        -------
            The criterion value before the update.
        """
        executor.forward(self.state, layout, self._feeds(matrices), training=True)
        loss = float(self.criterion.value[0, 0])
        executor.backward(self.state, self.criterion)
        for parameter in self.parameters:
            assert parameter.gradient is not None
            parameter.value -= self.learning_rate * parameter.gradient
            parameter.update_eval_timestamp()
        return loss

    def evaluate(self, layout: MinibatchLayout, matrices: Mapping[str, np.ndarray]) -> float:
        """Compute the criterion on one minibatch without training."""
        executor.forward(self.state, layout, self._feeds(matrices), training=False)
        return float(self.criterion.value[0, 0])

    def train_epoch(self, enumerator: SequenceEnumerator, config: EpochConfiguration) -> EpochSummary:
        """Train on all the minibatches of an epoch.

        Raises
        ------
            RuntimeComputationError: if the enumerator stops returning data
                without signalling the end of the epoch.
        """
        enumerator.start_epoch(config)
        descriptions = enumerator.stream_descriptions()
        minibatches, samples, loss = 0, 0, 0.0
        while True:
            sequences = enumerator.next_sequences(config.minibatch_size)
            if sequences.num_sequences > 0:
                layout, matrices = pack_streams(sequences, descriptions)
                loss += self.train_minibatch(layout, matrices)
                minibatches += 1
                samples += layout.num_valid_samples()
            elif not sequences.end_of_epoch:
                raise RuntimeComputationError("training: enumerator returned no sequences before end of epoch")
            if sequences.end_of_epoch:
                break

        summary = EpochSummary(config.epoch_index, minibatches, samples, loss)
        logger.info(
            "epoch %d: %d minibatches, %d samples, loss per sample %.6f",
            summary.epoch_index,
            summary.minibatches,
            summary.samples,
            summary.loss_per_sample,
        )
        return summary
