"""NumPy Operator Kernels.

This module maps each node kind of `frontend.graph` to the NumPy code that
evaluates it forward and that propagates its gradient to its inputs.

Every kernel operates on the columns selected by a `layout.FrameRange`:
the whole minibatch, or the columns of a single time step when the node is
evaluated inside a recurrent loop. Inputs without a layout (e.g., parameters)
are used whole whatever the frame.

Gradient kernels obey the accumulation rule: they *add* the contribution of
the node into the gradient of the input and never overwrite it, because a
node consumed by multiple parents receives a contribution from each of them.
When an input was broadcast over the columns (e.g., a bias), we sum the
contribution over the columns before adding it.

Kinds that reduce over the whole minibatch either rely on the executor to
zero the padding of their inputs (`sum_elements`) or mask the padding
themselves (`square_error`, `cross_entropy_with_softmax`).

Add entries to the table using `register` to support more kinds.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterator, cast

import numpy as np
from scipy import special

from ..errors import LogicInvariantViolation, node_label
from ..frontend import graph
from ..layout import ALL_FRAMES, CellFlags, FrameRange, MinibatchLayout, data_slice, mask_columns_to


class UnsupportedNodeType(LogicInvariantViolation):
    """Raised when no kernel is registered for a node type."""


_EvaluateFunc = Callable[[graph.Node, FrameRange], None]
_GradientFunc = Callable[[graph.Node, int, FrameRange], None]


@dataclass(frozen=True)
class Operator:
    """The kernels implementing a node kind.

    Attributes
    ----------
    evaluate: computes the value of the node for the given frame.
    compute_input_gradient: adds the contribution of the node into the
        gradient of the input with the given index, for the given frame.
    """

    evaluate: _EvaluateFunc
    compute_input_gradient: _GradientFunc


def _value(node: graph.Node, frame: FrameRange) -> np.ndarray:
    return data_slice(node.value, frame, node.layout)


def _gradient(node: graph.Node, frame: FrameRange) -> np.ndarray:
    assert node.gradient is not None
    return data_slice(node.gradient, frame, node.layout)


def _accumulate(target: np.ndarray, contribution: np.ndarray) -> None:
    if target.shape == contribution.shape:
        target += contribution
    else:
        # The input was broadcast over the columns
        target += contribution.sum(axis=1, keepdims=True)


def _reduction_layout(node: graph.Node) -> MinibatchLayout | None:
    for child in node.inputs:
        if child is not None and child.layout is not None:
            return child.layout
    return None


# Leaves


def _eval_leaf(node: graph.Node, frame: FrameRange) -> None:
    # Values are bound by the executor or updated by training
    pass


def _grad_leaf(node: graph.Node, index: int, frame: FrameRange) -> None:
    raise LogicInvariantViolation(f"{node_label(node)}: a leaf has no input gradient to compute")


# Element-wise operations


def _eval_plus(node: graph.Node, frame: FrameRange) -> None:
    np.add(_value(node.input(0), frame), _value(node.input(1), frame), out=_value(node, frame))


def _grad_plus(node: graph.Node, index: int, frame: FrameRange) -> None:
    _accumulate(_gradient(node.input(index), frame), _gradient(node, frame))


def _eval_minus(node: graph.Node, frame: FrameRange) -> None:
    np.subtract(_value(node.input(0), frame), _value(node.input(1), frame), out=_value(node, frame))


def _grad_minus(node: graph.Node, index: int, frame: FrameRange) -> None:
    contribution = _gradient(node, frame)
    _accumulate(_gradient(node.input(index), frame), contribution if index == 0 else -contribution)


def _eval_element_times(node: graph.Node, frame: FrameRange) -> None:
    np.multiply(_value(node.input(0), frame), _value(node.input(1), frame), out=_value(node, frame))


def _grad_element_times(node: graph.Node, index: int, frame: FrameRange) -> None:
    other = _value(node.input(1 - index), frame)
    _accumulate(_gradient(node.input(index), frame), _gradient(node, frame) * other)


def _eval_times(node: graph.Node, frame: FrameRange) -> None:
    np.matmul(_value(node.input(0), frame), _value(node.input(1), frame), out=_value(node, frame))


def _grad_times(node: graph.Node, index: int, frame: FrameRange) -> None:
    gradient = _gradient(node, frame)
    if index == 0:
        # dW += g x^T, summing over the columns of the frame
        _gradient(node.input(0), frame)[...] += gradient @ _value(node.input(1), frame).T
    else:
        _gradient(node.input(1), frame)[...] += _value(node.input(0), frame).T @ gradient


def _eval_tanh(node: graph.Node, frame: FrameRange) -> None:
    np.tanh(_value(node.input(0), frame), out=_value(node, frame))


def _grad_tanh(node: graph.Node, index: int, frame: FrameRange) -> None:
    value = _value(node, frame)
    _gradient(node.input(0), frame)[...] += _gradient(node, frame) * (1.0 - value * value)


def _eval_sigmoid(node: graph.Node, frame: FrameRange) -> None:
    special.expit(_value(node.input(0), frame), out=_value(node, frame))


def _grad_sigmoid(node: graph.Node, index: int, frame: FrameRange) -> None:
    value = _value(node, frame)
    _gradient(node.input(0), frame)[...] += _gradient(node, frame) * value * (1.0 - value)


# Recurrence


def _cells(layout: MinibatchLayout, frame: FrameRange) -> Iterator[tuple[int, int]]:
    times = range(layout.num_time_steps) if frame.t is None else (frame.t,)
    sequences = range(layout.num_parallel_sequences) if frame.seq is None else (frame.seq,)
    for t in times:
        for s in sequences:
            yield t, s


def _past_value_source(node: graph.past_value, layout: MinibatchLayout, t: int, s: int) -> int | None:
    # None means the cell reads the initial value
    if t < node.time_step:
        return None
    for previous in range(t - node.time_step + 1, t + 1):
        if layout.is_(previous, s, CellFlags.SEQUENCE_START):
            return None
    return layout.column(t - node.time_step, s)


def _past_value_layout(node: graph.Node) -> MinibatchLayout:
    if node.layout is None:
        raise LogicInvariantViolation(f"{node_label(node)}: evaluated before being resized for a minibatch")
    return node.layout


def _eval_past_value(node: graph.Node, frame: FrameRange) -> None:
    node = cast(graph.past_value, node)
    layout = _past_value_layout(node)
    source = node.input(0).value
    for t, s in _cells(layout, frame):
        column = layout.column(t, s)
        previous = _past_value_source(node, layout, t, s)
        if previous is None:
            node.value[:, column] = node.initial_value
        else:
            node.value[:, column] = source[:, previous]


def _grad_past_value(node: graph.Node, index: int, frame: FrameRange) -> None:
    node = cast(graph.past_value, node)
    layout = _past_value_layout(node)
    target = node.input(0).gradient
    assert node.gradient is not None and target is not None
    for t, s in _cells(layout, frame):
        previous = _past_value_source(node, layout, t, s)
        if previous is not None:
            target[:, previous] += node.gradient[:, layout.column(t, s)]


# Whole-batch reductions and criteria


def _eval_sum_elements(node: graph.Node, frame: FrameRange) -> None:
    # The executor has already zeroed the padding of the input
    node.value[0, 0] = np.sum(node.input(0).value)


def _grad_sum_elements(node: graph.Node, index: int, frame: FrameRange) -> None:
    assert node.gradient is not None
    _gradient(node.input(0), frame)[...] += node.gradient[0, 0]


def _eval_square_error(node: graph.Node, frame: FrameRange) -> None:
    diff = node.transients["diff"]
    np.subtract(node.input(0).value, node.input(1).value, out=diff)
    mask_columns_to(diff, _reduction_layout(node))
    node.value[0, 0] = 0.5 * np.sum(diff * diff)


def _grad_square_error(node: graph.Node, index: int, frame: FrameRange) -> None:
    assert node.gradient is not None
    contribution = node.gradient[0, 0] * node.transients["diff"]
    _accumulate(_gradient(node.input(index), frame), contribution if index == 0 else -contribution)


def _eval_cross_entropy_with_softmax(node: graph.Node, frame: FrameRange) -> None:
    labels, logits = node.input(0).value, node.input(1).value
    log_softmax, softmax = node.transients["log_softmax"], node.transients["softmax"]
    layout = _reduction_layout(node)

    # 1. normalize each column, then zero the padding so that garbage
    # (including NaN) in padding columns does not reach the result
    log_softmax[...] = special.log_softmax(logits, axis=0)
    mask_columns_to(log_softmax, layout)
    np.exp(log_softmax, out=softmax)
    mask_columns_to(softmax, layout)

    # 2. labels may hold garbage in padding columns as well
    product = labels * log_softmax
    mask_columns_to(product, layout)
    node.value[0, 0] = -np.sum(product)


def _grad_cross_entropy_with_softmax(node: graph.Node, index: int, frame: FrameRange) -> None:
    assert node.gradient is not None
    layout = _reduction_layout(node)
    if index == 1:
        contribution = node.transients["softmax"] - node.input(0).value
    else:
        contribution = -node.transients["log_softmax"]
    mask_columns_to(contribution, layout)
    _accumulate(_gradient(node.input(index), frame), node.gradient[0, 0] * contribution)


_operators: list[tuple[type[graph.Node], Operator]] = [
    (graph.input_value, Operator(_eval_leaf, _grad_leaf)),
    (graph.learnable_parameter, Operator(_eval_leaf, _grad_leaf)),
    (graph.plus, Operator(_eval_plus, _grad_plus)),
    (graph.minus, Operator(_eval_minus, _grad_minus)),
    (graph.element_times, Operator(_eval_element_times, _grad_element_times)),
    (graph.times, Operator(_eval_times, _grad_times)),
    (graph.tanh, Operator(_eval_tanh, _grad_tanh)),
    (graph.sigmoid, Operator(_eval_sigmoid, _grad_sigmoid)),
    (graph.past_value, Operator(_eval_past_value, _grad_past_value)),
    (graph.sum_elements, Operator(_eval_sum_elements, _grad_sum_elements)),
    (graph.square_error, Operator(_eval_square_error, _grad_square_error)),
    (graph.cross_entropy_with_softmax, Operator(_eval_cross_entropy_with_softmax, _grad_cross_entropy_with_softmax)),
]
"""Maps a node type to its kernels, matched using isinstance."""


def register(kind: type[graph.Node], operator: Operator) -> None:
    """Register the kernels of a node kind.

    Kernels registered later take precedence, so that a subclass of a
    standard kind can override its kernels.
    """
    _operators.insert(0, (kind, operator))


def lookup(node: graph.Node) -> Operator:
    """Return the kernels for the given node.

    Raises
    ------
        UnsupportedNodeType: if no kernel matches the node type.
    """
    for node_type, operator in _operators:
        if isinstance(node, node_type):
            return operator
    raise UnsupportedNodeType(f"operators: unsupported node type: {type(node)}")


def evaluate_forward(node: graph.Node, frame: FrameRange = ALL_FRAMES) -> None:
    """Compute the value of the node for the given frame.

    Raises
    ------
        LogicInvariantViolation: if the node only supports whole-batch
            evaluation and the frame is partial, or if an input is missing.
    """
    if node.whole_batch_only and not frame.is_all_frames:
        raise LogicInvariantViolation(
            f"{node_label(node)}: reduces over the whole minibatch and cannot be evaluated for frame {frame}"
        )
    for index, child in enumerate(node.inputs):
        if child is None:
            raise LogicInvariantViolation(f"{node_label(node)}: input {index} is not connected")
    lookup(node).evaluate(node, frame)


def compute_input_gradient(node: graph.Node, index: int, frame: FrameRange = ALL_FRAMES) -> None:
    """Add the contribution of the node into the gradient of an input.

    Raises
    ------
        LogicInvariantViolation: if the node or the input does not need
            a gradient, if their gradients are not allocated, or if the
            node only supports whole-batch evaluation and the frame is
            partial.
    """
    child = node.input(index)
    if not node.needs_gradient:
        raise LogicInvariantViolation(f"{node_label(node)}: computing input gradient of a node not needing gradient")
    if not child.needs_gradient:
        raise LogicInvariantViolation(
            f"{node_label(node)}: input {index} ({node_label(child)}) does not need gradient"
        )
    if node.gradient is None or child.gradient is None:
        raise LogicInvariantViolation(f"{node_label(node)}: gradient buffers of node or input {index} not allocated")
    if node.whole_batch_only and not frame.is_all_frames:
        raise LogicInvariantViolation(
            f"{node_label(node)}: reduces over the whole minibatch and cannot be differentiated for frame {frame}"
        )
    lookup(node).compute_input_gradient(node, index, frame)
