"""Execution Plan Executor.

An executor running forward and backward sweeps over an execution plan
(see `frontend.ir`) for one minibatch at a time. Unlike recursive evaluators,
this executor requires pre-linearized graphs where steps are sorted such that
all dependencies of a step appear before the step itself.

The forward sweep visits the steps in order. A node step is evaluated over
the whole minibatch at once. A loop step is evaluated one time step at a
time, in increasing time order, visiting the loop members in intra-loop
order at each time step.

The backward sweep zeroes every gradient once, seeds the gradient of the
root with ones, and then visits the steps in reverse order (and the loops
in decreasing time order), asking each node to add its contribution into
the gradient of each input needing a gradient.

Masking
-------

Padding columns hold garbage. Before a node evaluates, we zero the padding
of its inputs, so that reductions over the columns are correct. Before a
node propagates its gradient, we zero the padding of its own gradient and
of the values of its inputs. Kinds with `masks_own_padding` set take care
of their padding themselves and we leave them alone.

With the compileflags.NANPAD flag, we fill the padding columns of each
computed value with NaN, which makes a missing mask visible.

Debugging
---------

The executor honors the compileflags.TRACE, compileflags.BREAK and
compileflags.DUMP flags, set either in the `State` or on single nodes using
`graph.tracepoint` and `graph.breakpoint`.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping

import numpy as np

from .. import compileflags
from ..errors import LogicInvariantViolation, RuntimeComputationError, node_label
from ..frontend import graph, ir, linearize
from ..layout import ALL_FRAMES, FrameRange, MinibatchLayout, data_slice, mask_columns_to
from ..pool import BufferPool
from . import operators

logger = logging.getLogger(__name__)


def _print_graph_node(node: graph.Node) -> None:
    """Print a node before evaluation."""
    # 1. print the original graph node as a comment so we can always
    # understand what is the specific node leading to this.
    print(f"# {str(node)}")


def _print_evaluated_node(node: graph.Node, value: np.ndarray) -> None:
    """Print a node after evaluation."""
    # 1. print the shape and dtype, which are invaluable when debugging
    print(f"# shape: {value.shape}")
    print(f"# dtype: {value.dtype}")

    # 2. give the user a sense of the node value for debugging purposes
    print("# value:")
    print("\n".join("# " + line for line in str(value).splitlines()))

    # 3. add an empty line, which is always nice to separate things
    print("")


@dataclass
class State:
    """
    The executor state.

    Attributes
    ----------
        plan: the execution plan to run.
        pool: the pool lending transient buffers to the nodes.
        flags: Bitmask containing debug flags (e.g., compileflags.BREAK) set
            by default using the `SEQGRAPH_ENGINE_FLAGS` environment
            variable as documented by the `compileflags` package docs.
        skip_up_to_date: whether to skip nodes whose value is newer than
            the value of their inputs. We only skip when the minibatch
            layout is the same object used by the previous sweep.
        layout: the layout of the last forward sweep.
    """

    plan: ir.Plan
    pool: BufferPool = field(default_factory=BufferPool)
    flags: int = compileflags.defaults
    skip_up_to_date: bool = False
    layout: MinibatchLayout | None = None


def _mask(buffer: np.ndarray | None, node: graph.Node, t: int | None = None, value: float = 0.0) -> None:
    # Only buffers carrying a layout have padding
    if buffer is not None and node.layout is not None:
        mask_columns_to(buffer, node.layout, t=t, value=value)


def _mask_input_values(node: graph.Node, t: int | None = None) -> None:
    for child in node.inputs:
        if child is not None:
            _mask(child.value, child, t)


def bind_feeds(state: State, layout: MinibatchLayout, feeds: Mapping[graph.Node | str, np.ndarray]) -> None:
    """Copy the given matrices into the corresponding input nodes.

    Feeds are keyed either by node or by node name.

    Raises
    ------
        RuntimeComputationError: if a feed does not refer to an input node
            of the plan, or if its shape does not match the layout.
    """
    by_name = {node.name: node for node in state.plan.nodes}
    for key, feed in feeds.items():
        node = by_name.get(key) if isinstance(key, str) else key
        if not isinstance(node, graph.input_value) or by_name.get(node.name) is not node:
            raise RuntimeComputationError(f"executor: feed '{key}' does not refer to an input of the plan")
        value = np.array(feed, dtype=np.float64)
        if value.shape != (node.rows, layout.num_cols):
            raise RuntimeComputationError(
                f"{node_label(node)}: feed has shape {value.shape}, expected ({node.rows}, {layout.num_cols})"
            )
        node.value = value
        node.layout = layout
        node.update_eval_timestamp()


def forward(
    state: State,
    layout: MinibatchLayout,
    feeds: Mapping[graph.Node | str, np.ndarray] | None = None,
    training: bool = True,
) -> np.ndarray:
    """Run a forward sweep and return the value of the last root.

    Args:
        state: the executor state.
        layout: the layout of the minibatch, which becomes read-only.
        feeds: optional matrices to bind to input nodes before evaluating.
        training: whether a backward sweep follows, in which case we keep
            the transient buffers until `backward` releases them.

    Raises
    ------
        RuntimeComputationError: if the bound inputs do not match the layout.
        LogicInvariantViolation: if a node violates the operator contract.
    """
    # 1. fix the layout for the whole sweep
    layout.freeze()
    same_layout = state.layout is layout
    state.layout = layout

    # 2. bind the inputs
    if feeds:
        bind_feeds(state, layout, feeds)

    # 3. honor the DUMP flag when requested to do so
    if state.flags & compileflags.DUMP != 0:
        print(repr(state.plan))
        print("")

    # 4. evaluate
    logger.debug(
        "forward sweep over %d steps (T=%d, S=%d)",
        len(state.plan.steps),
        layout.num_time_steps,
        layout.num_parallel_sequences,
    )
    for step in state.plan.steps:
        if isinstance(step, linearize.RecurrentLoop):
            _forward_loop(state, step, layout, training)
        else:
            _forward_node(state, step, layout, same_layout, training)

    return state.plan.roots[-1].value


def _forward_node(
    state: State,
    node: graph.Node,
    layout: MinibatchLayout,
    same_layout: bool,
    training: bool,
) -> None:
    # 1. resize the buffers (destructive when the shape changes)
    node.resize_for_minibatch(layout)

    # 2. check whether we need to trace this node
    flags = node.flags | state.flags
    tracing = flags & compileflags.TRACE
    if tracing:
        _print_graph_node(node)

    # 3. leaves hold values that are bound or trained, not evaluated
    if not node.inputs:
        if tracing:
            _print_evaluated_node(node, node.value)
        return

    # 4. skip the node if its value is still up to date (transients
    # are released after each sweep, so their holders always run)
    if (
        state.skip_up_to_date
        and same_layout
        and not node.transient_shapes()
        and not node.is_value_older_than_inputs()
    ):
        logger.debug("skipping up-to-date %s", node_label(node))
        return

    # 5. evaluate the node
    node.request_transient_buffers(state.pool)
    node.on_evaluate_begin_iteration()
    if not node.masks_own_padding:
        _mask_input_values(node)
    operators.evaluate_forward(node, ALL_FRAMES)
    node.on_evaluate_end_iteration()
    node.update_eval_timestamp()
    _finish_forward(state, node, flags, training)


def _forward_loop(state: State, loop: linearize.RecurrentLoop, layout: MinibatchLayout, training: bool) -> None:
    # 1. prepare all the members
    for node in loop.nodes:
        node.resize_for_minibatch(layout)
        if (node.flags | state.flags) & compileflags.TRACE:
            _print_graph_node(node)
        node.request_transient_buffers(state.pool)
        node.on_evaluate_begin_iteration()

    # 2. evaluate one time step at a time
    for t in range(layout.num_time_steps):
        frame = FrameRange(t)
        for node in loop.nodes:
            if not node.masks_own_padding:
                _mask_input_values(node, t)
            operators.evaluate_forward(node, frame)

    # 3. finish all the members
    for node in loop.nodes:
        node.on_evaluate_end_iteration()
        node.update_eval_timestamp()
        _finish_forward(state, node, node.flags | state.flags, training)


def _finish_forward(state: State, node: graph.Node, flags: int, training: bool) -> None:
    # 1. poison the padding if requested to do so
    if flags & compileflags.NANPAD != 0:
        _mask(node.value, node, value=np.nan)

    # 2. check whether we need to print the computation result
    if flags & compileflags.TRACE != 0:
        _print_evaluated_node(node, node.value)

    # 3. check whether we need to stop after evaluating this node
    if flags & compileflags.BREAK != 0:
        input("# executor: press any key to continue...")
        print("")

    # 4. without a backward sweep, nobody needs the transients anymore
    if not training:
        node.release_transient_buffers(state.pool)


def backward(state: State, root: graph.Node) -> None:
    """Run a backward sweep from the given root.

    The sweep zeroes all the gradients, seeds the gradient of the root
    with ones and then accumulates the gradients in reverse order. When
    done, we release the transient buffers of all the nodes.

    Raises
    ------
        LogicInvariantViolation: if the root does not need a gradient, if
            the forward sweep did not allocate the gradient buffers or if
            the transient buffers were already released.
    """
    # 1. make sure the root is differentiable
    nodes = state.plan.nodes
    if not any(node is root for node in nodes):
        raise LogicInvariantViolation(f"executor: {node_label(root)} is not part of the plan")
    if not root.needs_gradient or root.gradient is None:
        raise LogicInvariantViolation(
            f"executor: {node_label(root)} does not need gradient or forward did not run"
        )
    for node in nodes:
        if node.needs_gradient and not node.transients and node.transient_shapes():
            raise LogicInvariantViolation(
                f"executor: {node_label(node)}: transient buffers released; run forward(training=True) first"
            )

    # 2. reset all gradients once at the beginning of the sweep
    for node in nodes:
        if node.gradient is not None:
            node.gradient.fill(0.0)
    root.gradient.fill(1.0)

    # 3. propagate in reverse order
    for step in reversed(state.plan.steps):
        if isinstance(step, linearize.RecurrentLoop):
            _backward_loop(step, state.layout)
        else:
            _backward_node(step, ALL_FRAMES)

    # 4. the transient buffers are no longer needed
    release_transients(state)


def _backward_node(node: graph.Node, frame: FrameRange) -> None:
    if not node.needs_gradient or not node.inputs:
        return

    # 1. make sure padding does not leak into the inputs gradients
    if not node.masks_own_padding:
        _mask(node.gradient, node, frame.t)
        _mask_input_values(node, frame.t)

    # 2. accumulate into each input needing gradient
    for index, child in enumerate(node.inputs):
        if child is not None and child.needs_gradient:
            operators.compute_input_gradient(node, index, frame)


def _backward_loop(loop: linearize.RecurrentLoop, layout: MinibatchLayout | None) -> None:
    if layout is None:
        raise LogicInvariantViolation(f"executor: {loop!r} differentiated before any forward sweep")
    for t in reversed(range(layout.num_time_steps)):
        frame = FrameRange(t)
        for node in reversed(loop.nodes):
            _backward_node(node, frame)


def release_transients(state: State) -> None:
    """Return all the transient buffers held by the nodes of the plan."""
    for node in state.plan.nodes:
        node.release_transient_buffers(state.pool)


def gradient_of(node: graph.Node, frame: FrameRange = ALL_FRAMES) -> np.ndarray:
    """Return a view of the gradient of the node for the given frame.

    Raises
    ------
        LogicInvariantViolation: if the node has no gradient.
    """
    if node.gradient is None:
        raise LogicInvariantViolation(f"executor: {node_label(node)} has no gradient")
    return data_slice(node.gradient, frame, node.layout)
