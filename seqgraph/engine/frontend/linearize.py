"""Graph Ordering and Recurrent Loop Detection.

This module sorts the nodes of a graph such that each node comes after its
inputs, which is the order required to evaluate the graph forward. Reversing
the order yields the order for propagating gradients backward.

A graph is acyclic except for edges reading the value of a node at an earlier
time step (e.g., the input of `graph.past_value`). Such edges may close cycles,
which we call recurrent loops. We find them using Tarjan's strongly connected
components algorithm: every node belonging to a component with more than one
node (or to a node reading from itself) receives the same loop ID. Within a
loop, we compute a secondary order considering only non-delayed edges, which
tells the executor in which order to evaluate the loop members at each time
step.

Here's an example:

    >>> from seqgraph.engine.frontend import graph, linearize
    >>>
    >>> x = graph.input_value(3)
    >>> h_prev = graph.past_value(None, rows=3)
    >>> h = graph.tanh(graph.plus(x, h_prev))
    >>> h_prev.set_input(0, h)
    >>>
    >>> loops = linearize.form_recurrent_loops(h)
    >>> assert len(loops) == 1 and len(loops[0].nodes) == 3

All functions in this module are iterative, so deep graphs do not exhaust
the Python recursion limit. Nodes are reached through `Node.inputs`.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator

from ..errors import ConfigurationError, node_label
from . import graph

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecurrentLoop:
    """A strongly connected component evaluated one time step at a time.

    Attributes
    ----------
    loop_id: the ID shared by all the members.
    nodes: the members sorted such that, within a time step, each
        member comes after the members it reads without delay.
    """

    loop_id: int
    nodes: tuple[graph.Node, ...]

    def __repr__(self) -> str:
        """Return a compact representation of the loop."""
        return f"RecurrentLoop(loop_id={self.loop_id}, nodes=[{', '.join(n.name for n in self.nodes)}])"


def _connected_inputs(node: graph.Node) -> Iterator[graph.Node]:
    return (child for child in node.inputs if child is not None)


def _postorder(roots: tuple[graph.Node, ...]) -> list[graph.Node]:
    visited: set[graph.Node] = set()
    result: list[graph.Node] = []
    for root in roots:
        if root in visited:
            continue
        visited.add(root)
        stack: list[tuple[graph.Node, Iterator[graph.Node]]] = [(root, _connected_inputs(root))]
        while stack:
            node, children = stack[-1]
            for child in children:
                if child not in visited:
                    visited.add(child)
                    stack.append((child, _connected_inputs(child)))
                    break
            else:
                stack.pop()
                result.append(node)
    return result


def enumerate_order(*roots: graph.Node, forward: bool = True, recurrent: bool = False) -> list[graph.Node]:
    """Return the nodes required to evaluate the roots in depth-first postorder.

    Each node appears after all its inputs, except for inputs already on the
    current depth-first path, which can only happen across a recurrent loop.

    Args:
        roots: the nodes to evaluate.
        forward: whether to return the forward order (otherwise we return
            the backward order).
        recurrent: whether to record the 1-based postorder position into
            each node `ordering.visited_order`.

    Returns
    -------
        The forward order or, if forward is False, the nodes sorted by their
        recorded visit order and then reversed.
    """
    result = _postorder(roots)
    if recurrent:
        for position, node in enumerate(result, start=1):
            node.ordering.visited_order = position
    if not forward:
        result.sort(key=lambda node: node.ordering.visited_order)
        result.reverse()
    return result


def _strongly_connected_components(order: list[graph.Node]) -> list[list[graph.Node]]:
    components: list[list[graph.Node]] = []
    stack: list[graph.Node] = []
    index = 0

    for start in order:
        if start.ordering.index != -1:
            continue

        # 1. discover the start node
        start.ordering.index = start.ordering.low_link = index
        index += 1
        stack.append(start)
        start.ordering.in_stack = True
        work: list[tuple[graph.Node, Iterator[graph.Node]]] = [(start, _connected_inputs(start))]

        while work:
            node, children = work[-1]

            # 2. descend into the first undiscovered input
            descended = False
            for child in children:
                if child.ordering.index == -1:
                    child.ordering.index = child.ordering.low_link = index
                    index += 1
                    stack.append(child)
                    child.ordering.in_stack = True
                    work.append((child, _connected_inputs(child)))
                    descended = True
                    break
                if child.ordering.in_stack:
                    node.ordering.low_link = min(node.ordering.low_link, child.ordering.index)
            if descended:
                continue

            # 3. all inputs processed: pop and propagate the low-link
            work.pop()
            if work:
                parent = work[-1][0]
                parent.ordering.low_link = min(parent.ordering.low_link, node.ordering.low_link)

            # 4. emit the component rooted at this node
            if node.ordering.low_link == node.ordering.index:
                component: list[graph.Node] = []
                while True:
                    member = stack.pop()
                    member.ordering.in_stack = False
                    component.append(member)
                    if member is node:
                        break
                components.append(component)

    return components


def _intra_loop_order(loop_id: int, members: list[graph.Node]) -> list[graph.Node]:
    # Topological order over non-delayed edges between loop members
    member_set = set(members)
    state: dict[graph.Node, int] = {}  # 1 = on path, 2 = done
    result: list[graph.Node] = []

    def same_step_inputs(node: graph.Node) -> Iterator[graph.Node]:
        return (
            child
            for index, child in enumerate(node.inputs)
            if child is not None and child in member_set and index not in node.delayed_inputs
        )

    for start in sorted(members, key=lambda node: node.ordering.visited_order):
        if start in state:
            continue
        state[start] = 1
        work = [(start, same_step_inputs(start))]
        while work:
            node, children = work[-1]
            for child in children:
                if state.get(child) == 1:
                    raise ConfigurationError(
                        f"linearize: recurrent loop {loop_id} contains a cycle without delay "
                        f"through {node_label(node)} and {node_label(child)}"
                    )
                if child not in state:
                    state[child] = 1
                    work.append((child, same_step_inputs(child)))
                    break
            else:
                work.pop()
                state[node] = 2
                result.append(node)
    return result


def form_recurrent_loops(*roots: graph.Node) -> list[RecurrentLoop]:
    """Detect the recurrent loops among the nodes required by the roots.

    The function starts by clearing the ordering state of every reachable
    node, so running it twice on the same graph yields the same result.

    Returns
    -------
        The loops, sorted such that a loop comes after the loops it reads from.

    Raises
    ------
        ConfigurationError: if a loop contains a cycle without delayed edges,
            or if a loop contains a whole-batch-only node.
    """
    # 1. reset the transient ordering state
    order = _postorder(roots)
    for node in order:
        node.ordering.clear()

    # 2. record the visit order
    order = enumerate_order(*roots, recurrent=True)

    # 3. find the strongly connected components
    loops: list[RecurrentLoop] = []
    for component in _strongly_connected_components(order):
        node = component[0]
        if len(component) == 1 and not any(child is node for child in node.inputs):
            continue

        loop_id = len(loops)
        for member in component:
            if member.whole_batch_only:
                raise ConfigurationError(
                    f"linearize: {node_label(member)} reduces over the whole minibatch "
                    f"and cannot be part of recurrent loop {loop_id}"
                )
            member.ordering.loop_id = loop_id

        # 4. sort the members for per-time-step evaluation
        members = _intra_loop_order(loop_id, component)
        for position, member in enumerate(members):
            member.ordering.index_in_loop = position
        loops.append(RecurrentLoop(loop_id=loop_id, nodes=tuple(members)))

    logger.debug("found %d recurrent loops among %d nodes", len(loops), len(order))
    return loops


def propagate_needs_gradient(order: list[graph.Node]) -> None:
    """Compute which nodes need a gradient.

    Leaves need a gradient when they are parameters to update, any other
    node when at least an input needs one. We iterate until nothing changes,
    so that the flag also converges across recurrent loops.
    """
    for node in order:
        if node.inputs:
            node.needs_gradient = False
        else:
            node.needs_gradient = node.parameter_update_required

    changed = True
    while changed:
        changed = False
        for node in order:
            if node.needs_gradient or not node.inputs:
                continue
            if any(child.needs_gradient for child in _connected_inputs(node)):
                node.needs_gradient = True
                changed = True


def forest(*roots: graph.Node) -> list[graph.Node]:
    """Topologically sort a graph that must not contain any cycle.

    Raises
    ------
        ConfigurationError: if the graph contains a cycle.
    """
    state: dict[graph.Node, int] = {}  # 1 = on path, 2 = done
    result: list[graph.Node] = []
    for root in roots:
        if root in state:
            continue
        state[root] = 1
        work = [(root, _connected_inputs(root))]
        while work:
            node, children = work[-1]
            for child in children:
                if state.get(child) == 1:
                    raise ConfigurationError(f"linearize: cycle detected at {node_label(child)}")
                if child not in state:
                    state[child] = 1
                    work.append((child, _connected_inputs(child)))
                    break
            else:
                work.pop()
                state[node] = 2
                result.append(node)
    return result
