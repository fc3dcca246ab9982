"""Execution Plan Representation.

The execution plan (IR) of a graph consists of:

1. the root nodes the caller wants to evaluate;

2. the steps to run forward, sorted such that each step comes after
the steps computing its inputs;

3. the recurrent loops found in the graph.

A step is either a node, which the executor evaluates over the whole
minibatch at once, or a `linearize.RecurrentLoop`, which the executor
evaluates one time step at a time, visiting its members in intra-loop
order. Running the steps in reverse order yields the backward sweep.

We obtain the steps from the depth-first postorder of the graph, replacing
the members of each loop with a single loop step placed where the last of
its members appears. The last member to appear is the one through which the
traversal entered the loop, so by then every input of every member, loop
inputs included, precedes it, while no node reading from the loop has
appeared yet.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from dataclasses import dataclass

from . import graph, linearize

Step = graph.Node | linearize.RecurrentLoop
"""Type alias for an execution plan step."""


@dataclass(frozen=True)
class Plan:
    """Execution plan of a graph.

    Attributes
    ----------
    roots: the nodes to evaluate.
    steps: the forward steps in dependency order.
    loops: the recurrent loops, also contained in steps.
    """

    roots: tuple[graph.Node, ...]
    steps: list[Step]
    loops: list[linearize.RecurrentLoop]

    @property
    def nodes(self) -> list[graph.Node]:
        """Return all the nodes in forward evaluation order."""
        result: list[graph.Node] = []
        for step in self.steps:
            if isinstance(step, linearize.RecurrentLoop):
                result.extend(step.nodes)
            else:
                result.append(step)
        return result

    def __repr__(self) -> str:
        """Return a human readable representation of the plan."""
        lines: list[str] = []
        for step in self.steps:
            if isinstance(step, linearize.RecurrentLoop):
                lines.append(f"# === begin loop {step.loop_id} ===")
                lines.extend(str(node) for node in step.nodes)
                lines.append(f"# === end loop {step.loop_id} ===")
            else:
                lines.append(str(step))
        lines.append(f"# roots: {', '.join(f'n{node.id}' for node in self.roots)}")
        return "\n".join(lines)


def compile(*roots: graph.Node) -> Plan:
    """Compile the graph required by the roots into an execution plan.

    Raises
    ------
        ConfigurationError: if loop detection fails (see
            `linearize.form_recurrent_loops`).
    """
    loops = linearize.form_recurrent_loops(*roots)
    remaining = {loop.loop_id: len(loop.nodes) for loop in loops}

    steps: list[Step] = []
    for node in linearize.enumerate_order(*roots):
        loop_id = node.ordering.loop_id
        if loop_id == -1:
            steps.append(node)
            continue
        remaining[loop_id] -= 1
        if remaining[loop_id] == 0:
            steps.append(loops[loop_id])

    return Plan(roots=tuple(roots), steps=steps, loops=loops)
