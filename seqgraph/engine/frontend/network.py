"""Network of Nodes.

A `Network` owns the nodes of a model. Nodes refer to their inputs by
reference but do not own them, and the network is the single place where
nodes are registered by ID and by (unique) name and from which they are
torn down together by `clear`.

Here's an example:

    >>> from seqgraph.engine.frontend import network
    >>>
    >>> net = network.Network()
    >>> x = net.new("InputValue", 2, name="x")
    >>> W = net.new("LearnableParameter", 3, 2, init=0.5, name="W")
    >>> y = net.new("Times", W, x, name="y")
    >>> plan = net.compile(y)

The network also implements validation, which runs in two passes over the
forward order: the first pass tolerates inputs whose shape is not known yet
(e.g., across recurrent loops), the second one does not. After validation,
we compute which nodes need a gradient.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import os
from typing import Any, Iterator

from ..errors import ConfigurationError, node_label
from ..pool import CPU_DEVICE
from . import graph, ir, linearize, persist

logger = logging.getLogger(__name__)


class Network:
    """Arena owning the nodes of a model.

    Args:
        device: the device on which nodes created by `new` live.
    """

    def __init__(self, device: int = CPU_DEVICE) -> None:
        self.device = device
        self._nodes: dict[int, graph.Node] = {}
        self._names: dict[str, graph.Node] = {}

    def add(self, node: graph.Node) -> graph.Node:
        """Register an existing node and return it.

        Raises
        ------
            ConfigurationError: if another node has the same name.
        """
        existing = self._names.get(node.name)
        if existing is node:
            return node
        if existing is not None:
            raise ConfigurationError(f"network: duplicate node name '{node.name}'")
        self._nodes[node.id] = node
        self._names[node.name] = node
        return node

    def new(self, kind: str | type[graph.Node], *args: Any, name: str = "", **kwargs: Any) -> graph.Node:
        """Create a node of the given kind on the network device and register it.

        The kind is either the operation tag (e.g., "Plus") or the class.
        """
        if isinstance(kind, str):
            try:
                kind = graph.KINDS[kind]
            except KeyError:
                raise ConfigurationError(f"network: unknown operation '{kind}'")
        return self.add(kind(*args, name=name, device=self.device, **kwargs))

    def node(self, name: str) -> graph.Node:
        """Return the node with the given name."""
        try:
            return self._names[name]
        except KeyError:
            raise ConfigurationError(f"network: no node named '{name}'")

    def __iter__(self) -> Iterator[graph.Node]:
        """Iterate over the nodes in creation order."""
        return iter(list(self._nodes.values()))

    def __len__(self) -> int:
        """Return the number of nodes."""
        return len(self._nodes)

    def __contains__(self, item: object) -> bool:
        """Tell whether the network contains a node or a node name."""
        if isinstance(item, str):
            return item in self._names
        return isinstance(item, graph.Node) and self._nodes.get(item.id) is item

    def parameters(self) -> list[graph.learnable_parameter]:
        """Return the learnable parameters."""
        return [node for node in self if isinstance(node, graph.learnable_parameter)]

    def validate(self, *roots: graph.Node) -> list[graph.Node]:
        """Validate the nodes required by the roots (default: all nodes).

        Returns
        -------
            The validated nodes in forward order.

        Raises
        ------
            ConfigurationError: if the graph is malformed or if it
                reaches nodes that the network does not own.
        """
        order = linearize.enumerate_order(*(roots or tuple(self)))
        for node in order:
            if node not in self:
                raise ConfigurationError(f"network: {node_label(node)} does not belong to this network")

        for is_final_pass in (False, True):
            for node in order:
                node.validate(is_final_pass)

        linearize.propagate_needs_gradient(order)
        logger.debug("validated %d nodes", len(order))
        return order

    def compile(self, *roots: graph.Node) -> ir.Plan:
        """Validate the graph required by the roots and compile it into a plan."""
        if not roots:
            raise ConfigurationError("network: need at least one root to compile")
        self.validate(*roots)
        plan = ir.compile(*roots)
        logger.debug("compiled plan with %d steps and %d loops", len(plan.steps), len(plan.loops))
        return plan

    def move_to_device(self, device: int) -> None:
        """Move every node to the given device."""
        for node in self:
            node.move_to_device(device)
        self.device = device

    def clear(self) -> None:
        """Disconnect and forget all the nodes."""
        for node in self:
            node.detach_inputs()
        self._nodes.clear()
        self._names.clear()

    def describe(self) -> str:
        """Return a human readable description of every node."""
        return "\n".join(node.describe() for node in self)

    def save(self, path: str | os.PathLike, model_version: int = persist.CURRENT_MODEL_VERSION) -> None:
        """Write the network to the given file."""
        with open(path, "wb") as stream:
            writer = persist.Writer(stream, model_version)
            writer.write_header()
            nodes = list(self)
            writer.write_u32(len(nodes))
            for node in nodes:
                node.save_state(writer)
            writer.write_marker("edges")
            for node in nodes:
                writer.write_str(node.name)
                writer.write_u32(len(node.inputs))
                for child in node.inputs:
                    writer.write_str("" if child is None else child.name)
            writer.write_marker("end")
        logger.info("saved %d nodes to %s (model version %d)", len(nodes), path, model_version)

    @classmethod
    def load(cls, path: str | os.PathLike, device: int = CPU_DEVICE) -> Network:
        """Read a network from the given file.

        Raises
        ------
            persist.ModelFormatError: if the file is malformed.
        """
        net = cls(device)
        with open(path, "rb") as stream:
            reader = persist.Reader(stream)
            version = reader.read_header()

            # 1. create the nodes and let them read their payload
            for _ in range(reader.read_u32()):
                operation = reader.read_str()
                name = reader.read_str()
                kind = graph.KINDS.get(operation)
                if kind is None:
                    raise persist.ModelFormatError(f"network: unknown operation '{operation}' for node '{name}'")
                node = kind.empty(name, device)
                node.load_state(reader, version)
                net.add(node)

            # 2. connect the nodes
            reader.expect_marker("edges")
            for _ in range(len(net)):
                node = net.node(reader.read_str())
                names = [reader.read_str() for _ in range(reader.read_u32())]
                node.attach_inputs([net.node(name) if name else None for name in names])
            reader.expect_marker("end")

        logger.info("loaded %d nodes from %s (model version %d)", len(net), path, version)
        return net
