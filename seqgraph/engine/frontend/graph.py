"""Computation Graph Building.

This module allows to build a computation graph for training parameterized
models on minibatches of variable-length sequences. Each node is an operation
whose value is a 2-D matrix with one row per feature and, for nodes carrying
minibatch data, one column per (time step, sequence) cell of the current
`layout.MinibatchLayout`.

This module provides:

1. Leaf nodes for minibatch inputs and learnable parameters
2. Element-wise operations (plus, minus, element_times, tanh, sigmoid)
3. Matrix product (times)
4. Recurrence (past_value), which reads the previous time step of its input
5. Whole-batch criteria (sum_elements, square_error, cross_entropy_with_softmax)
6. Built-in debug operations (tracepoint, breakpoint)

Here's an example of what you can do with this module:

    >>> from seqgraph.engine.frontend import graph
    >>>
    >>> x = graph.input_value(3, name="x")
    >>> W = graph.learnable_parameter(4, 3, name="W")
    >>> U = graph.learnable_parameter(4, 4, name="U")
    >>> h_prev = graph.past_value(None, rows=4)
    >>> h = graph.tanh(graph.plus(graph.times(W, x), graph.times(U, h_prev)))
    >>> h_prev.set_input(0, h)

The last line closes a recurrent loop: `past_value` reads the value of `h`
at time step t-1, so the cycle is a delay and not a circular dependency. See
the `linearize` module for how we detect and schedule such loops.

Like in the `graph` modules of array libraries, operations are classes named
using snake_case, so that the code building a graph reads like code computing
with matrices. Each class captures the inputs it receives on construction
and its `operation` class attribute is the tag used for persistence and for
error messages (e.g., `Plus`).

Design Decisions
----------------

1. Capability Flags:
   - There is a single level of kinds below `Node`
   - Each kind declares `arity`, `whole_batch_only`, `masks_own_padding`
     and `delayed_inputs` as class attributes
   - The scheduler reads the flags, the kinds do not override the scheduler

2. Separation of Graph and Kernels:
   - Nodes own shapes, buffers and wiring
   - The numerical kernels live in the `numpybackend.operators` table

3. Node Identity:
   - Nodes are hashed and compared by identity
   - `is_equal_to` implements structural equality

4. Node Representation:
   - The __repr__ of a node emits the Python code that would generate it

Node Representation
-------------------

Given this code:

    a = graph.input_value(2, name="a")
    b = graph.input_value(2, name="b")
    c = graph.plus(a, b)

If you print each node, you obtain:

    n1 = graph.input_value(rows=2, name='a')
    n2 = graph.input_value(rows=2, name='b')
    n3 = graph.plus(left=n1, right=n2, name='AutoName3')

Lifecycle
---------

Nodes are created and wired (via the constructor, `attach_inputs` or
`set_input`), then validated twice (see `network.Network.validate`), then
evaluated repeatedly. Each minibatch calls `resize_for_minibatch`, which
destructively reallocates the buffers of nodes carrying a layout: a node must
not assume its buffers survive across minibatches.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar, Sequence

import numpy as np

from .. import atomic, compileflags
from ..errors import ConfigurationError, LogicInvariantViolation, RuntimeComputationError, node_label
from ..layout import MinibatchLayout
from ..pool import CPU_DEVICE, BufferPool

if TYPE_CHECKING:
    from .persist import Reader, Writer

NODE_FLAG_TRACE = compileflags.TRACE
"""Inserts a tracepoint at the corresponding graph node."""

NODE_FLAG_BREAK = compileflags.BREAK
"""Inserts a breakpoint at the corresponding graph node."""


_counter = atomic.Int()
"""Atomic counter generating node IDs and evaluation timestamps."""


class CopyFlags(enum.IntFlag):
    """Selects what `Node.clone` copies."""

    VALUE = 1 << 0
    """Copy the name, the device and the value and gradient buffers."""

    INPUTS = 1 << 1
    """Copy the input wiring."""

    ALL = VALUE | INPUTS


@dataclass
class OrderingState:
    """Bookkeeping written by the `linearize` module.

    Attributes
    ----------
    visited_order: 1-based position in the depth-first postorder (0 = unvisited).
    index: Tarjan discovery index (-1 = undiscovered).
    low_link: Tarjan low-link value.
    in_stack: whether the node is on the Tarjan stack.
    loop_id: ID of the recurrent loop containing the node (-1 = none).
    index_in_loop: position in the intra-loop order (-1 = none).
    """

    visited_order: int = 0
    index: int = -1
    low_link: int = -1
    in_stack: bool = False
    loop_id: int = -1
    index_in_loop: int = -1

    def clear(self) -> None:
        """Reset all the fields to their initial values."""
        self.visited_order = 0
        self.index = -1
        self.low_link = -1
        self.in_stack = False
        self.loop_id = -1
        self.index_in_loop = -1


KINDS: dict[str, type[Node]] = {}
"""Maps an operation tag to the class implementing it."""


def register_kind(cls: type[Node]) -> type[Node]:
    """Register a node class so that it can be loaded from a model stream.

    This function is meant to be used as a class decorator.
    """
    if cls.operation in KINDS and KINDS[cls.operation] is not cls:
        raise ConfigurationError(f"graph: operation '{cls.operation}' is already registered")
    KINDS[cls.operation] = cls
    return cls


class Node:
    """
    Base class for all computation graph nodes.

    Design Notes
    ------------

    1. Identity Semantics:
        - Nodes use identity-based hashing and equality
        - Enables use of nodes as dictionary and sets keys

    2. Capabilities:
        - `arity` is the number of inputs (None means variadic)
        - `whole_batch_only` kinds reduce over the whole minibatch and
          cannot be evaluated one time step at a time
        - `masks_own_padding` kinds handle padding themselves, so the
          scheduler does not mask their inputs nor their gradient
        - `delayed_inputs` lists the input indexes read at time step t-1

    3. Debug Support:
        - Nodes carry flags for debugging (trace/break)
        - Names for better error reporting

    Args:
        *inputs: the input nodes (None placeholders are allowed while building).
        name: the unique node name (default: `AutoName<id>`).
        device: the device affinity (default: the CPU).
    """

    operation: ClassVar[str] = "Node"
    arity: ClassVar[int | None] = None
    input_names: ClassVar[tuple[str, ...]] = ()
    whole_batch_only: ClassVar[bool] = False
    masks_own_padding: ClassVar[bool] = False
    delayed_inputs: ClassVar[frozenset[int]] = frozenset()

    def __init__(self, *inputs: Node | None, name: str = "", device: int = CPU_DEVICE) -> None:
        self._init_node(name, device)
        self.attach_inputs(list(inputs))

    def _init_node(self, name: str, device: int) -> None:
        self.id = _counter.next()
        self.name = name or f"AutoName{self.id}"
        self.flags = 0
        self.device = device
        self.inputs: list[Node | None] = []
        self.value = np.zeros((0, 0))
        self.gradient: np.ndarray | None = None
        self.layout: MinibatchLayout | None = None
        self.has_layout = False
        self.needs_gradient = False
        self.parameter_update_required = False
        self.ordering = OrderingState()
        self.eval_timestamp = -1
        self.transients: dict[str, np.ndarray] = {}

    @classmethod
    def empty(cls, name: str, device: int = CPU_DEVICE) -> Node:
        """Create an unwired node whose state is filled by `load_state`."""
        node = cls.__new__(cls)
        node._init_node(name, device)
        return node

    # Shape

    @property
    def num_rows(self) -> int:
        """Return the number of rows of the value buffer."""
        return self.value.shape[0]

    @property
    def num_cols(self) -> int:
        """Return the number of columns of the value buffer."""
        return self.value.shape[1]

    def _set_output_shape(self, rows: int, cols: int) -> None:
        if self.has_layout:
            # The columns depend on the minibatch and are set on resize
            cols = self.num_cols if self.layout is not None else 0
        if self.value.shape != (rows, cols):
            self.value = np.zeros((rows, cols))

    # Wiring

    def attach_inputs(self, inputs: Sequence[Node | None]) -> None:
        """Connect the given inputs, replacing the existing ones.

        Raises
        ------
            ConfigurationError: if the number of inputs does not match the arity.
        """
        if self.arity is not None and len(inputs) != self.arity:
            raise ConfigurationError(
                f"{node_label(self)}: expected {self.arity} inputs, but got {len(inputs)}"
            )
        self.inputs = list(inputs)
        self.eval_timestamp = -1

    def detach_inputs(self) -> None:
        """Disconnect all the inputs."""
        self.inputs = []
        self.eval_timestamp = -1

    def set_input(self, index: int, node: Node | None) -> None:
        """Replace the input at the given index."""
        if not 0 <= index < len(self.inputs):
            raise ConfigurationError(
                f"{node_label(self)}: input index {index} out of range for {len(self.inputs)} inputs"
            )
        self.inputs[index] = node
        self.eval_timestamp = -1

    def input(self, index: int) -> Node:
        """Return the input at the given index, which must be connected."""
        node = self.inputs[index]
        if node is None:
            raise LogicInvariantViolation(f"{node_label(self)}: input {index} is not connected")
        return node

    # Validation

    def validate(self, is_final_pass: bool) -> None:
        """Check the inputs and infer the output shape.

        The network runs validation twice in forward order. The first pass
        may see inputs whose shape is not known yet (e.g., the input of a
        `past_value` closing a loop), the final pass must see them all.

        Raises
        ------
            ConfigurationError: if an input is missing or has an empty shape,
                or if the kind specific shape checks fail.
        """
        for index, node in enumerate(self.inputs):
            if node is None:
                raise ConfigurationError(f"{node_label(self)}: input {index} is not connected")
            if is_final_pass and (node.num_rows == 0 or (node.num_cols == 0 and not node.has_layout)):
                raise ConfigurationError(
                    f"{node_label(self)}: input {index} ({node_label(node)}) has "
                    f"empty shape {node.num_rows} x {node.num_cols}"
                )
        self.has_layout = self._infer_has_layout()
        self.infer_output_shape(is_final_pass)

    def _infer_has_layout(self) -> bool:
        return any(node.has_layout for node in self.inputs if node is not None)

    def infer_output_shape(self, is_final_pass: bool) -> None:
        """Infer the shape of the value buffer from the inputs."""

    def _check_same_rows(self, is_final_pass: bool) -> int:
        left, right = self.input(0), self.input(1)
        if is_final_pass or (left.num_rows and right.num_rows):
            if left.num_rows != right.num_rows:
                raise ConfigurationError(
                    f"{node_label(self)}: inputs have mismatching rows: "
                    f"{left.num_rows} x {left.num_cols} vs {right.num_rows} x {right.num_cols}"
                )
        return max(left.num_rows, right.num_rows)

    def _check_same_shape(self, is_final_pass: bool) -> None:
        self._check_same_rows(is_final_pass)
        if not is_final_pass:
            return
        left, right = self.input(0), self.input(1)
        if left.has_layout != right.has_layout:
            raise ConfigurationError(
                f"{node_label(self)}: both inputs must either have or not have a layout"
            )
        if not left.has_layout and left.num_cols != right.num_cols:
            raise ConfigurationError(
                f"{node_label(self)}: inputs have mismatching shapes: "
                f"{left.num_rows} x {left.num_cols} vs {right.num_rows} x {right.num_cols}"
            )

    # Buffers

    def resize_for_minibatch(self, layout: MinibatchLayout) -> None:
        """Reallocate the buffers for the given minibatch layout.

        The operation is destructive: buffers whose shape changes lose
        their content. Nodes without layout keep their shape.
        """
        self.layout = layout if self.has_layout else None
        cols = layout.num_cols if self.has_layout else self.num_cols
        if self.value.shape != (self.num_rows, cols):
            self.value = np.zeros((self.num_rows, cols))
        if not self.needs_gradient:
            self.gradient = None
        elif self.gradient is None or self.gradient.shape != self.value.shape:
            self.gradient = np.zeros_like(self.value)

    def transient_shapes(self) -> dict[str, tuple[int, int]]:
        """Return the transient buffers required between forward and backward."""
        return {}

    def request_transient_buffers(self, pool: BufferPool) -> None:
        """Borrow the transient buffers from the given pool."""
        self.release_transient_buffers(pool)
        for key, shape in self.transient_shapes().items():
            self.transients[key] = pool.request(shape, device=self.device)

    def release_transient_buffers(self, pool: BufferPool) -> None:
        """Return the transient buffers to the given pool."""
        for buffer in self.transients.values():
            pool.release(buffer)
        self.transients.clear()

    def move_to_device(self, device: int) -> None:
        """Move the value and gradient buffers to another device.

        Both buffers move together or none moves. Transient buffers belong
        to the pool, so they must be released before moving.
        """
        if device == self.device:
            return
        if self.transients:
            raise LogicInvariantViolation(
                f"{node_label(self)}: cannot move to device {device} while holding transient buffers"
            )
        value = np.array(self.value, copy=True)
        gradient = None if self.gradient is None else np.array(self.gradient, copy=True)
        self.value, self.gradient, self.device = value, gradient, device

    # Evaluation hooks

    def on_evaluate_begin_iteration(self) -> None:
        """Run bookkeeping before the forward evaluation of this node."""

    def on_evaluate_end_iteration(self) -> None:
        """Run bookkeeping after the forward evaluation of this node."""

    def update_eval_timestamp(self) -> None:
        """Mark the value as freshly computed."""
        self.eval_timestamp = _counter.next()

    def is_value_older_than_inputs(self) -> bool:
        """Tell whether any input was recomputed after (or with) this node."""
        return any(node is not None and node.eval_timestamp >= self.eval_timestamp for node in self.inputs)

    # Copy

    def clone(self, flags: CopyFlags = CopyFlags.ALL, name: str | None = None) -> Node:
        """Return a copy of this node.

        With `CopyFlags.VALUE` the copy has the same name, value and
        gradient as this node. With `CopyFlags.INPUTS` the copy is connected
        to the same inputs. The device and the kind specific configuration
        (e.g., the number of rows of an input) are always copied, while the
        ordering bookkeeping never is.
        """
        other = copy.copy(self)
        other.id = _counter.next()
        other.ordering = OrderingState()
        other.transients = {}
        if flags & CopyFlags.VALUE:
            other.name = self.name if name is None else name
            other.value = self.value.copy()
            other.gradient = None if self.gradient is None else self.gradient.copy()
        else:
            other.name = name or f"AutoName{other.id}"
            other.value = np.zeros((0, 0))
            other.gradient = None
            other.layout = None
            other.needs_gradient = False
            other.eval_timestamp = -1
        other.inputs = list(self.inputs) if flags & CopyFlags.INPUTS else []
        return other

    # Persistence

    def save_state(self, writer: Writer) -> None:
        """Write the operation tag, the name and the kind specific payload."""
        writer.write_str(self.operation)
        writer.write_str(self.name)
        self._save_payload(writer)

    def load_state(self, reader: Reader, model_version: int) -> None:
        """Read the kind specific payload (tag and name are already consumed)."""
        self._load_payload(reader, model_version)

    def _save_payload(self, writer: Writer) -> None:
        pass

    def _load_payload(self, reader: Reader, model_version: int) -> None:
        pass

    # Introspection

    def describe(self) -> str:
        """Return a human readable one-line description of the node."""
        children = ", ".join("<none>" if node is None else node.name for node in self.inputs)
        cols = "T*S" if self.has_layout and self.layout is None else str(self.num_cols)
        return f"{self.name} : {self.operation} {self.num_rows} x {cols} ({children})"

    def is_equal_to(self, other: Node) -> bool:
        """Tell whether two nodes compute the same thing.

        Two nodes are equal when they have the same kind and either the same
        name or the very same inputs. Leaves with different names are never
        equal, since we cannot tell what they contain.
        """
        if self is other:
            return True
        if self.operation != other.operation or len(self.inputs) != len(other.inputs):
            return False
        if self.name == other.name:
            return True
        if not self.inputs:
            return False
        return all(a is b and a is not None for a, b in zip(self.inputs, other.inputs))

    def _repr_config(self) -> list[str]:
        return []

    def __repr__(self) -> str:
        """Return a round-trippable SSA representation of the node."""
        args = [
            f"{key}={'None' if node is None else f'n{node.id}'}"
            for key, node in zip(self.input_names, self.inputs)
        ]
        args.extend(self._repr_config())
        args.append(f"name='{self.name}'")
        return f"n{self.id} = graph.{type(self).__name__}({', '.join(args)})"

    def __str__(self) -> str:
        """Return a round-trippable SSA representation of the node."""
        return repr(self)

    def __hash__(self) -> int:
        """Use identity-based hashing."""
        return id(self)


# Leaves


@register_kind
class input_value(Node):
    """Minibatch input fed by the data source.

    Args:
        rows: the number of features per sample.
    """

    operation = "InputValue"
    arity = 0

    def __init__(self, rows: int, name: str = "", device: int = CPU_DEVICE) -> None:
        super().__init__(name=name, device=device)
        self.rows = rows
        self.has_layout = True
        self.value = np.zeros((rows, 0))

    def _infer_has_layout(self) -> bool:
        return True

    def infer_output_shape(self, is_final_pass: bool) -> None:
        """Use the configured number of rows."""
        self._set_output_shape(self.rows, 0)

    def resize_for_minibatch(self, layout: MinibatchLayout) -> None:
        """Check that the bound data matches the layout."""
        if self.value.shape != (self.rows, layout.num_cols):
            raise RuntimeComputationError(
                f"{node_label(self)}: bound data has shape {self.value.shape} but layout "
                f"requires ({self.rows}, {layout.num_cols})"
            )
        self.layout = layout
        self.gradient = None

    def _repr_config(self) -> list[str]:
        return [f"rows={self.rows}"]

    def _save_payload(self, writer: Writer) -> None:
        writer.write_u32(self.rows)

    def _load_payload(self, reader: Reader, model_version: int) -> None:
        self.rows = reader.read_u32()
        self.has_layout = True
        self.value = np.zeros((self.rows, 0))

    def __repr__(self) -> str:
        """Return a round-trippable SSA representation of the node."""
        return f"n{self.id} = graph.input_value(rows={self.rows}, name='{self.name}')"


@register_kind
class learnable_parameter(Node):
    """Matrix of parameters updated by training.

    Args:
        rows: the number of rows.
        cols: the number of columns.
        init: either a scalar used to fill the matrix or the initial matrix.
        parameter_update_required: whether training should update the matrix.
    """

    operation = "LearnableParameter"
    arity = 0

    def __init__(
        self,
        rows: int,
        cols: int,
        init: float | np.ndarray = 0.0,
        parameter_update_required: bool = True,
        name: str = "",
        device: int = CPU_DEVICE,
    ) -> None:
        super().__init__(name=name, device=device)
        value = np.array(init, dtype=np.float64)
        if value.ndim == 0:
            value = np.full((rows, cols), float(value))
        if value.shape != (rows, cols):
            raise ConfigurationError(
                f"{node_label(self)}: initial value has shape {value.shape}, expected ({rows}, {cols})"
            )
        self.value = value
        self.parameter_update_required = parameter_update_required
        self.needs_gradient = parameter_update_required
        self.gradient = np.zeros_like(value) if parameter_update_required else None

    def infer_output_shape(self, is_final_pass: bool) -> None:
        """Keep the parameter matrix, which has a fixed shape."""

    def _repr_config(self) -> list[str]:
        return [
            f"rows={self.num_rows}",
            f"cols={self.num_cols}",
            f"parameter_update_required={self.parameter_update_required}",
        ]

    def _save_payload(self, writer: Writer) -> None:
        writer.write_u32(int(self.parameter_update_required))
        writer.write_array(self.value)

    def _load_payload(self, reader: Reader, model_version: int) -> None:
        self.parameter_update_required = bool(reader.read_u32())
        self.needs_gradient = self.parameter_update_required
        self.value = reader.read_array()
        self.gradient = np.zeros_like(self.value) if self.needs_gradient else None


# Element-wise operations


class BinaryOp(Node):
    """Base class for operations taking two inputs.

    Args:
        left: First input node
        right: Second input node
    """

    arity = 2
    input_names = ("left", "right")

    def __init__(self, left: Node | None, right: Node | None, name: str = "", device: int = CPU_DEVICE) -> None:
        super().__init__(left, right, name=name, device=device)

    @property
    def left(self) -> Node | None:
        """Return the left input."""
        return self.inputs[0]

    @property
    def right(self) -> Node | None:
        """Return the right input."""
        return self.inputs[1]


class ElementWiseBinaryOp(BinaryOp):
    """Binary operation between matrices with the same number of rows.

    A matrix without layout and with a single column broadcasts over all
    the columns of the other input (e.g., a bias).
    """

    def infer_output_shape(self, is_final_pass: bool) -> None:
        """Check the rows and broadcasting rules."""
        rows = self._check_same_rows(is_final_pass)
        left, right = self.input(0), self.input(1)
        if not self.has_layout and is_final_pass:
            if left.num_cols != right.num_cols and 1 not in (left.num_cols, right.num_cols):
                raise ConfigurationError(
                    f"{node_label(self)}: cannot broadcast {left.num_rows} x {left.num_cols} "
                    f"with {right.num_rows} x {right.num_cols}"
                )
        if self.has_layout and is_final_pass:
            for node in (left, right):
                if not node.has_layout and node.num_cols != 1:
                    raise ConfigurationError(
                        f"{node_label(self)}: input {node_label(node)} without layout must have "
                        f"1 column to broadcast, but has {node.num_cols}"
                    )
        self._set_output_shape(rows, max(left.num_cols, right.num_cols))


@register_kind
class plus(ElementWiseBinaryOp):
    """Element-wise addition of two matrices."""

    operation = "Plus"


@register_kind
class minus(ElementWiseBinaryOp):
    """Element-wise subtraction of two matrices."""

    operation = "Minus"


@register_kind
class element_times(ElementWiseBinaryOp):
    """Element-wise multiplication of two matrices."""

    operation = "ElementTimes"


@register_kind
class times(BinaryOp):
    """Matrix product of a (parameter) matrix and a matrix of samples."""

    operation = "Times"

    def infer_output_shape(self, is_final_pass: bool) -> None:
        """Check the inner dimensions."""
        left, right = self.input(0), self.input(1)
        if left.has_layout:
            raise ConfigurationError(f"{node_label(self)}: left input {node_label(left)} must not have a layout")
        if (is_final_pass or right.num_rows) and left.num_cols != right.num_rows:
            raise ConfigurationError(
                f"{node_label(self)}: inner dimensions mismatch: "
                f"{left.num_rows} x {left.num_cols} times {right.num_rows} x {right.num_cols}"
            )
        self._set_output_shape(left.num_rows, right.num_cols)


class UnaryOp(Node):
    """Base class for element-wise operations taking one input.

    Args:
        node: The input node
    """

    arity = 1
    input_names = ("node",)

    def __init__(self, node: Node | None, name: str = "", device: int = CPU_DEVICE) -> None:
        super().__init__(node, name=name, device=device)

    @property
    def node(self) -> Node | None:
        """Return the input."""
        return self.inputs[0]

    def infer_output_shape(self, is_final_pass: bool) -> None:
        """Copy the shape of the input."""
        node = self.input(0)
        self._set_output_shape(node.num_rows, node.num_cols)


@register_kind
class tanh(UnaryOp):
    """Element-wise hyperbolic tangent."""

    operation = "Tanh"


@register_kind
class sigmoid(UnaryOp):
    """Element-wise logistic function."""

    operation = "Sigmoid"


# Recurrence


@register_kind
class past_value(UnaryOp):
    """Value of the input at time step t - time_step.

    For the first `time_step` steps of each sequence, and right after a
    sequence start, the output is `initial_value`. The input edge is a
    delayed edge, so it can close a recurrent loop.

    Args:
        node: the input node, which may be None while building a loop.
        rows: the number of rows, required when the input shape cannot be
            inferred during the first validation pass (i.e., inside a loop).
        initial_value: the value used before the sequence start.
        time_step: the delay in time steps.
    """

    operation = "PastValue"
    delayed_inputs = frozenset({0})

    def __init__(
        self,
        node: Node | None,
        rows: int | None = None,
        initial_value: float = 0.1,
        time_step: int = 1,
        name: str = "",
        device: int = CPU_DEVICE,
    ) -> None:
        if time_step < 1:
            raise ConfigurationError(f"PastValue node '{name}': time_step must be positive, got {time_step}")
        super().__init__(node, name=name, device=device)
        self.rows = rows
        self.initial_value = initial_value
        self.time_step = time_step

    def _infer_has_layout(self) -> bool:
        return True

    def infer_output_shape(self, is_final_pass: bool) -> None:
        """Use the input rows, or the configured rows before they are known."""
        node = self.input(0)
        rows = node.num_rows or (self.rows or 0)
        if self.rows is not None and node.num_rows and node.num_rows != self.rows:
            raise ConfigurationError(
                f"{node_label(self)}: configured with {self.rows} rows but input has {node.num_rows}"
            )
        if is_final_pass and rows == 0:
            raise ConfigurationError(f"{node_label(self)}: cannot infer the number of rows")
        if is_final_pass and not node.has_layout:
            raise ConfigurationError(f"{node_label(self)}: input {node_label(node)} has no layout to delay")
        self._set_output_shape(rows, 0)

    def _repr_config(self) -> list[str]:
        return [f"rows={self.rows}", f"initial_value={self.initial_value}", f"time_step={self.time_step}"]

    def _save_payload(self, writer: Writer) -> None:
        writer.write_u32(self.rows or 0)
        writer.write_f64(self.initial_value)
        if writer.model_version >= 2:
            writer.write_u32(self.time_step)

    def _load_payload(self, reader: Reader, model_version: int) -> None:
        self.rows = reader.read_u32() or None
        self.initial_value = reader.read_f64()
        # Version 1 streams did not support delays other than one
        self.time_step = reader.read_u32() if model_version >= 2 else 1


# Whole-batch reductions and criteria


@register_kind
class sum_elements(UnaryOp):
    """Sum of all the elements of the input over the whole minibatch."""

    operation = "SumElements"
    whole_batch_only = True

    def infer_output_shape(self, is_final_pass: bool) -> None:
        """Produce a 1 x 1 matrix."""
        self.input(0)
        self._set_output_shape(1, 1)

    def _infer_has_layout(self) -> bool:
        return False


@register_kind
class square_error(BinaryOp):
    """Half the squared Frobenius norm of left - right.

    The node masks the padding of its own difference buffer, so it opts
    out of the scheduler masking.
    """

    operation = "SquareError"
    whole_batch_only = True
    masks_own_padding = True

    def infer_output_shape(self, is_final_pass: bool) -> None:
        """Check the inputs have the same shape and produce a 1 x 1 matrix."""
        self._check_same_shape(is_final_pass)
        self._set_output_shape(1, 1)

    def _infer_has_layout(self) -> bool:
        return False

    def transient_shapes(self) -> dict[str, tuple[int, int]]:
        """Return the shape of the difference buffer."""
        return {"diff": self.input(0).value.shape}


@register_kind
class cross_entropy_with_softmax(BinaryOp):
    """Cross entropy between labels and the softmax of the logits.

    Softmax is computed column by column. The node keeps the softmax in a
    transient buffer for the backward sweep and masks its own padding.

    Args:
        labels: the target distributions (usually one-hot columns).
        logits: the unnormalized scores.
    """

    operation = "CrossEntropyWithSoftmax"
    input_names = ("labels", "logits")
    whole_batch_only = True
    masks_own_padding = True

    def __init__(self, labels: Node | None, logits: Node | None, name: str = "", device: int = CPU_DEVICE) -> None:
        super().__init__(labels, logits, name=name, device=device)

    def infer_output_shape(self, is_final_pass: bool) -> None:
        """Check the inputs have the same shape and produce a 1 x 1 matrix."""
        self._check_same_shape(is_final_pass)
        self._set_output_shape(1, 1)

    def _infer_has_layout(self) -> bool:
        return False

    def transient_shapes(self) -> dict[str, tuple[int, int]]:
        """Return the shapes of the softmax and log-softmax buffers."""
        shape = self.input(1).value.shape
        return {"softmax": shape, "log_softmax": shape}


# Debug operations


def tracepoint(node: Node) -> Node:
    """
    Mark the node as a tracepoint and returns it.

    The tracepoint will take effect while evaluating the node. We will
    print information before evaluating the node, evaluate it, then
    print the result.
    """
    node.flags |= NODE_FLAG_TRACE
    return node


def breakpoint(node: Node) -> Node:
    """
    Mark the node as a breakpoint and returns it.

    The breakpoint will cause the executor to stop after
    evaluating the node.
    """
    node.flags |= NODE_FLAG_TRACE | NODE_FLAG_BREAK
    return node
