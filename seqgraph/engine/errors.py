"""Error taxonomy of the evaluation engine.

Every failure aborts the current operation (graph build, forward sweep or
backward sweep) and propagates to the caller. Nothing at this layer retries.

1. ConfigurationError: the graph is malformed (missing input, arity
mismatch, shape mismatch) and this was detected while building or
validating it.

2. RuntimeComputationError: a shape or layout inconsistency that only
shows up during a sweep, or a misuse of the buffer pool.

3. LogicInvariantViolation: a programming-contract violation, such as
evaluating a whole-batch-only node for a single frame.

Messages carry the operation kind, the node name and the expected and
actual shape or arity, so a failure is diagnosable from the message alone.
"""

# SPDX-License-Identifier: Apache-2.0


class EngineError(Exception):
    """Base class for all the errors raised by the engine."""


class ConfigurationError(EngineError):
    """Raised when the graph is malformed at build or validation time."""


class RuntimeComputationError(EngineError):
    """Raised when a sweep finds inconsistent shapes or layouts."""


class LogicInvariantViolation(EngineError):
    """Raised when a caller violates a programming contract."""


def node_label(node) -> str:
    """Return the `<Operation> node '<name>'` prefix used in error messages."""
    return f"{node.operation} node '{node.name}'"
