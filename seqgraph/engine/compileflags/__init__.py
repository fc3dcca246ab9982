"""
The compileflags package defines the flags used by the evaluation engine.

We centralize the definition of flags to avoid defining flags into each package
and ending up with incompatible engine flags.
"""

from typing import Callable
import os


TRACE = 1 << 0
"""Indicates that we should trace execution."""

BREAK = 1 << 1
"""Indicates that we should break execution after evaluation."""

DUMP = 1 << 2
"""Indicates that we should print the execution plan before a forward sweep."""

NANPAD = 1 << 3
"""Indicates that we should fill padding columns with NaN after evaluation.

Consumers mask padding before reducing over columns, so a correct graph
produces the same result with or without this flag. A node that opts out
of scheduler masking and forgets to mask its own inputs will instead
propagate the NaN, which makes the bug visible."""

_flagnames: dict[str, int] = {
    "break": BREAK,
    "dump": DUMP,
    "nanpad": NANPAD,
    "trace": TRACE,
}
"""Maps the lowercase name of the flag to its value."""


def from_environ(
    varname: str = "SEQGRAPH_ENGINE_FLAGS",
    getenv: Callable[[str], str | None] = os.getenv,
) -> int:
    """Read flags from a specific environment variable.

    The format for the flags is the following:

        <key>[,<key>,...]

    where <key> is the case-insensitive name of an existing flag.

    For example:

        export SEQGRAPH_ENGINE_FLAGS=trace,nanpad

    causes this function to return:

        TRACE|NANPAD

    Arguments
    ---------
    varname: the name of the environment variable (default: `SEQGRAPH_ENGINE_FLAGS`).
    getenv: the function to read the environment variable (default: os.getenv).
    """
    flags: int = 0
    for value in (getenv(varname) or "").split(","):
        flags |= _flagnames.get(value.strip().lower(), 0)
    return flags


defaults = from_environ()
"""Default engine flags initialized from the `SEQGRAPH_ENGINE_FLAGS` environment variable."""
