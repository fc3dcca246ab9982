"""Minibatch layout and masking.

A minibatch packs S variable-length sequences side by side into a grid of
T time steps. Each node buffer that carries minibatch data has one column
per grid cell, and the column of cell (t, s) is `t * S + s`. Sequences
shorter than T leave gaps (padding) that hold no data:

    t=0   t=1   t=2
    s0 s1 s0 s1 s0 s1
    a0 b0 a1 b1 a2 --      <- s1 ends after two steps; column 5 is padding

Nodes that operate column by column (map style) can ignore the gaps: garbage
in, garbage out. Nodes that reduce across columns (sums, norms, inner
products) must not see the gaps, so the scheduler zeroes them using
`mask_columns_to` before such reductions happen.

A `FrameRange` selects either the whole minibatch or the columns of a single
time step (optionally of a single sequence) and `data_slice` turns it into a
column view of a buffer.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .errors import LogicInvariantViolation, RuntimeComputationError


class CellFlags(enum.IntFlag):
    """Flags attached to each (time step, sequence) cell of a layout."""

    NONE = 0
    SEQUENCE_START = 1 << 0
    SEQUENCE_END = 1 << 1
    NO_INPUT = 1 << 2


class MinibatchLayout:
    """Describes how sequences are packed into a T x S grid.

    The layout is mutable while the reader fills it in and read-only after
    `freeze()`, which the scheduler calls when a sweep starts. The scheduler
    and all the nodes share the same layout object for one minibatch.

    Args:
        num_time_steps: number of time steps T.
        num_parallel_sequences: number of parallel sequences S.
    """

    def __init__(self, num_time_steps: int, num_parallel_sequences: int) -> None:
        if num_time_steps < 0 or num_parallel_sequences < 1:
            raise RuntimeComputationError(
                f"layout: invalid grid T={num_time_steps} x S={num_parallel_sequences}"
            )
        self.num_time_steps = num_time_steps
        self.num_parallel_sequences = num_parallel_sequences
        self._flags = np.zeros((num_time_steps, num_parallel_sequences), dtype=np.uint8)
        self._time_flags = np.zeros(num_time_steps, dtype=np.uint8)
        self._frozen = False

    @classmethod
    def from_lengths(cls, lengths: Sequence[int], num_time_steps: int | None = None) -> MinibatchLayout:
        """Create a layout with one sequence per parallel slot.

        Sequence `s` occupies time steps `0 .. lengths[s] - 1` and the
        remaining cells of its slot are flagged as padding.
        """
        if not lengths:
            raise RuntimeComputationError("layout: need at least one sequence")
        longest = max(lengths)
        if num_time_steps is None:
            num_time_steps = longest
        if longest > num_time_steps:
            raise RuntimeComputationError(f"layout: sequence of length {longest} exceeds T={num_time_steps}")
        layout = cls(num_time_steps, len(lengths))
        for s, length in enumerate(lengths):
            if length > 0:
                layout.set(0, s, CellFlags.SEQUENCE_START)
                layout.set(length - 1, s, CellFlags.SEQUENCE_END)
            for t in range(length, num_time_steps):
                layout.set(t, s, CellFlags.NO_INPUT)
        return layout

    @property
    def num_cols(self) -> int:
        """Return the number of columns T * S of a buffer with this layout."""
        return self.num_time_steps * self.num_parallel_sequences

    @property
    def frozen(self) -> bool:
        """Tell whether the layout became read-only."""
        return self._frozen

    @property
    def has_padding(self) -> bool:
        """Fast check telling whether any cell is padding."""
        return bool(np.any(self._time_flags & CellFlags.NO_INPUT))

    def freeze(self) -> MinibatchLayout:
        """Make the layout read-only and return it."""
        self._frozen = True
        self._flags.setflags(write=False)
        self._time_flags.setflags(write=False)
        return self

    def set(self, t: int, s: int, flags: CellFlags) -> None:
        """Add the given flags to cell (t, s)."""
        if self._frozen:
            raise LogicInvariantViolation("layout: cannot modify a frozen layout")
        self._flags[t, s] |= flags
        self._time_flags[t] |= flags

    def flags(self, t: int, s: int) -> CellFlags:
        """Return the flags of cell (t, s)."""
        return CellFlags(int(self._flags[t, s]))

    def is_(self, t: int, s: int, flags: CellFlags) -> bool:
        """Tell whether cell (t, s) has any of the given flags."""
        return bool(self._flags[t, s] & flags)

    def time_step_has(self, t: int, flags: CellFlags) -> bool:
        """Tell whether any sequence at time step t has any of the given flags."""
        return bool(self._time_flags[t] & flags)

    def is_valid(self, t: int, s: int) -> bool:
        """Tell whether cell (t, s) holds real data."""
        return not self.is_(t, s, CellFlags.NO_INPUT)

    def column(self, t: int, s: int) -> int:
        """Return the buffer column of cell (t, s)."""
        return t * self.num_parallel_sequences + s

    def valid_columns(self) -> np.ndarray:
        """Return a boolean vector telling which columns hold real data."""
        return (self._flags.reshape(-1) & CellFlags.NO_INPUT) == 0

    def num_valid_samples(self) -> int:
        """Return the number of non-padding cells."""
        return int(np.count_nonzero(self.valid_columns()))

    def __repr__(self) -> str:
        """Return a compact representation of the layout."""
        return (
            f"MinibatchLayout(T={self.num_time_steps}, S={self.num_parallel_sequences}, "
            f"valid={self.num_valid_samples()}/{self.num_cols})"
        )


@dataclass(frozen=True)
class FrameRange:
    """Selects the whole minibatch, a time step, or a time step of one sequence.

    Attributes
    ----------
    t: the time step, or None for the whole minibatch.
    seq: the parallel sequence, or None for all of them.
    """

    t: int | None = None
    seq: int | None = None

    def __post_init__(self) -> None:
        """Check that a sequence index comes with a time step."""
        if self.t is None and self.seq is not None:
            raise LogicInvariantViolation("frame: selecting a sequence requires a time step")

    @property
    def is_all_frames(self) -> bool:
        """Tell whether the range covers the whole minibatch."""
        return self.t is None

    def columns(self, layout: MinibatchLayout) -> slice:
        """Return the column slice selected by this range."""
        if self.t is None:
            return slice(0, layout.num_cols)
        start = self.t * layout.num_parallel_sequences
        if self.seq is None:
            return slice(start, start + layout.num_parallel_sequences)
        return slice(start + self.seq, start + self.seq + 1)

    def __str__(self) -> str:
        """Return a short human readable description."""
        if self.t is None:
            return "whole batch"
        if self.seq is None:
            return f"t={self.t}"
        return f"t={self.t}, s={self.seq}"


ALL_FRAMES = FrameRange()
"""The frame range covering the whole minibatch."""


def data_slice(buffer: np.ndarray, frame: FrameRange, layout: MinibatchLayout | None) -> np.ndarray:
    """Return the column view of buffer selected by frame.

    A buffer without layout (e.g., a parameter) does not depend on time, so
    we return it whole whatever the frame.
    """
    if layout is None or frame.is_all_frames:
        return buffer
    return buffer[:, frame.columns(layout)]


def mask_columns_to(
    buffer: np.ndarray,
    layout: MinibatchLayout | None,
    t: int | None = None,
    s: int | None = None,
    value: float = 0.0,
) -> bool:
    """Set the padding columns of buffer to value.

    Use 0 to make reductions over columns correct, and NaN to check that
    nobody reads the padding. The operation can be restricted to a single
    time step and/or a single sequence.

    Returns
    -------
        True if we found (and overwrote) at least a padding column.

    Raises
    ------
        RuntimeComputationError: if the buffer does not have T * S columns.
    """
    if layout is None or not layout.has_padding:
        return False

    if buffer.ndim != 2 or buffer.shape[1] != layout.num_cols:
        raise RuntimeComputationError(
            f"mask: buffer has shape {buffer.shape} but layout requires "
            f"{layout.num_cols} columns (T={layout.num_time_steps} x S={layout.num_parallel_sequences})"
        )

    start_t, end_t = (0, layout.num_time_steps) if t is None else (t, t + 1)
    start_s, end_s = (0, layout.num_parallel_sequences) if s is None else (s, s + 1)

    found = False
    for tt in range(start_t, end_t):
        if not layout.time_step_has(tt, CellFlags.NO_INPUT):
            continue
        for ss in range(start_s, end_s):
            if layout.is_(tt, ss, CellFlags.NO_INPUT):
                buffer[:, layout.column(tt, ss)] = value
                found = True
    return found
