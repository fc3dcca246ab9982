"""Tests for the seqgraph.engine.layout module."""

# SPDX-License-Identifier: Apache-2.0

import numpy as np
import pytest

from seqgraph.engine import layout
from seqgraph.engine.errors import LogicInvariantViolation, RuntimeComputationError


def test_from_lengths_flags():
    """Test that from_lengths marks starts, ends and padding."""
    lay = layout.MinibatchLayout.from_lengths([3, 1])

    assert lay.num_time_steps == 3
    assert lay.num_parallel_sequences == 2
    assert lay.num_cols == 6

    assert lay.is_(0, 0, layout.CellFlags.SEQUENCE_START)
    assert lay.is_(2, 0, layout.CellFlags.SEQUENCE_END)
    assert lay.is_(0, 1, layout.CellFlags.SEQUENCE_START)
    assert lay.is_(0, 1, layout.CellFlags.SEQUENCE_END)
    assert not lay.is_valid(1, 1)
    assert not lay.is_valid(2, 1)
    assert lay.has_padding
    assert lay.num_valid_samples() == 4
    assert lay.valid_columns().tolist() == [True, True, True, False, True, False]


def test_column_index():
    """Test that cell (t, s) maps to column t * S + s."""
    lay = layout.MinibatchLayout(4, 3)
    assert lay.column(0, 0) == 0
    assert lay.column(0, 2) == 2
    assert lay.column(1, 0) == 3
    assert lay.column(3, 1) == 10
    assert not lay.has_padding


def test_invalid_grid():
    """Test that inconsistent grids raise engine errors."""
    with pytest.raises(RuntimeComputationError, match="invalid grid"):
        layout.MinibatchLayout(2, 0)
    with pytest.raises(RuntimeComputationError, match="need at least one sequence"):
        layout.MinibatchLayout.from_lengths([])
    with pytest.raises(RuntimeComputationError, match="sequence of length 4 exceeds T=3"):
        layout.MinibatchLayout.from_lengths([4, 1], num_time_steps=3)


def test_freeze():
    """Test that a frozen layout cannot be modified."""
    lay = layout.MinibatchLayout(2, 1).freeze()
    assert lay.frozen
    with pytest.raises(LogicInvariantViolation):
        lay.set(1, 0, layout.CellFlags.NO_INPUT)


def test_frame_range_columns():
    """Test the columns selected by frame ranges."""
    lay = layout.MinibatchLayout(3, 2)
    buffer = np.arange(12, dtype=np.float64).reshape(2, 6)

    assert layout.data_slice(buffer, layout.ALL_FRAMES, lay) is buffer
    assert layout.data_slice(buffer, layout.FrameRange(1), lay).tolist() == [[2, 3], [8, 9]]
    assert layout.data_slice(buffer, layout.FrameRange(2, 1), lay).tolist() == [[5], [11]]

    # Buffers without layout are returned whole
    assert layout.data_slice(buffer, layout.FrameRange(1), None) is buffer

    # The slice is a view
    layout.data_slice(buffer, layout.FrameRange(0), lay)[...] = -1
    assert buffer[0, :2].tolist() == [-1, -1]

    with pytest.raises(LogicInvariantViolation, match="requires a time step"):
        layout.FrameRange(None, 1)


@pytest.mark.parametrize("garbage", [np.nan, np.inf, -np.inf, 1e300])
def test_masking_round_trip(garbage):
    """Masking then summing over all columns equals summing the valid columns."""
    lay = layout.MinibatchLayout.from_lengths([4, 2, 3])
    rng = np.random.default_rng(42)
    buffer = rng.normal(size=(5, lay.num_cols))
    valid = lay.valid_columns()
    expected = buffer[:, valid].sum()
    buffer[:, ~valid] = garbage

    assert layout.mask_columns_to(buffer, lay)
    assert np.isclose(buffer.sum(), expected)


def test_masking_restricted_range():
    """Test masking a single time step and a single sequence."""
    lay = layout.MinibatchLayout.from_lengths([1, 1, 3])
    buffer = np.ones((1, lay.num_cols))

    # Only the padding at t=1 gets masked
    assert layout.mask_columns_to(buffer, lay, t=1)
    assert buffer.tolist() == [[1, 1, 1, 0, 0, 1, 1, 1, 1]]

    # Sequence 2 has no padding at all
    buffer = np.ones((1, lay.num_cols))
    assert not layout.mask_columns_to(buffer, lay, s=2)
    assert np.all(buffer == 1)

    # Masking to NaN for diagnostics
    assert layout.mask_columns_to(buffer, lay, t=2, s=0, value=np.nan)
    assert np.isnan(buffer[0, lay.column(2, 0)])
    assert np.count_nonzero(np.isnan(buffer)) == 1


def test_masking_fast_path_and_errors():
    """Test that masking without padding does nothing and that bad shapes fail."""
    lay = layout.MinibatchLayout.from_lengths([2, 2])
    buffer = np.full((2, 3), np.nan)

    # No padding: we do not even look at the buffer
    assert not layout.mask_columns_to(buffer, lay)
    assert not layout.mask_columns_to(buffer, None)

    padded = layout.MinibatchLayout.from_lengths([2, 1])
    with pytest.raises(RuntimeComputationError, match="requires 4 columns"):
        layout.mask_columns_to(buffer, padded)
