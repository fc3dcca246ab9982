"""Tests for the seqgraph.data.packing module."""

# SPDX-License-Identifier: Apache-2.0

import numpy as np
import pytest

from seqgraph.data import Sequences, StreamDescription, pack, pack_streams
from seqgraph.engine.errors import RuntimeComputationError
from seqgraph.engine.layout import CellFlags


def test_pack_places_samples_by_column():
    """Test that sample t of sequence s lands in column t * S + s."""
    first = np.array([[1.0, 10.0], [2.0, 20.0], [3.0, 30.0]])
    second = np.array([[4.0, 40.0]])

    layout, matrix = pack([first, second], pad_value=-1.0)

    assert layout.num_time_steps == 3 and layout.num_parallel_sequences == 2
    assert matrix.shape == (2, 6)
    assert matrix.tolist() == [
        [1.0, 4.0, 2.0, -1.0, 3.0, -1.0],
        [10.0, 40.0, 20.0, -1.0, 30.0, -1.0],
    ]
    assert layout.is_(0, 1, CellFlags.SEQUENCE_START | CellFlags.SEQUENCE_END)
    assert not layout.is_valid(1, 1)


def test_pack_errors():
    """Test that packing rejects empty and inconsistent input."""
    with pytest.raises(RuntimeComputationError, match="at least one sequence"):
        pack([])
    with pytest.raises(RuntimeComputationError, match="same dim"):
        pack([np.zeros((2, 3)), np.zeros((2, 4))])
    with pytest.raises(RuntimeComputationError, match="same dim"):
        pack([np.zeros(3)])


def test_pack_streams():
    """Test that all the streams share the same layout."""
    sequences = Sequences(
        data=[
            [np.ones((2, 3)), np.ones((1, 3))],
            [np.zeros((2, 1)), np.zeros((1, 1))],
        ]
    )
    descriptions = [StreamDescription(0, "features", 3), StreamDescription(1, "labels", 1)]

    layout, matrices = pack_streams(sequences, descriptions)

    assert set(matrices) == {"features", "labels"}
    assert matrices["features"].shape == (3, layout.num_cols)
    assert matrices["labels"].shape == (1, layout.num_cols)
    assert layout.num_valid_samples() == 3


def test_pack_streams_errors():
    """Test that streams must agree with each other and with their description."""
    descriptions = [StreamDescription(0, "features", 3), StreamDescription(1, "labels", 1)]

    mismatched = Sequences(data=[[np.ones((2, 3))], [np.zeros((3, 1))]])
    with pytest.raises(RuntimeComputationError, match="sequence lengths"):
        pack_streams(mismatched, descriptions)

    wrong_dim = Sequences(data=[[np.ones((2, 2))], [np.zeros((2, 1))]])
    with pytest.raises(RuntimeComputationError, match="has dim 2, expected 3"):
        pack_streams(wrong_dim, descriptions)

    with pytest.raises(RuntimeComputationError, match="at least one stream"):
        pack_streams(Sequences(data=[]), [])
