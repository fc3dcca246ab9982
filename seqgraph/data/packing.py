"""Packing sequences into minibatches.

Packing places sequence `s` into parallel slot `s` of a `MinibatchLayout`,
so a minibatch of S sequences whose longest sequence has T samples becomes a
(dim, T * S) matrix where sample `t` of sequence `s` is column `t * S + s`.
The cells past the end of shorter sequences are padding and contain
`pad_value`, which the engine never reads when it matters.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from typing import Sequence

import numpy as np

from ..engine.errors import RuntimeComputationError
from ..engine.layout import MinibatchLayout
from .protocol import Sequences, StreamDescription


def pack(sequences: Sequence[np.ndarray], pad_value: float = 0.0) -> tuple[MinibatchLayout, np.ndarray]:
    """Pack (length, dim) sequences into a layout and a (dim, T * S) matrix.

    Raises
    ------
        RuntimeComputationError: if there are no sequences or if their
            number of features differ.
    """
    if not sequences:
        raise RuntimeComputationError("packing: need at least one sequence")
    arrays = [np.asarray(seq, dtype=np.float64) for seq in sequences]
    dims = {array.shape[1] for array in arrays if array.ndim == 2}
    if len(dims) != 1 or any(array.ndim != 2 for array in arrays):
        raise RuntimeComputationError(
            f"packing: sequences must be (length, dim) matrices with the same dim, got "
            f"{[array.shape for array in arrays]}"
        )

    layout = MinibatchLayout.from_lengths([array.shape[0] for array in arrays])
    num_sequences = layout.num_parallel_sequences
    matrix = np.full((dims.pop(), layout.num_cols), pad_value)
    for s, array in enumerate(arrays):
        # Columns s, s + S, s + 2S, ... belong to sequence s
        matrix[:, s : s + num_sequences * array.shape[0] : num_sequences] = array.T
    return layout, matrix


def pack_streams(
    sequences: Sequences,
    descriptions: Sequence[StreamDescription],
    pad_value: float = 0.0,
) -> tuple[MinibatchLayout, dict[str, np.ndarray]]:
    """Pack every stream of the given sequences into a shared layout.

    Returns
    -------
        The layout and, for each stream name, the packed matrix.

    Raises
    ------
        RuntimeComputationError: if the streams disagree on the sequence
            lengths, or if a stream does not match its description.
    """
    layout: MinibatchLayout | None = None
    lengths: list[int] | None = None
    result: dict[str, np.ndarray] = {}
    for description in descriptions:
        stream = sequences.data[description.id]
        stream_lengths = [len(seq) for seq in stream]
        if lengths is not None and stream_lengths != lengths:
            raise RuntimeComputationError(
                f"packing: stream '{description.name}' has sequence lengths {stream_lengths}, expected {lengths}"
            )
        stream_layout, matrix = pack(stream, pad_value)
        if matrix.shape[0] != description.dim:
            raise RuntimeComputationError(
                f"packing: stream '{description.name}' has dim {matrix.shape[0]}, expected {description.dim}"
            )
        if layout is None:
            layout, lengths = stream_layout, stream_lengths
        result[description.name] = matrix
    if layout is None:
        raise RuntimeComputationError("packing: need at least one stream")
    return layout, result
