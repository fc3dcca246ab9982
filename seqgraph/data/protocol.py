"""Minimal data protocol for sequence training.

The `SequenceEnumerator` protocol defines the minimal interface the training
utilities need from a data source: describe the streams, start an epoch, and
return the next batch of sequences up to a sample budget. Any object
implementing this protocol can be used with `seqgraph.training`.

Deserialization, shuffling and transformations are the business of the data
source. This package only defines the interface, a simple in-memory
implementation useful for tests and examples, and the packing of sequences
into a minibatch (see `packing`).
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Protocol, Sequence, runtime_checkable

import numpy as np

from ..engine.errors import RuntimeComputationError


@dataclass(frozen=True)
class StreamDescription:
    """Describes a stream of sequences.

    Attributes
    ----------
    id: the stream index within `Sequences.data`.
    name: the stream name (e.g., "features").
    dim: the number of features of each sample.
    """

    id: int
    name: str
    dim: int


@dataclass(frozen=True)
class EpochConfiguration:
    """Configuration of an epoch.

    Attributes
    ----------
    epoch_index: the zero-based epoch index.
    minibatch_size: the number of samples per minibatch.
    epoch_size: the number of samples per epoch (None means all the data).
    """

    epoch_index: int = 0
    minibatch_size: int = 32
    epoch_size: int | None = None


@dataclass
class Sequences:
    """Sequences returned by a `SequenceEnumerator`.

    Attributes
    ----------
    data: for each stream (indexed by `StreamDescription.id`), the list of
        sequences, each one a (length, dim) matrix. All the streams contain
        the same number of sequences.
    end_of_epoch: whether the epoch ends with the returned data.
    """

    data: list[list[np.ndarray]] = field(default_factory=list)
    end_of_epoch: bool = False

    @property
    def num_sequences(self) -> int:
        """Return the number of sequences per stream."""
        return len(self.data[0]) if self.data else 0


@runtime_checkable
class SequenceEnumerator(Protocol):
    """Minimal protocol for enumerating sequences."""

    def stream_descriptions(self) -> list[StreamDescription]:
        """Describe the streams produced by the enumerator."""
        ...  # pragma: no cover

    def start_epoch(self, config: EpochConfiguration) -> None:
        """Set the current epoch configuration."""
        ...  # pragma: no cover

    def next_sequences(self, sample_count: int) -> Sequences:
        """Return the next sequences, up to sample_count samples."""
        ...  # pragma: no cover


class ArraySequenceEnumerator:
    """Enumerate in-memory sequences in order.

    Each call to `next_sequences` returns whole sequences until adding the
    next sequence would exceed the sample budget. It always returns at least
    one sequence, so that a sequence longer than the budget is not stuck.
    The number of samples of a sequence is its length in the first stream.

    Args:
        streams: maps each stream name to its list of (length, dim) matrices.
    """

    def __init__(self, streams: Mapping[str, Sequence[np.ndarray]]) -> None:
        if not streams:
            raise RuntimeComputationError("data: need at least one stream")
        self._names = list(streams)
        self._data = [[np.asarray(seq, dtype=np.float64) for seq in streams[name]] for name in self._names]
        counts = {len(sequences) for sequences in self._data}
        if len(counts) != 1:
            raise RuntimeComputationError(f"data: streams have different numbers of sequences: {sorted(counts)}")
        self._descriptions = [
            StreamDescription(id=index, name=name, dim=sequences[0].shape[1] if sequences else 0)
            for index, (name, sequences) in enumerate(zip(self._names, self._data))
        ]
        self._config = EpochConfiguration()
        self._position = 0
        self._consumed = 0

    def stream_descriptions(self) -> list[StreamDescription]:
        """Describe the streams produced by the enumerator."""
        return list(self._descriptions)

    def start_epoch(self, config: EpochConfiguration) -> None:
        """Rewind to the first sequence."""
        self._config = config
        self._position = 0
        self._consumed = 0

    def _epoch_exhausted(self) -> bool:
        limit = self._config.epoch_size
        return self._position >= len(self._data[0]) or (limit is not None and self._consumed >= limit)

    def next_sequences(self, sample_count: int) -> Sequences:
        """Return the next sequences, up to sample_count samples."""
        result = Sequences(data=[[] for _ in self._data])
        taken = 0
        while not self._epoch_exhausted():
            length = len(self._data[0][self._position])
            if taken > 0 and taken + length > sample_count:
                break
            for stream, sequences in zip(result.data, self._data):
                stream.append(sequences[self._position])
            taken += length
            self._consumed += length
            self._position += 1
        result.end_of_epoch = self._epoch_exhausted()
        return result
