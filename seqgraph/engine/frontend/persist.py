"""Model Stream Persistence.

A model stream starts with a magic string and the model version, followed by
the network content (see `network.Network.save`). Each node writes its
operation tag and name, then its kind specific payload. Loading reads the
tag and name first, creates an empty node of the right kind, and lets the
node read its own payload, passing it the model version so that a node can
skip fields that older versions did not write.

Scalars are written little endian. Matrices are written using the `.npy`
format from `numpy.lib.format` with pickling disabled.

Model versions:

1. initial version.
2. `PastValue` nodes also write their time step.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import struct
from typing import BinaryIO

import numpy as np
from numpy.lib import format as npy_format

from ..errors import ConfigurationError

MAGIC = b"SEQGRAPH"
"""Magic string starting every model stream."""

CURRENT_MODEL_VERSION = 2
"""Version written by default."""

OLDEST_MODEL_VERSION = 1
"""Oldest version we are able to read."""


class ModelFormatError(ConfigurationError):
    """Raised when a model stream is truncated or malformed."""


class Writer:
    """Writes primitive values to a binary stream.

    Args:
        stream: the binary stream to write to.
        model_version: the version of the stream being written.
    """

    def __init__(self, stream: BinaryIO, model_version: int = CURRENT_MODEL_VERSION) -> None:
        if not OLDEST_MODEL_VERSION <= model_version <= CURRENT_MODEL_VERSION:
            raise ModelFormatError(f"persist: cannot write model version {model_version}")
        self.stream = stream
        self.model_version = model_version

    def write_header(self) -> None:
        """Write the magic string and the model version."""
        self.stream.write(MAGIC)
        self.write_u32(self.model_version)

    def write_u32(self, value: int) -> None:
        """Write an unsigned 32 bit integer."""
        self.stream.write(struct.pack("<I", value))

    def write_f64(self, value: float) -> None:
        """Write a double precision float."""
        self.stream.write(struct.pack("<d", value))

    def write_str(self, value: str) -> None:
        """Write a length-prefixed UTF-8 string."""
        data = value.encode("utf-8")
        self.write_u32(len(data))
        self.stream.write(data)

    def write_marker(self, marker: str) -> None:
        """Write a section marker that the reader will expect."""
        self.write_str(marker)

    def write_array(self, value: np.ndarray) -> None:
        """Write a matrix."""
        npy_format.write_array(self.stream, np.ascontiguousarray(value), allow_pickle=False)


class Reader:
    """Reads primitive values from a binary stream.

    The model version is unknown until `read_header` is called.
    """

    def __init__(self, stream: BinaryIO) -> None:
        self.stream = stream
        self.model_version = 0

    def read_header(self) -> int:
        """Read the magic string and the model version and return the latter."""
        magic = self._read_exactly(len(MAGIC))
        if magic != MAGIC:
            raise ModelFormatError(f"persist: invalid magic string {magic!r}")
        version = self.read_u32()
        if not OLDEST_MODEL_VERSION <= version <= CURRENT_MODEL_VERSION:
            raise ModelFormatError(
                f"persist: unsupported model version {version} "
                f"(supported: {OLDEST_MODEL_VERSION}..{CURRENT_MODEL_VERSION})"
            )
        self.model_version = version
        return version

    def _read_exactly(self, count: int) -> bytes:
        data = self.stream.read(count)
        if len(data) != count:
            raise ModelFormatError(f"persist: truncated stream: wanted {count} bytes, got {len(data)}")
        return data

    def read_u32(self) -> int:
        """Read an unsigned 32 bit integer."""
        return struct.unpack("<I", self._read_exactly(4))[0]

    def read_f64(self) -> float:
        """Read a double precision float."""
        return struct.unpack("<d", self._read_exactly(8))[0]

    def read_str(self) -> str:
        """Read a length-prefixed UTF-8 string."""
        return self._read_exactly(self.read_u32()).decode("utf-8")

    def expect_marker(self, marker: str) -> None:
        """Read a section marker and check it is the expected one."""
        found = self.read_str()
        if found != marker:
            raise ModelFormatError(f"persist: expected marker '{marker}', found '{found}'")

    def read_array(self) -> np.ndarray:
        """Read a matrix."""
        try:
            return npy_format.read_array(self.stream, allow_pickle=False)
        except ValueError as exc:
            raise ModelFormatError(f"persist: cannot read matrix: {exc}") from exc
