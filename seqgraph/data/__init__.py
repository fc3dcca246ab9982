"""Data utilities for seqgraph.

Minimal protocol-based sequence enumeration and minibatch packing.
"""

# SPDX-License-Identifier: Apache-2.0

from .packing import pack, pack_streams
from .protocol import (
    ArraySequenceEnumerator,
    EpochConfiguration,
    SequenceEnumerator,
    Sequences,
    StreamDescription,
)

__all__ = [
    "ArraySequenceEnumerator",
    "EpochConfiguration",
    "SequenceEnumerator",
    "Sequences",
    "StreamDescription",
    "pack",
    "pack_streams",
]
