"""Transient Buffer Pool.

Some nodes need scratch matrices that are only alive between the forward
computation of the node and the backward computation of the same node (e.g.,
the softmax of a cross-entropy criterion). Allocating such matrices anew for
every minibatch is wasteful, so the scheduler owns a `BufferPool` from which
nodes borrow buffers and to which they return them.

The pool keeps a LIFO free list per (device, shape, dtype) key, so the most
recently released buffer is the first one handed out again. The pool does not
check whether a released buffer is still in use by someone else: releasing
at the correct time is the responsibility of the caller. It does, however,
refuse to take back buffers it never handed out.

Here's an example:

    >>> from seqgraph.engine import pool
    >>>
    >>> p = pool.BufferPool()
    >>> a = p.request((10, 10))
    >>> p.release(a)
    >>> b = p.request((10, 10))
    >>> assert a is b and p.stats.hits == 1
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np

from .errors import RuntimeComputationError

CPU_DEVICE = -1
"""Device identifier of the host."""


@dataclass
class PoolStats:
    """Counters describing the pool activity.

    Attributes
    ----------
    allocations: number of buffers freshly allocated.
    hits: number of requests satisfied by reusing a released buffer.
    releases: number of buffers returned to the pool.
    outstanding: number of buffers currently checked out.
    """

    allocations: int = 0
    hits: int = 0
    releases: int = 0
    outstanding: int = 0


@dataclass(frozen=True)
class PoolEvent:
    """Event passed to the pool instrumentation hook.

    Attributes
    ----------
    kind: one of "allocate", "reuse", and "release".
    shape: shape of the buffer.
    device: device of the buffer.
    """

    kind: str
    shape: tuple[int, ...]
    device: int


_PoolKey = tuple[int, tuple[int, ...], np.dtype]


class BufferPool:
    """Pool of reusable numpy buffers.

    Args:
        device: default device for requests that do not specify one.
        hook: optional callable invoked with a `PoolEvent` on each operation.
    """

    def __init__(self, device: int = CPU_DEVICE, hook: Callable[[PoolEvent], None] | None = None) -> None:
        self.device = device
        self.hook = hook
        self.stats = PoolStats()
        self._free: dict[_PoolKey, list[np.ndarray]] = {}
        self._checked_out: dict[int, tuple[_PoolKey, np.ndarray]] = {}

    def request(
        self,
        shape: tuple[int, ...],
        device: int | None = None,
        dtype: np.dtype | type = np.float64,
    ) -> np.ndarray:
        """Borrow a buffer with the given shape from the pool.

        The content of a reused buffer is unspecified: callers must
        overwrite it before reading from it.
        """
        key: _PoolKey = (self.device if device is None else device, tuple(shape), np.dtype(dtype))
        free = self._free.get(key)
        if free:
            buffer = free.pop()
            self.stats.hits += 1
            self._notify("reuse", key)
        else:
            buffer = np.empty(key[1], dtype=key[2])
            self.stats.allocations += 1
            self._notify("allocate", key)
        self._checked_out[id(buffer)] = (key, buffer)
        self.stats.outstanding += 1
        return buffer

    def release(self, buffer: np.ndarray) -> None:
        """Return a buffer previously obtained with `request`.

        Raises
        ------
            RuntimeComputationError: if the buffer is not checked out from this pool.
        """
        try:
            key, _ = self._checked_out.pop(id(buffer))
        except KeyError:
            raise RuntimeComputationError(
                f"pool: releasing buffer of shape {buffer.shape} that was not requested from this pool"
            )
        self._free.setdefault(key, []).append(buffer)
        self.stats.releases += 1
        self.stats.outstanding -= 1
        self._notify("release", key)

    def is_checked_out(self, buffer: np.ndarray) -> bool:
        """Tell whether the given buffer is currently borrowed from this pool."""
        entry = self._checked_out.get(id(buffer))
        return entry is not None and entry[1] is buffer

    def clear(self) -> None:
        """Drop every free buffer, keeping the checked out ones tracked."""
        self._free.clear()

    def _notify(self, kind: str, key: _PoolKey) -> None:
        if self.hook is not None:
            self.hook(PoolEvent(kind=kind, shape=key[1], device=key[0]))
