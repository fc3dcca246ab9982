"""Thread-safe monotonic counter behind node IDs and evaluation timestamps.

The graph module owns one process-wide `Int`. Constructing or cloning a
node draws its ID from it, and finishing a node evaluation draws the new
timestamp from it. Since both come from the same sequence, a node that was
evaluated after its inputs always carries a larger timestamp, which is all
the staleness check of the executor needs.
"""

# SPDX-License-Identifier: Apache-2.0

import threading


class Int:
    """An integer that threads can increment without losing updates.

    Args:
        value: the starting value; the first `next()` returns value + 1.
    """

    def __init__(self, value: int = 0):
        self.__value = value
        self.__lock = threading.Lock()

    def add(self, delta: int) -> int:
        """Add delta and return the resulting value."""
        with self.__lock:
            self.__value += delta
            return self.__value

    def next(self) -> int:
        """Return a value larger than every value returned so far."""
        return self.add(1)

    def load(self) -> int:
        """Return the current value without changing it."""
        with self.__lock:
            return self.__value
