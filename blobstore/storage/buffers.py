"""Reusable chunk-size byte buffers for streaming writes."""

from __future__ import annotations

import threading
from typing import List

__all__ = ["BufferPool"]


class BufferPool:
    """Thread-safe pool of ``chunk_size`` bytearrays.

    ``acquire`` hands out a pooled buffer or allocates a new one when the
    free list is empty; ``release`` zero-fills the buffer and returns it.
    ``zeros`` is one shared, read-only zero chunk used for padding parts.
    """

    def __init__(self, chunk_size: int) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size
        self.zeros = bytes(chunk_size)
        self._free: List[bytearray] = []
        self._lock = threading.Lock()

    def acquire(self) -> bytearray:
        with self._lock:
            if self._free:
                return self._free.pop()
        return bytearray(self.chunk_size)

    def release(self, buf: bytearray) -> None:
        if len(buf) != self.chunk_size:
            raise ValueError(
                f"buffer of {len(buf)} bytes does not belong to a pool of {self.chunk_size}-byte chunks"
            )
        buf[:] = self.zeros
        with self._lock:
            self._free.append(buf)

    @property
    def free_count(self) -> int:
        with self._lock:
            return len(self._free)
