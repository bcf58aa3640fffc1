"""
buffer_arena.py - Reusable scratch buffers for the merge pipeline

A merge may touch thousands of texture records. Rather than allocating a
fresh buffer for every payload read, the codec asks the arena for a view
of a per-purpose ``bytearray`` that only ever grows to the largest size
requested during the run.

The arena is owned by a single merge run and released when the run ends.
"""

import logging
from enum import IntEnum

log = logging.getLogger(__name__)


class Purpose(IntEnum):
    """Scratch buffer slots."""
    INPUT_RECORD = 0    # payload bytes of the record being read
    RECORD_HEADER = 1   # fixed record fields, also for output records peeked for reuse


class BufferArena:
    """
    Pool of growable byte buffers indexed by ``Purpose``.

    Views returned by ``get()`` are only valid until the next ``get()`` for
    the same purpose; callers copy out whatever they need to keep.
    """

    def __init__(self):
        self._buffers = {}
        self._requests = 0
        self._grows = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def get(self, purpose: Purpose, size: int) -> memoryview:
        """Return a writable view of exactly ``size`` bytes for ``purpose``."""
        if size < 0:
            raise ValueError(f"negative buffer size {size}")
        self._requests += 1
        buf = self._buffers.get(purpose)
        if buf is None or len(buf) < size:
            # Grow to the new high-water mark; old contents are not kept
            buf = bytearray(size)
            self._buffers[purpose] = buf
            self._grows += 1
        return memoryview(buf)[:size]

    def capacity(self, purpose: Purpose) -> int:
        buf = self._buffers.get(purpose)
        return len(buf) if buf is not None else 0

    def release(self) -> None:
        """Drop every buffer. The arena stays usable afterwards."""
        if self._buffers:
            total = sum(len(b) for b in self._buffers.values())
            log.debug(f"BufferArena released {len(self._buffers)} buffers "
                      f"({total / (1024 * 1024):.1f}MB high-water)")
        self._buffers.clear()

    @property
    def stats(self) -> dict:
        return {
            "requests": self._requests,
            "grows": self._grows,
            "buffers": len(self._buffers),
            "capacity_bytes": sum(len(b) for b in self._buffers.values()),
        }
