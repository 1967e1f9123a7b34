"""
Buffer Pool

A fixed arena of reusable byte buffers addressed by slot index. Whoever
acquires a slot owns its buffer until it calls release(); acquire() waits
while every slot is taken, which bounds how many fragment buffers can be
alive at once no matter how large the source is.
"""

import asyncio
from typing import List, Optional, Set


class BufferPool:
    """
    Slot-indexed pool of equally sized bytearrays.

    Buffers are allocated lazily on first use of a slot and reused after
    release.
    """

    def __init__(self, slots: int, buffer_size: int):
        if slots < 1:
            raise ValueError("slots must be >= 1")
        if buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")

        self.slots = slots
        self.buffer_size = buffer_size
        self._buffers: List[Optional[bytearray]] = [None] * slots
        self._free: Optional[asyncio.Queue] = None
        self._in_use: Set[int] = set()

    def _queue(self) -> asyncio.Queue:
        # Created on first use so the queue binds to the running loop
        if self._free is None:
            self._free = asyncio.Queue()
            for slot in range(self.slots):
                self._free.put_nowait(slot)
        return self._free

    @property
    def available(self) -> int:
        return self.slots - len(self._in_use)

    async def acquire(self) -> int:
        """Wait for a free slot and take ownership of it."""
        slot = await self._queue().get()
        self._in_use.add(slot)
        return slot

    def buffer(self, slot: int) -> bytearray:
        """Get the buffer behind an acquired slot."""
        if slot not in self._in_use:
            raise ValueError(f"Slot {slot} is not acquired")
        buf = self._buffers[slot]
        if buf is None:
            buf = bytearray(self.buffer_size)
            self._buffers[slot] = buf
        return buf

    def release(self, slot: int):
        """Return a slot to the pool."""
        if slot not in self._in_use:
            raise ValueError(f"Slot {slot} is not acquired")
        self._in_use.discard(slot)
        self._queue().put_nowait(slot)
