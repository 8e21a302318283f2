"""Bounded hand-off between incident handlers and memory consolidation."""

import asyncio
from typing import AsyncIterator, Optional

from brain.models import IncidentResolution


class MemoryBuffer:
    """Bounded FIFO of resolved incidents with backpressure.

    Many handlers write; exactly one consumer reads. A write on a full buffer
    waits for space instead of dropping the resolution. If the waiting
    writer is cancelled (or its timeout expires) the resolution is not
    queued and the error is raised to that writer.
    """

    def __init__(self, capacity: int = 100):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._queue: "asyncio.Queue[IncidentResolution]" = asyncio.Queue(maxsize=capacity)
        self._reader_attached = False

    def size(self) -> int:
        return self._queue.qsize()

    def full(self) -> bool:
        return self._queue.full()

    async def write(self, resolution: IncidentResolution, timeout: Optional[float] = None) -> None:
        """Queue a resolution, waiting while the buffer is full.

        Args:
            resolution: Resolution to hand over to the consolidator
            timeout: Seconds to wait for space (None waits indefinitely)

        Raises:
            asyncio.CancelledError: The write was cancelled; nothing was queued
            asyncio.TimeoutError: No space became available in time
        """
        if timeout is None:
            await self._queue.put(resolution)
        else:
            await asyncio.wait_for(self._queue.put(resolution), timeout)

    async def read_all(self) -> AsyncIterator[IncidentResolution]:
        """Yield resolutions in arrival order until the reading task is cancelled.

        Only one reader may be attached at a time.
        """
        if self._reader_attached:
            raise RuntimeError("MemoryBuffer supports a single reader")
        self._reader_attached = True

        try:
            while True:
                resolution = await self._queue.get()
                self._queue.task_done()
                yield resolution
        finally:
            self._reader_attached = False
