from __future__ import annotations

import asyncio
from collections import deque

from changelog_sync.errors import QueueClosedError
from changelog_sync.models import SyncBatch


class ChangeQueue:
    """Bounded FIFO of batches between the poll loop and the apply loop.

    Closing the queue wakes every waiter; queued batches can still be drained
    with ``get`` until it returns None.
    """

    def __init__(self, *, max_batches: int) -> None:
        if max_batches <= 0:
            raise ValueError("max_batches must be > 0")

        self._max_batches = max_batches
        self._batches: deque[SyncBatch] = deque()
        self._condition = asyncio.Condition()
        self._closed = False

    @property
    def max_batches(self) -> int:
        return self._max_batches

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return len(self._batches)

    def full(self) -> bool:
        return len(self._batches) >= self._max_batches

    async def put(self, batch: SyncBatch, *, timeout_s: float | None = None) -> bool:
        """Enqueue ``batch``, waiting while the queue is full.

        Returns False if ``timeout_s`` elapsed first; the batch is not queued
        and the caller still owns it.
        """

        async with self._condition:
            if self._closed:
                raise QueueClosedError("Cannot enqueue into a closed ChangeQueue")

            try:
                await asyncio.wait_for(
                    self._condition.wait_for(lambda: self._closed or not self.full()),
                    timeout=timeout_s,
                )
            except asyncio.TimeoutError:
                return False

            if self._closed:
                raise QueueClosedError("ChangeQueue closed while waiting for capacity")

            self._batches.append(batch)
            self._condition.notify_all()
            return True

    async def get(self) -> SyncBatch | None:
        async with self._condition:
            await self._condition.wait_for(lambda: self._closed or bool(self._batches))
            if not self._batches:
                return None

            batch = self._batches.popleft()
            self._condition.notify_all()
            return batch

    async def close(self) -> None:
        async with self._condition:
            self._closed = True
            self._condition.notify_all()
