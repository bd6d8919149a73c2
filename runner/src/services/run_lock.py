"""
Run serialization lock for a single pipeline identity.
"""

import asyncio
import logging
from collections import deque
from typing import Deque, Optional

from runner.src.errors import ConcurrentRunRejected

logger = logging.getLogger(__name__)


class RunLock:
    """
    FIFO lock for pipeline runs.

    A trigger arriving while a run is active waits in arrival order. When
    `max_queued` triggers are already waiting, the new one is rejected with
    ConcurrentRunRejected instead of being queued.
    """

    def __init__(self, max_queued: Optional[int] = None):
        self.max_queued = max_queued
        self._locked = False
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def locked(self) -> bool:
        return self._locked

    @property
    def queued(self) -> int:
        return len(self._waiters)

    async def acquire(self):
        if not self._locked and not self._waiters:
            self._locked = True
            return

        if self.max_queued is not None and len(self._waiters) >= self.max_queued:
            raise ConcurrentRunRejected(
                f"Run queue full ({len(self._waiters)} waiting)"
            )

        future = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        logger.info(f"Run queued behind active run ({len(self._waiters)} waiting)")
        try:
            await future
        except asyncio.CancelledError:
            if future in self._waiters:
                self._waiters.remove(future)
            elif future.done() and not future.cancelled():
                # Ownership was handed over just before cancellation
                self._release()
            raise

    def _release(self):
        while self._waiters:
            future = self._waiters.popleft()
            if not future.done():
                # Ownership passes directly to the next waiter
                future.set_result(True)
                return
        self._locked = False

    def release(self):
        if not self._locked:
            raise RuntimeError("RunLock is not held")
        self._release()

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.release()
