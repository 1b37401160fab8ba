"""
Per-resource mutual exclusion for reconciliations.

The reconciler performs multi-step sequences (Service, then StatefulSet, then
phase patch) that are not safe against concurrent invocation for the same
name. Work for one ``namespace/name`` key is serialized; work for different
keys runs in parallel up to a global concurrency bound.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

import structlog

logger = structlog.get_logger(__name__)


class KeyedLockManager:
    """
    One asyncio.Lock per resource key plus a global semaphore.

    A ManagedDatabase and its DormantDatabase share a key, so a pause and a
    resume of the same database never interleave. asyncio.Lock wakes waiters
    in FIFO order, which keeps per-key processing ordered.
    """

    def __init__(self, max_concurrent: int = 5):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}
        self._semaphore = asyncio.Semaphore(max_concurrent)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` (and one concurrency slot) for the block."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                async with self._semaphore:
                    logger.debug("resource_lock_acquired", key=key)
                    yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                # Nobody else references this lock; drop it so keys do not accumulate.
                del self._waiters[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @property
    def tracked_keys(self) -> int:
        return len(self._locks)
