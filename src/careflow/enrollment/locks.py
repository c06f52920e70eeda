"""Per-key asyncio locks."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager


class KeyedLock:
    """One :class:`asyncio.Lock` per key, created on demand.

    Locks are reference counted and dropped once no coroutine holds or waits
    for them, so the table does not grow with every (client, workflow) pair
    ever seen.

    Usage::

        locks = KeyedLock()
        async with locks.acquire(("client-1", "wf-1")):
            ...
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def acquire(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @property
    def size(self) -> int:
        """Number of keys currently held or awaited."""
        return len(self._locks)
