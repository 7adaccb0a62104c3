"""
Keyed Locks - Per-resource asyncio locks for in-process serialization.

Each key gets its own asyncio.Lock, created on first use and dropped once no
task holds or waits on it. Database row locks and conditional updates cover
the multi-process case; these locks keep a single process from racing itself.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class KeyedLock:
    """Registry of asyncio locks indexed by resource key."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        """
        Hold the lock for a key.

        Usage:
            async with keyed_locks.hold(("balance", user_id)):
                ...
        """
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_locked(self, key: Hashable) -> bool:
        """True while some task holds the lock for key."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


# Process-wide registry shared by all services
keyed_locks = KeyedLock()
