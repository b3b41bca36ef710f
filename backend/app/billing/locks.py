"""Per-key asyncio locks for serializing work on one Stripe subscription."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLock:
    """A lazily created ``asyncio.Lock`` per key.

    Locks are dropped once no task holds or waits on them, so the table only
    grows with the number of subscriptions being processed concurrently.
    This serializes work inside one process; across processes the row lock
    taken by the store (``SELECT ... FOR UPDATE``) does the same job.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


subscription_locks = KeyedLock()
