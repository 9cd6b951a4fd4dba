import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator


class KeyedLock:
    """
    One asyncio lock per key.

    Used to serialize token refreshes and syncs per organization. Locks for
    different keys never block each other.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        # Holders plus waiters per key
        self._users: defaultdict[str, int] = defaultdict(int)

    def locked(self, key: str) -> bool:
        return key in self._locks and self._locks[key].locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]

    def discard(self, key: str) -> None:
        """Forget a lock nobody holds or waits on, e.g. after a disconnect."""
        if key not in self._users:
            self._locks.pop(key, None)
