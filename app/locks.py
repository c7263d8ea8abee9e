import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class LockTable:
    """
    Mutual exclusion keyed by string (a batch id, an image ref).

    Holders of the same key run one at a time; different keys never wait on
    each other. Entries are dropped once nobody holds or waits on them, so
    the table only grows with in-flight keys.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
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
