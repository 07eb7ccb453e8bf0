"""Per-user asyncio locks that are dropped once nobody holds or awaits them."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable


class KeyedLocks:
    """One :class:`asyncio.Lock` per key, kept only while in use.

    A lock is created on first use and forgotten when the last holder or
    waiter leaves, so the map never grows with keys that are idle.
    """

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, key: object) -> bool:
        return key in self._locks

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # clear() may have run while this holder was inside
            remaining = self._users.get(key, 1) - 1
            if remaining:
                self._users[key] = remaining
            else:
                self._users.pop(key, None)
                if self._locks.get(key) is lock:
                    del self._locks[key]

    def clear(self) -> None:
        self._locks.clear()
        self._users.clear()


__all__ = ["KeyedLocks"]
