"""
Per-connection mutual exclusion for sync runs.

The dedup step of a sync (read imported ids, then insert the rest) is only
at-most-once if no two runs for the same (user, provider) overlap.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Tuple

_Key = Tuple[str, str]


class ConnectionLocks:
    """Reference-counted map of ``asyncio.Lock`` keyed by (user_id, provider)."""

    def __init__(self) -> None:
        self._locks: Dict[_Key, asyncio.Lock] = {}
        self._holders: Dict[_Key, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: str, provider: str) -> AsyncIterator[None]:
        key = (str(user_id), provider)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
