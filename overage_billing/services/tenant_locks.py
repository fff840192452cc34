"""
Per-key asyncio locks.

Serialises billing-state mutations per tenant (and price creation per plan)
inside one process. Cross-process safety comes from the datastore: the
tenant record's version compare-and-set and the plan price's
first-writer-wins update.

A key's lock exists only while some task holds or waits for it, so the
registry stays as small as the number of tenants currently being worked on.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List


class TenantLockRegistry:
    """Hands out one asyncio.Lock per key."""

    def __init__(self) -> None:
        # key -> [lock, number of tasks holding or waiting]
        self._locks: Dict[str, List] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        entry = self._locks.get(key)
        return bool(entry and entry[0].locked())

    def __len__(self) -> int:
        return len(self._locks)
