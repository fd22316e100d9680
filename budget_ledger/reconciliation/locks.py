"""
Per-category locking.

Every write to a category's aggregate happens while holding that
(owner, category) lock. Operations spanning several categories acquire
them in ascending category-id order, so two cross-category edits can
never wait on each other in a cycle.

Owner-scoped locks (settings, seeding, custom categories, idempotency
keys) live under separate keys. An operation needing both takes the
owner-scoped lock first, then category locks, never the reverse.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable
from weakref import WeakValueDictionary


class CategoryLockRegistry:
    """Hands out asyncio locks keyed by (owner_id, key)."""

    def __init__(self):
        # Entries vanish once no holder or waiter references the lock
        self._locks: "WeakValueDictionary[tuple[str, str], asyncio.Lock]" = WeakValueDictionary()

    def _lock_for(self, owner_id: str, key: str) -> asyncio.Lock:
        lock = self._locks.get((owner_id, key))
        if lock is None:
            lock = asyncio.Lock()
            self._locks[(owner_id, key)] = lock
        return lock

    @asynccontextmanager
    async def categories(
        self,
        owner_id: str,
        category_ids: Iterable[str],
    ) -> AsyncIterator[list[str]]:
        """Hold the locks of every given category, acquired in ascending id order."""
        ordered = sorted(set(category_ids))
        locks = [self._lock_for(owner_id, category_id) for category_id in ordered]
        acquired: list[asyncio.Lock] = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()

    @asynccontextmanager
    async def owner(self, owner_id: str, scope: str) -> AsyncIterator[None]:
        """Hold an owner-wide lock for one scope (e.g. "ledger")."""
        lock = self._lock_for(owner_id, f"owner:{scope}")
        async with lock:
            yield
