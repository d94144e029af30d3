"""
Keyed in-process locks

Serializes read-modify-write critical sections per key, e.g. one cart line
``(identity, variant)`` or one checkout session id. Combined with the
database row locks and unique constraints this keeps concurrent requests
against the same key from interleaving inside a single process.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Hashable

logger = logging.getLogger(__name__)


class KeyedLockManager:
    """
    Manages per-key asyncio locks.

    Locks are reference counted and dropped once nobody holds or waits on
    them, so the table stays bounded by the number of in-flight keys.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = {}
        self._lock = asyncio.Lock()  # Protects _locks dict creation

    async def get_lock(self, key: Hashable) -> asyncio.Lock:
        """Get or create a lock for a specific key."""
        async with self._lock:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            self._waiters[key] = self._waiters.get(key, 0) + 1
            return self._locks[key]

    async def _release(self, key: Hashable) -> None:
        async with self._lock:
            remaining = self._waiters.get(key, 1) - 1
            if remaining <= 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)
            else:
                self._waiters[key] = remaining

    @asynccontextmanager
    async def hold(self, *key_parts: Hashable):
        """
        Hold the lock for a composite key.

        Usage:
            async with cart_line_locks.hold(identity.key, variant_id):
                ...
        """
        key = key_parts if len(key_parts) > 1 else key_parts[0]
        lock = await self.get_lock(key)
        try:
            async with lock:
                yield
        finally:
            await self._release(key)

    def __len__(self) -> int:
        return len(self._locks)


# Shared across service instances within one process
cart_line_locks = KeyedLockManager()
checkout_session_locks = KeyedLockManager()
address_default_locks = KeyedLockManager()
