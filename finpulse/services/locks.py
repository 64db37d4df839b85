"""
Per-user serialisation of recalculation jobs.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import structlog

logger = structlog.get_logger()


class UserLockRegistry:
    """
    Hands out one asyncio lock per (user, job) so runs for a user never interleave.

    A lock lives only while someone holds or waits for it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @property
    def active_count(self) -> int:
        return len(self._locks)

    def is_locked(self, user_id: str, job: str) -> bool:
        lock = self._locks.get(f"{user_id}:{job}")
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, user_id: str, job: str) -> AsyncIterator[None]:
        key = f"{user_id}:{job}"
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        if lock.locked():
            logger.info("Waiting for in-flight job", user_id=user_id, job=job)
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


_lock_registry: Optional[UserLockRegistry] = None


def get_lock_registry() -> UserLockRegistry:
    """Get the process-wide lock registry."""
    global _lock_registry
    if _lock_registry is None:
        _lock_registry = UserLockRegistry()
    return _lock_registry
