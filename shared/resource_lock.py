"""
Per-resource exclusive locks for maintenance applies.

Applies against the same (resource_type, resource_id) are serialized;
different resources proceed in parallel. Two backends:

- redis: redis-py asyncio Lock, for deployments with several API workers
- local: one asyncio.Lock per key, for a single process and for tests

Acquisition that does not succeed within LOCK_TIMEOUT_SECONDS raises
ResourceBusy (retryable).

Usage:
    lock = get_resource_lock()
    async with lock.hold(ResourceType.ROOM, room_id):
        ...
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any

from redis.exceptions import LockError

from scheduling.errors import ResourceBusy
from shared.config import get_settings

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "maintenance-lock"


def lock_key(resource_type: Any, resource_id: Any) -> str:
    resource_type = getattr(resource_type, "value", resource_type)
    return f"{LOCK_KEY_PREFIX}:{resource_type}:{resource_id}"


class LocalResourceLock:
    """
    In-process lock table keyed by resource.

    A key is dropped once nobody holds or waits for it, so the table only
    grows with the number of resources being applied concurrently.
    """

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def is_locked(self, resource_type: Any, resource_id: Any) -> bool:
        lock = self._locks.get(lock_key(resource_type, resource_id))
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, resource_type: Any, resource_id: Any) -> AsyncIterator[None]:
        key = lock_key(resource_type, resource_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1

        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning(f"Lock {key} busy after {self.timeout_seconds}s")
                raise ResourceBusy(str(getattr(resource_type, "value", resource_type)), resource_id)

            logger.debug(f"Lock {key} acquired")
            try:
                yield
            finally:
                lock.release()
                logger.debug(f"Lock {key} released")
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class RedisResourceLock:
    """Redis-backed lock with a lease, safe across processes."""

    def __init__(
        self,
        timeout_seconds: float,
        lease_seconds: float,
        client: Any = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.lease_seconds = lease_seconds
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            from shared.redis_client import get_redis_client

            self._client = get_redis_client()
        return self._client

    @asynccontextmanager
    async def hold(self, resource_type: Any, resource_id: Any) -> AsyncIterator[None]:
        key = lock_key(resource_type, resource_id)
        lock = self.client.lock(
            key,
            timeout=self.lease_seconds,
            blocking_timeout=self.timeout_seconds,
        )

        acquired = await lock.acquire()
        if not acquired:
            logger.warning(f"Lock {key} busy after {self.timeout_seconds}s")
            raise ResourceBusy(str(getattr(resource_type, "value", resource_type)), resource_id)

        logger.debug(f"Lock {key} acquired (lease {self.lease_seconds}s)")
        try:
            yield
        finally:
            try:
                await lock.release()
                logger.debug(f"Lock {key} released")
            except LockError as e:
                # Lease expired before release; the key is already gone
                logger.warning(f"Lock {key} expired before release: {e}")


ResourceLock = LocalResourceLock | RedisResourceLock


@lru_cache
def get_resource_lock() -> ResourceLock:
    """Build the lock backend selected by settings.LOCK_BACKEND."""
    settings = get_settings()

    if settings.LOCK_BACKEND == "local":
        logger.info("Using in-process resource locks")
        return LocalResourceLock(settings.LOCK_TIMEOUT_SECONDS)

    logger.info("Using Redis resource locks")
    return RedisResourceLock(
        timeout_seconds=settings.LOCK_TIMEOUT_SECONDS,
        lease_seconds=settings.LOCK_LEASE_SECONDS,
    )
