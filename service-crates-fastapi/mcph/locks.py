"""Lease locks held in Redis.

Built on redis-py's ``Lock``: acquisition is ``SET key token NX PX lease``
and release is an atomic token check-and-delete, so a holder whose lease
lapsed cannot free a lock someone else now holds. The lease lets a crashed
holder's lock expire without an explicit release.
"""
from typing import Dict, Protocol

from loguru import logger
from redis.asyncio import Redis
from redis.asyncio.lock import Lock
from redis.exceptions import LockNotOwnedError, RedisError

from .errors import StorageUnavailable


class LeaseLock(Protocol):
    async def acquire(self, key: str, lease_seconds: int) -> bool: ...

    async def release(self, key: str) -> None: ...


def create_redis_client(url: str) -> Redis:
    return Redis.from_url(
        url,
        socket_connect_timeout=5.0,
        socket_timeout=5.0,
        decode_responses=True,
        encoding="utf-8",
    )


class RedisLeaseLock:
    def __init__(self, client: Redis):
        self._client = client
        # locks this instance holds, keyed by lock name
        self._held: Dict[str, Lock] = {}

    async def acquire(self, key: str, lease_seconds: int) -> bool:
        lock = self._client.lock(key, timeout=lease_seconds, blocking=False, thread_local=False)
        try:
            acquired = await lock.acquire()
        except RedisError as exc:
            raise StorageUnavailable(f"lock store error: {exc}") from exc
        if acquired:
            self._held[key] = lock
        return bool(acquired)

    async def release(self, key: str) -> None:
        """Release a lock this instance holds.

        A lock whose lease lapsed and was taken by someone else is left alone.
        """
        lock = self._held.pop(key, None)
        if lock is None:
            return
        try:
            await lock.release()
        except LockNotOwnedError:
            logger.warning("lease on {} lapsed before release", key)
        except RedisError as exc:
            # the lease expires on its own
            logger.error("failed to release lock {}: {}", key, exc)
