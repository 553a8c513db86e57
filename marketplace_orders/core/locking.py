"""
Per-cart placement locks.

At most one placement may run per cart at a time; placements for different
carts never wait on each other. The local backend serializes within one
process; the Redis backend serializes across API replicas and workers.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Optional, Protocol

import redis.asyncio as aioredis
import structlog
from redis.asyncio.lock import Lock
from redis.exceptions import LockError, RedisError

from marketplace_orders.config import Settings, get_settings
from marketplace_orders.domain.errors import PlacementInProgressError
from marketplace_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PlacementLocks(Protocol):
    def hold(self, key: str) -> AsyncContextManager[None]:
        ...


class LocalPlacementLocks:
    """In-process keyed asyncio locks; idle keys are dropped."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                metrics.record_placement_lock("acquired")
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class RedisPlacementLocks:
    """
    Distributed placement locks on redis-py's Lock.

    The lock expires after ``timeout`` seconds so a crashed holder cannot
    block a cart forever. A live holder renews it every third of the timeout
    for as long as the placement runs, however long the gateway takes.
    Waiting longer than ``wait`` seconds raises PlacementInProgressError.
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        timeout: Optional[float] = None,
        wait: Optional[float] = None,
        prefix: str = "order-placement",
    ):
        settings = get_settings()
        self.redis_url = settings.redis_url
        self.timeout = timeout or settings.redis_lock_timeout
        self.wait = wait if wait is not None else settings.redis_lock_wait
        self.prefix = prefix
        self._redis = redis_client

    async def _get_redis(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        redis_client = await self._get_redis()
        lock = redis_client.lock(
            f"{self.prefix}:{key}",
            timeout=self.timeout,
            blocking_timeout=self.wait,
        )
        if not await lock.acquire():
            metrics.record_placement_lock("timeout")
            logger.warning("placement_lock_timeout", key=key, wait_seconds=self.wait)
            raise PlacementInProgressError(
                "Another order placement is already in progress for this cart"
            )

        metrics.record_placement_lock("acquired")
        renewal = asyncio.create_task(self._keep_alive(lock, key))
        try:
            yield
        finally:
            renewal.cancel()
            await asyncio.gather(renewal, return_exceptions=True)
            try:
                await lock.release()
            except LockError as e:
                # Expired while held; the next holder already owns the key.
                logger.error("placement_lock_release_failed", key=key, error=str(e))

    async def _keep_alive(self, lock: Lock, key: str) -> None:
        while True:
            await asyncio.sleep(self.timeout / 3)
            try:
                await lock.reacquire()
            except LockError as e:
                metrics.record_placement_lock("lost")
                logger.critical("placement_lock_lost", key=key, error=str(e))
                return
            except RedisError as e:
                logger.warning("placement_lock_renewal_failed", key=key, error=str(e))

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def build_placement_locks(settings: Optional[Settings] = None) -> PlacementLocks:
    settings = settings or get_settings()
    if settings.placement_lock_backend == "redis":
        return RedisPlacementLocks()
    return LocalPlacementLocks()
