import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, Optional

import redis.asyncio as redis
from redis import exceptions as redis_exceptions

from recete.config import settings

logger = logging.getLogger(__name__)


def create_redis_client() -> redis.Redis:
    """Create a Redis client backed by its own connection pool."""
    pool = redis.ConnectionPool(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        password=settings.REDIS_PASSWORD,
        decode_responses=True,
        max_connections=100
    )
    return redis.Redis(connection_pool=pool)


class CacheService:
    """
    Namespaced JSON cache, distributed lock and delayed-job queue on Redis.

    Cache errors are logged and treated as misses; callers never fail on them.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    @staticmethod
    def _key(namespace: str, key: str) -> str:
        return f"cache:{namespace}:{key}"

    async def get(self, namespace: str, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(self._key(namespace, key))
            return json.loads(raw) if raw is not None else None
        except (redis_exceptions.RedisError, ValueError) as e:
            logger.warning(f"⚠️ Cache get failed for {namespace}:{key}: {e}")
            return None

    async def set(self, namespace: str, key: str, value: Any, ttl: int) -> None:
        try:
            await self.client.set(self._key(namespace, key), json.dumps(value, default=str), ex=ttl)
        except (redis_exceptions.RedisError, TypeError) as e:
            logger.warning(f"⚠️ Cache set failed for {namespace}:{key}: {e}")

    async def delete(self, namespace: str, key: str) -> None:
        try:
            await self.client.delete(self._key(namespace, key))
        except redis_exceptions.RedisError as e:
            logger.warning(f"⚠️ Cache delete failed for {namespace}:{key}: {e}")

    @asynccontextmanager
    async def acquire_lock(self, lock_name: str, expire: int = 60, wait_time: int = 10) -> AsyncGenerator[bool, None]:
        """
        Distributed lock (blocking).

        Args:
            lock_name: The unique key for the lock.
            expire: How long (seconds) to hold the lock before auto-releasing.
            wait_time: How long (seconds) to wait for the lock before giving up.

        Yields:
            True if the lock was acquired, False otherwise
        """
        lock = self.client.lock(f"lock:{lock_name}", timeout=expire, blocking_timeout=wait_time)

        acquired = False
        try:
            acquired = await lock.acquire()
        except redis_exceptions.LockError:
            acquired = False
        except redis_exceptions.RedisError as e:
            logger.error(f"Redis Lock Error: {e}")
            acquired = False

        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await lock.release()
                except redis_exceptions.LockError:
                    # Lock expired before release
                    pass

    async def enqueue_delayed(self, queue: str, job: Dict[str, Any], execute_at: datetime) -> None:
        """Add a job to a sorted-set queue scored by its execution epoch."""
        await self.client.zadd(queue, {json.dumps(job, default=str): execute_at.timestamp()})

    async def remove_jobs(self, queue: str, predicate) -> int:
        """Remove queued jobs whose decoded payload satisfies predicate."""
        removed = 0
        for member in await self.client.zrange(queue, 0, -1):
            try:
                job = json.loads(member)
            except ValueError:
                continue
            if predicate(job):
                removed += await self.client.zrem(queue, member)
        return removed

    async def close(self) -> None:
        await self.client.aclose()
