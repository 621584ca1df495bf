"""
Redis Cache Backend

Production cache backend on top of redis-py's asyncio client.

Features:
    - Bounded socket timeouts on every call
    - All connection/timeout errors surface as CacheUnavailable
    - flush_all() only removes keys under the application prefix, so a
      Redis instance shared with the Celery broker keeps its queues

Configuration:
    REDIS_URL: redis://host:port/db
    CACHE_TIMEOUT_SECONDS: per-call socket timeout

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from qrorder.core.config import get_settings
from qrorder.core.exceptions import CacheUnavailable
from qrorder.services.cache.base import BaseCacheBackend

logger = logging.getLogger(__name__)


class RedisCacheBackend(BaseCacheBackend):
    """
    Redis implementation of the cache backend.

    Attributes:
        key_prefix: Namespace owned by this application
        client: redis.asyncio.Redis instance
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        key_prefix: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[aioredis.Redis] = None,
    ):
        settings = get_settings()
        self.key_prefix = key_prefix or settings.cache_key_prefix
        timeout = timeout or settings.cache_timeout_seconds

        self.client = client or aioredis.Redis.from_url(
            redis_url or settings.redis_url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            decode_responses=True,
        )
        logger.info(f"RedisCacheBackend initialized (prefix={self.key_prefix}, timeout={timeout}s)")

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "redis"

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except (RedisError, OSError, TimeoutError) as e:
            raise CacheUnavailable(f"Redis GET failed: {e}") from e

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self.client.set(key, value, ex=ttl_seconds)
        except (RedisError, OSError, TimeoutError) as e:
            raise CacheUnavailable(f"Redis SET failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except (RedisError, OSError, TimeoutError) as e:
            raise CacheUnavailable(f"Redis DEL failed: {e}") from e

    async def flush_all(self) -> int:
        removed = 0
        try:
            batch = []
            async for key in self.client.scan_iter(match=f"{self.key_prefix}:*", count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += await self.client.delete(*batch)
                    batch = []
            if batch:
                removed += await self.client.delete(*batch)
        except (RedisError, OSError, TimeoutError) as e:
            raise CacheUnavailable(f"Redis flush failed: {e}") from e

        logger.info(f"Redis cache flushed ({removed} keys under {self.key_prefix}:*)")
        return removed

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError, TimeoutError) as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        await self.client.aclose()
