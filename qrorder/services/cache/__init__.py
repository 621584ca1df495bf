"""
Cache Backend Factory

Provides a single entry point for obtaining a cache backend instance.
The rest of the application only talks to the CacheCoherenceLayer and
stays agnostic about which backend sits underneath.

Usage:
    from qrorder.services.cache import get_cache_backend

    # Returns MemoryCacheBackend or RedisCacheBackend based on settings
    backend = get_cache_backend()

Environment Switching:
    - ENV_MODE=development → MemoryCacheBackend
    - ENV_MODE=staging/production → RedisCacheBackend
    - CACHE_BACKEND=memory|redis overrides the mode-based choice

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from functools import lru_cache

from qrorder.core.config import Settings, get_settings
from qrorder.services.cache.base import BaseCacheBackend
from qrorder.services.cache.coherence import CacheCoherenceLayer
from qrorder.services.cache.memory import MemoryCacheBackend
from qrorder.services.cache.redis import RedisCacheBackend

logger = logging.getLogger(__name__)


def create_cache_backend(settings: Settings) -> BaseCacheBackend:
    """Build a new backend for the given settings."""
    if settings.uses_redis_cache:
        logger.info(f"Cache Backend: Using RedisCacheBackend ({settings.env_mode.value} mode)")
        return RedisCacheBackend(
            redis_url=settings.redis_url,
            key_prefix=settings.cache_key_prefix,
            timeout=settings.cache_timeout_seconds,
        )

    logger.info("Cache Backend: Using MemoryCacheBackend (development mode)")
    return MemoryCacheBackend()


@lru_cache()
def get_cache_backend() -> BaseCacheBackend:
    """
    Get the configured cache backend instance.

    The instance is cached so every component shares one connection
    pool (or, in development, one dictionary).

    Returns:
        BaseCacheBackend: Configured cache backend
    """
    return create_cache_backend(get_settings())


def reset_cache_backend() -> None:
    """
    Clear the cached backend instance.

    Useful for testing or when configuration changes at runtime.
    The next call to get_cache_backend() will create a new instance.
    """
    get_cache_backend.cache_clear()
    logger.debug("Cache backend instance cleared")


__all__ = [
    "create_cache_backend",
    "get_cache_backend",
    "reset_cache_backend",
    "BaseCacheBackend",
    "CacheCoherenceLayer",
    "MemoryCacheBackend",
    "RedisCacheBackend",
]
