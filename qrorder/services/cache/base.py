"""
Cache Backend Abstract Base Class

Defines the interface contract for all cache backend implementations.
Both MemoryCacheBackend and RedisCacheBackend implement these methods,
so the coherence layer behaves identically whichever one is active.

Backends store opaque strings and know nothing about carts or orders.
Every failure to reach the backend must surface as CacheUnavailable;
the coherence layer relies on that single exception to degrade to the
durable store.

Design Pattern: Strategy Pattern
    - Development and tests run on the in-memory backend
    - Staging/production run on Redis

Author: Khalil Bannouri
Version: 1.0.0
"""

from abc import ABC, abstractmethod
from typing import Optional


class BaseCacheBackend(ABC):
    """
    Abstract base class for cache backends.

    Only per-key last-write-wins is required; no ordering guarantees
    across keys.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """
        Return the name of the backend.

        Returns:
            str: Backend name (e.g., "memory", "redis")
        """
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """
        Fetch a value.

        Returns:
            str if present, None on miss

        Raises:
            CacheUnavailable: backend unreachable or timed out
        """
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store a value with an expiry (raises CacheUnavailable)."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key; deleting a missing key is not an error."""
        pass

    @abstractmethod
    async def flush_all(self) -> int:
        """
        Remove every entry owned by this application.

        Returns:
            int: Number of entries removed (best effort)
        """
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """
        Verify connectivity to the backend.

        Returns:
            bool: True if the backend is reachable
        """
        pass

    async def close(self) -> None:
        """Release connections. No-op by default."""
        return None
