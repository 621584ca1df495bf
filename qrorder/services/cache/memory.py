"""
In-Memory Cache Backend

Process-local stand-in for Redis. Used in development mode
(ENV_MODE=development) and by the test-suite to:
    - Run the full cart/order flow without a Redis server
    - Inspect cached entries directly in tests

Behavior:
    - Honors per-entry TTL using a monotonic clock
    - Never raises CacheUnavailable (it cannot be unreachable)
"""

import logging
import time
from typing import Optional

from qrorder.services.cache.base import BaseCacheBackend

logger = logging.getLogger(__name__)


class MemoryCacheBackend(BaseCacheBackend):
    """
    Dictionary-backed cache.

    Example:
        >>> backend = MemoryCacheBackend()
        >>> await backend.set("qrorder:cart:abc", "{}", ttl_seconds=60)
        >>> await backend.get("qrorder:cart:abc")
        '{}'
    """

    def __init__(self):
        self._entries: dict[str, tuple[str, float]] = {}
        logger.info("MemoryCacheBackend initialized")

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "memory"

    def __contains__(self, key: str) -> bool:
        return self._live(key) is not None

    def keys(self) -> list[str]:
        return [key for key in list(self._entries) if self._live(key) is not None]

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= time.monotonic():
            self._entries.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries[key] = (value, time.monotonic() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def flush_all(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        logger.info(f"MemoryCacheBackend flushed ({count} entries)")
        return count

    async def ping(self) -> bool:
        return True
