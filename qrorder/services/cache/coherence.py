"""
Cache Coherence Layer

Sits between the engine and the cache backend and guarantees that a
completed write is never followed by a stale read.

Policy:
    - Read-through: on a miss the supplied loader reads the durable store
      and the result is cached before being returned.
    - Write-through: callers commit to the durable store first, then call
      write() or invalidate() before reporting success.
    - A failed cache write falls back to eviction. A failed eviction marks
      the key as suspect; suspect keys are never served from the cache
      until an eviction succeeds.
    - Population of a key and writes/invalidations of the same key are
      serialized, so a slow loader cannot overwrite a newer write.
    - Backend outages degrade to durable-store reads; they never turn into
      errors for the caller, except for an explicit flush().

Entries are stored as a JSON envelope:
    {"schema": 1, "fingerprint": "<sha256 of data>", "data": {...}}
An envelope with another schema version or a fingerprint that does not
match its data is treated as a miss and evicted.

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
import hashlib
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from qrorder.core.exceptions import CacheUnavailable, TransientStorageFailure
from qrorder.services.cache.base import BaseCacheBackend
from qrorder.services.locks import KeyedLock

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[Optional[dict]]]


def fingerprint(data: Any) -> str:
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class CacheCoherenceLayer:
    """
    Write-through, read-through cache in front of the durable store.

    Attributes:
        backend: Memory or Redis backend
        key_prefix: Namespace for every key
        ttl_seconds: Expiry applied to every entry
        timeout: Upper bound for a single backend call
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        backend: BaseCacheBackend,
        key_prefix: str = "qrorder",
        ttl_seconds: int = 3600,
        timeout: float = 2.0,
        lock_timeout: float = 10.0,
    ):
        self.backend = backend
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self._locks = KeyedLock(timeout=lock_timeout, name="cache")
        self._suspect: set[str] = set()

    # =========================================================================
    # KEYS
    # =========================================================================

    def key(self, resource: str, ident) -> str:
        return f"{self.key_prefix}:{resource}:{ident}"

    def cart_key(self, session_id: str) -> str:
        return self.key("cart", session_id)

    def order_key(self, order_id: int) -> str:
        return self.key("order", order_id)

    def menu_key(self, menu_item_id: int) -> str:
        return self.key("menu", menu_item_id)

    @property
    def suspect_keys(self) -> frozenset:
        return frozenset(self._suspect)

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def read(self, key: str, loader: Optional[Loader] = None) -> Optional[dict]:
        """
        Return the cached value, or load, populate and return it.

        Args:
            key: Cache key
            loader: Coroutine factory reading the durable store; returns
                None when the resource does not exist (misses are not cached)

        Returns:
            The value, or None on a miss without loader / missing resource
        """
        if await self._trustworthy(key):
            cached = await self._fetch(key)
            if cached is not None:
                return cached

        if loader is None:
            return None

        async with self._locks.hold(key):
            # A writer may have populated the key while we waited
            if await self._trustworthy(key):
                cached = await self._fetch(key)
                if cached is not None:
                    return cached

            value = await loader()
            if value is not None and key not in self._suspect:
                await self._store(key, value)
            return value

    async def write(self, key: str, value: dict) -> None:
        """Replace the cached value after a successful durable write."""
        try:
            async with self._locks.hold(key):
                if await self._store(key, value):
                    self._suspect.discard(key)
                else:
                    await self._evict(key)
        except TransientStorageFailure:
            # Could not even get the key lock: never serve this key until evicted
            self._mark_suspect(key)

    async def invalidate(self, key: str) -> None:
        """Evict a key after a successful durable write."""
        try:
            async with self._locks.hold(key):
                await self._evict(key)
        except TransientStorageFailure:
            self._mark_suspect(key)

    async def flush(self) -> int:
        """
        Remove every entry (administrative recovery).

        Raises:
            CacheUnavailable: The backend could not be flushed
        """
        removed = await self._call(self.backend.flush_all())
        self._suspect.clear()
        logger.warning(f"Cache flushed: {removed} entries removed")
        return removed

    async def ping(self) -> bool:
        try:
            return await self._call(self.backend.ping())
        except CacheUnavailable:
            return False

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _call(self, awaitable):
        try:
            return await asyncio.wait_for(awaitable, self.timeout)
        except TimeoutError as e:
            raise CacheUnavailable(f"Cache did not respond within {self.timeout}s") from e

    async def _fetch(self, key: str) -> Optional[dict]:
        try:
            raw = await self._call(self.backend.get(key))
        except CacheUnavailable as e:
            logger.warning(f"Cache unavailable, falling back to database: {e}")
            return None
        if raw is None:
            return None

        try:
            envelope = json.loads(raw)
            data = envelope["data"]
            valid = (
                envelope.get("schema") == self.SCHEMA_VERSION
                and envelope.get("fingerprint") == fingerprint(data)
            )
        except (ValueError, KeyError, TypeError, AttributeError):
            valid = False

        if not valid:
            logger.warning(f"Discarding unreadable cache entry {key}")
            await self._evict(key)
            return None
        return data

    async def _store(self, key: str, value: dict) -> bool:
        envelope = {
            "schema": self.SCHEMA_VERSION,
            "fingerprint": fingerprint(value),
            "data": value,
        }
        try:
            await self._call(
                self.backend.set(key, json.dumps(envelope, default=str), self.ttl_seconds)
            )
            return True
        except CacheUnavailable as e:
            logger.warning(f"Cache write failed for {key}: {e}")
            return False

    async def _evict(self, key: str) -> bool:
        try:
            await self._call(self.backend.delete(key))
        except CacheUnavailable as e:
            logger.error(f"Cache eviction failed for {key}, marking suspect: {e}")
            self._mark_suspect(key)
            return False
        self._suspect.discard(key)
        return True

    def _mark_suspect(self, key: str) -> None:
        self._suspect.add(key)

    async def _trustworthy(self, key: str) -> bool:
        """A suspect key becomes trustworthy again only after an eviction."""
        if key not in self._suspect:
            return True
        return await self._evict(key)
