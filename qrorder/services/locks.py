"""
Keyed Lock Registry

Per-key asyncio locks used to serialize read-modify-write work on one
customer session (and population of one cache key). Locks for different
keys never contend. Entries are reference-counted and dropped once no
task holds or waits for them, so the registry does not grow with the
number of sessions ever seen.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from qrorder.core.exceptions import TransientStorageFailure

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class KeyedLock:
    """
    Mutual exclusion scoped to a key.

    Example:
        >>> locks = KeyedLock(timeout=10)
        >>> async with locks.hold("session-T5-1750269477313-ab12cd34e"):
        ...     ...  # read-modify-write the cart
    """

    def __init__(self, timeout: float = 10.0, name: str = "lock"):
        self.timeout = timeout
        self.name = name
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @asynccontextmanager
    async def hold(self, key: str, timeout: float = None) -> AsyncIterator[None]:
        """
        Hold the lock for `key` for the duration of the block.

        Raises:
            TransientStorageFailure: The lock was not acquired in time
        """
        timeout = self.timeout if timeout is None else timeout
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            try:
                await asyncio.wait_for(entry.lock.acquire(), timeout)
            except TimeoutError as e:
                logger.warning(f"{self.name}: gave up waiting for {key} after {timeout}s")
                raise TransientStorageFailure(
                    f"Another request is still updating {key}; retry shortly"
                ) from e
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]
