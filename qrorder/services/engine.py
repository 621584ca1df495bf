"""
Ordering Engine

Wires the cache coherence layer, session resolver, catalog, cart store
and order assembler around one durable store and one lock registry.
The FastAPI app builds a single engine in its lifespan; Celery tasks
and maintenance scripts build their own.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from qrorder.core.config import Settings, get_settings
from qrorder.database import build_engine, init_db, transaction
from qrorder.services.cache import create_cache_backend, get_cache_backend, reset_cache_backend
from qrorder.services.cache.base import BaseCacheBackend
from qrorder.services.cache.coherence import CacheCoherenceLayer
from qrorder.services.cart import CartStore
from qrorder.services.catalog import MenuCatalog
from qrorder.services.locks import KeyedLock
from qrorder.services.orders import OrderAssembler
from qrorder.services.sessions import SessionIdentityResolver

logger = logging.getLogger(__name__)


@dataclass
class OrderingEngine:
    settings: Settings
    db_engine: AsyncEngine
    session_maker: async_sessionmaker
    cache: CacheCoherenceLayer
    locks: KeyedLock
    catalog: MenuCatalog
    sessions: SessionIdentityResolver
    carts: CartStore
    orders: OrderAssembler

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        db_engine: Optional[AsyncEngine] = None,
        cache_backend: Optional[BaseCacheBackend] = None,
    ) -> "OrderingEngine":
        """
        Assemble all components from settings.

        Args:
            settings: Defaults to get_settings()
            db_engine: Defaults to a new engine for settings.database_url
            cache_backend: Defaults to the shared backend, or a new one for
                explicitly passed settings
        """
        shared = settings is None
        settings = settings or get_settings()
        if cache_backend is None:
            cache_backend = get_cache_backend() if shared else create_cache_backend(settings)
        db_engine = db_engine or build_engine(settings.database_url, echo=settings.debug)
        session_maker = async_sessionmaker(db_engine, expire_on_commit=False, autoflush=True)

        cache = CacheCoherenceLayer(
            cache_backend,
            key_prefix=settings.cache_key_prefix,
            ttl_seconds=settings.cache_ttl_seconds,
            timeout=settings.cache_timeout_seconds,
            lock_timeout=settings.session_lock_timeout_seconds,
        )
        locks = KeyedLock(timeout=settings.session_lock_timeout_seconds, name="session")
        storage_timeout = settings.storage_timeout_seconds

        catalog = MenuCatalog(session_maker, cache, storage_timeout)
        sessions = SessionIdentityResolver(
            session_maker,
            cache,
            locks,
            inactivity_minutes=settings.session_inactivity_minutes,
            storage_timeout=storage_timeout,
        )
        carts = CartStore(session_maker, cache, catalog, sessions, storage_timeout)
        orders = OrderAssembler(
            session_maker,
            cache,
            catalog,
            sessions,
            locks,
            storage_timeout=storage_timeout,
            service_fee=settings.service_fee,
        )

        return cls(
            settings=settings,
            db_engine=db_engine,
            session_maker=session_maker,
            cache=cache,
            locks=locks,
            catalog=catalog,
            sessions=sessions,
            carts=carts,
            orders=orders,
        )

    async def start(self) -> None:
        """Create tables (idempotent)."""
        await init_db(self.db_engine)

    async def database_ok(self) -> bool:
        try:
            async with transaction(self.session_maker, self.storage_timeout) as db:
                await db.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    @property
    def storage_timeout(self) -> float:
        return self.settings.storage_timeout_seconds

    async def flush_cache(self) -> int:
        return await self.cache.flush()

    async def close(self) -> None:
        await self.cache.backend.close()
        if get_cache_backend.cache_info().currsize and self.cache.backend is get_cache_backend():
            reset_cache_backend()
        await self.db_engine.dispose()
        logger.info("Ordering engine closed")
