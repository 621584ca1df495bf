"""
Database Connection Module
Handles the relational store using the SQLAlchemy async engine.

Engines are built explicitly from a database URL so that the app, tests
and scripts each point at their own database.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from qrorder.core.exceptions import DurableWriteFailure, TransientStorageFailure

logger = logging.getLogger(__name__)


# Base class for all our models
class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine, adding pool sizing only where the driver pools."""
    options = {"echo": echo}
    if not database_url.startswith("sqlite"):
        options.update(
            pool_size=5,  # Connection pool size
            max_overflow=10,  # Extra connections when pool is full
            pool_pre_ping=True,
        )
    return create_async_engine(database_url, **options)


async def init_db(engine: AsyncEngine) -> None:
    """
    Create all tables in database.
    Called once at application startup.
    """
    # Register models on Base.metadata
    from qrorder import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ Database tables created successfully!")


@asynccontextmanager
async def transaction(
    session_maker: async_sessionmaker,
    timeout: float,
) -> AsyncIterator[AsyncSession]:
    """
    Run one atomic unit of work against the durable store.

    Commits when the block exits cleanly and rolls back otherwise. Driver
    errors are translated into the engine's storage error kinds; domain
    errors raised inside the block pass through unchanged.

    Args:
        session_maker: Factory bound to the durable store
        timeout: Seconds before the unit of work is abandoned

    Raises:
        TransientStorageFailure: Store unreachable or the timeout elapsed
        DurableWriteFailure: The store rejected the write
    """
    try:
        async with asyncio.timeout(timeout):
            async with session_maker() as session:
                async with session.begin():
                    yield session
    except TimeoutError as e:
        logger.error(f"Durable store timed out after {timeout}s")
        raise TransientStorageFailure(
            f"Durable store did not respond within {timeout}s"
        ) from e
    except IntegrityError as e:
        logger.error(f"Durable write rejected: {e.orig}")
        raise DurableWriteFailure("Durable store rejected the write") from e
    except (OperationalError, InterfaceError) as e:
        logger.error(f"Durable store unavailable: {e}")
        raise TransientStorageFailure("Durable store is unavailable") from e
    except DBAPIError as e:
        if e.connection_invalidated:
            raise TransientStorageFailure("Durable store connection lost") from e
        raise DurableWriteFailure("Durable store rejected the operation") from e
