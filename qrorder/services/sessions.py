"""
Session Identity Resolver

Derives and validates the anonymous customer session of a request.

Identifier formats:
    current:  session-<table>-<13-digit ms timestamp>-<6..15 alphanumerics>
    legacy:   any other token of [A-Za-z0-9_.:-], e.g. the old
              session-<timestamp>-<random> shape or ad-hoc client ids

Legacy ids keep working for reads. The first successful mutation under a
legacy id moves its cart to a current-format session (the table's active
one, or a freshly minted id), marks the legacy session as migrated and
evicts the legacy cache entry; the new id is returned to the client so it
can upgrade. Later mutations that still carry the legacy id are forwarded
to that same session.

A table has at most one active session: a write that would open a second
one goes to the existing session instead.

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
import logging
import re
import secrets
import string
import time
from contextlib import AsyncExitStack, asynccontextmanager, nullcontext
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import AsyncIterator, Optional, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qrorder.core.exceptions import InvalidSession, SessionExpired
from qrorder.database import transaction, utcnow
from qrorder.models import CartLineItem, CustomerSession, SessionFormat, SessionStatus
from qrorder.services.cache.coherence import CacheCoherenceLayer
from qrorder.services.compat import RequestShape, SessionSelection
from qrorder.services.locks import KeyedLock

logger = logging.getLogger(__name__)

CURRENT_PATTERN = re.compile(
    r"^session-(?P<context>[A-Za-z0-9_-]+)-(?P<timestamp>\d{13})-(?P<nonce>[A-Za-z0-9]{6,15})$"
)
LEGACY_PATTERN = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")

DEFAULT_CONTEXT = "guest"
NONCE_ALPHABET = string.ascii_lowercase + string.digits
NONCE_LENGTH = 9


# =============================================================================
# IDENTIFIERS
# =============================================================================

def normalize_session_id(session_id: Optional[str]) -> str:
    return (session_id or "").strip()


def classify(session_id: Optional[str]) -> Optional[SessionFormat]:
    """
    Classify an identifier.

    Returns:
        SessionFormat.CURRENT, SessionFormat.LEGACY, or None when the id is
        empty or matches neither pattern
    """
    session_id = normalize_session_id(session_id)
    if not session_id:
        return None
    if CURRENT_PATTERN.match(session_id):
        return SessionFormat.CURRENT
    if LEGACY_PATTERN.match(session_id):
        return SessionFormat.LEGACY
    return None


def context_fragment(table_number: Optional[str]) -> str:
    """Reduce a table label to the characters allowed inside an id."""
    fragment = re.sub(r"[^A-Za-z0-9_]", "", table_number or "")
    return fragment[:32] or DEFAULT_CONTEXT


def generate_session_id(table_number: Optional[str] = None) -> str:
    """Mint a current-format id: session-<table>-<ms timestamp>-<nonce>."""
    timestamp = int(time.time() * 1000)
    nonce = "".join(secrets.choice(NONCE_ALPHABET) for _ in range(NONCE_LENGTH))
    return f"session-{context_fragment(table_number)}-{timestamp:013d}-{nonce}"


def extract_table_number(session_id: str) -> Optional[str]:
    match = CURRENT_PATTERN.match(session_id)
    return match.group("context") if match else None


@dataclass(frozen=True)
class ResolvedSession:
    """The session a request operates on."""
    session_id: str
    format: SessionFormat
    source: RequestShape = RequestShape.NONE
    table_number: Optional[str] = None
    is_new: bool = False
    write_to: Optional[str] = None

    @property
    def is_legacy(self) -> bool:
        return self.format == SessionFormat.LEGACY


SessionRef = Union[str, ResolvedSession]


@dataclass(frozen=True)
class WritePlan:
    write_to: Optional[str] = None
    table_number: Optional[str] = None


# =============================================================================
# RESOLVER
# =============================================================================

class SessionIdentityResolver:
    """
    Resolves, creates, migrates and expires customer sessions.

    Attributes:
        session_maker: Durable store session factory
        cache: Coherence layer (cart entries are evicted on expiry/migration)
        locks: Per-session lock registry shared with the cart and orders
        table_locks: Serializes creation of a table's active session
        inactivity: Idle time after which an active session expires
        storage_timeout: Bound for each durable unit of work
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        cache: CacheCoherenceLayer,
        locks: KeyedLock,
        inactivity_minutes: int = 240,
        storage_timeout: float = 5.0,
    ):
        self.session_maker = session_maker
        self.cache = cache
        self.locks = locks
        self.table_locks = KeyedLock(timeout=locks.timeout, name="table")
        self.inactivity = timedelta(minutes=inactivity_minutes)
        self.storage_timeout = storage_timeout

    # -------------------------------------------------------------------------
    # Classification helpers
    # -------------------------------------------------------------------------

    def coerce(self, session: SessionRef) -> ResolvedSession:
        """Turn a bare id into a ResolvedSession, validating only its format."""
        if isinstance(session, ResolvedSession):
            return session
        session_id = normalize_session_id(session)
        session_format = classify(session_id)
        if session_format is None:
            raise InvalidSession(
                "Invalid session ID format",
                detail={"expected": "session-{table}-{timestamp}-{random}"},
            )
        return ResolvedSession(session_id=session_id, format=session_format)

    def is_expired(self, row: CustomerSession, now: Optional[datetime] = None) -> bool:
        if row.status == SessionStatus.EXPIRED:
            return True
        now = now or utcnow()
        return row.status == SessionStatus.ACTIVE and row.last_activity < now - self.inactivity

    # -------------------------------------------------------------------------
    # Request resolution (read side)
    # -------------------------------------------------------------------------

    async def resolve(self, selection: SessionSelection) -> ResolvedSession:
        """
        Resolve the session of a request.

        Without an id, re-use the active session of the request's table or
        mint a new id (persisted on the first cart interaction).

        Raises:
            InvalidSession: empty or malformed id, or table number mismatch
            SessionExpired: the session's inactivity window elapsed
        """
        if selection.session_id is None:
            return await self._session_for_table(selection.table_number, selection.shape)

        resolved = replace(
            self.coerce(selection.session_id),
            source=selection.shape,
            table_number=selection.table_number,
        )

        async with transaction(self.session_maker, self.storage_timeout) as db:
            row = await db.get(CustomerSession, resolved.session_id)

        if row is None:
            return replace(resolved, is_new=True)

        if self.is_expired(row):
            logger.warning(f"Session not found or expired: {resolved.session_id}")
            raise SessionExpired("Session expired; scan the table code again")

        if (
            resolved.table_number
            and row.table_number not in (DEFAULT_CONTEXT, resolved.table_number)
        ):
            logger.warning(
                f"Table number mismatch - Session: {row.table_number}, "
                f"Request: {resolved.table_number}"
            )
            raise InvalidSession("Table number mismatch")

        return replace(resolved, table_number=resolved.table_number or row.table_number)

    async def start_session(self, table_number: Optional[str]) -> ResolvedSession:
        """Get or create the active session of a table (QR scan)."""
        table_lock = self.table_locks.hold(table_number) if table_number else nullcontext()
        async with table_lock:
            resolved = await self._session_for_table(table_number, RequestShape.NONE)
            if resolved.is_new:
                async with transaction(self.session_maker, self.storage_timeout) as db:
                    await self.open_for_write(db, resolved)
                logger.info(f"Session created: {resolved.session_id} for table {resolved.table_number}")
        return resolved

    async def _session_for_table(
        self, table_number: Optional[str], shape: RequestShape
    ) -> ResolvedSession:
        if table_number:
            async with transaction(self.session_maker, self.storage_timeout) as db:
                row = await self._active_for_table(db, table_number)
            if row is not None:
                return ResolvedSession(
                    session_id=row.id,
                    format=SessionFormat.CURRENT,
                    source=shape,
                    table_number=row.table_number,
                )

        return ResolvedSession(
            session_id=generate_session_id(table_number),
            format=SessionFormat.CURRENT,
            source=shape,
            table_number=table_number or DEFAULT_CONTEXT,
            is_new=True,
        )

    async def _active_for_table(
        self, db: AsyncSession, table_number: str, now: Optional[datetime] = None
    ) -> Optional[CustomerSession]:
        cutoff = (now or utcnow()) - self.inactivity
        return (
            await db.execute(
                select(CustomerSession)
                .where(
                    CustomerSession.table_number == table_number,
                    CustomerSession.status == SessionStatus.ACTIVE,
                    CustomerSession.format == SessionFormat.CURRENT,
                    CustomerSession.last_activity >= cutoff,
                )
                .order_by(CustomerSession.last_activity.desc())
                .limit(1)
            )
        ).scalar_one_or_none()

    # -------------------------------------------------------------------------
    # Write side
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def hold_for_write(self, session: SessionRef) -> AsyncIterator[ResolvedSession]:
        """
        Hold every lock a mutation needs and yield the session to write to.

        The requested id is always locked first. A legacy id that already
        migrated writes to its successor, and an id that would open a second
        active session at a table writes to the table's session instead; in
        both cases that session is locked too. Creating a session row at a
        table also holds the table lock.

        Example:
            >>> async with resolver.hold_for_write(session_id) as target:
            ...     async with transaction(maker, timeout) as db:
            ...         written_id = await resolver.open_for_write(db, target)
        """
        resolved = self.coerce(session)
        async with AsyncExitStack() as stack:
            await stack.enter_async_context(self.locks.hold(resolved.session_id))

            plan = await self._plan_write(resolved)
            if plan.table_number:
                await stack.enter_async_context(self.table_locks.hold(plan.table_number))
                plan = await self._plan_write(resolved)

            if plan.write_to and plan.write_to != resolved.session_id:
                await stack.enter_async_context(self.locks.hold(plan.write_to))

            yield replace(resolved, write_to=plan.write_to)

    async def _plan_write(self, resolved: ResolvedSession) -> WritePlan:
        async with transaction(self.session_maker, self.storage_timeout) as db:
            row = await db.get(CustomerSession, resolved.session_id)

            if row is not None and not resolved.is_legacy:
                return WritePlan(write_to=row.id)
            if row is not None and row.status == SessionStatus.MIGRATED and row.migrated_to:
                return WritePlan(write_to=row.migrated_to)
            if row is not None and self.is_expired(row):
                return WritePlan()

            table_number = self._table_for_new_row(resolved, row)
            if table_number == DEFAULT_CONTEXT:
                return WritePlan()

            active = await self._active_for_table(db, table_number)
            if active is not None:
                return WritePlan(write_to=active.id)
            return WritePlan(table_number=table_number)

    def _table_for_new_row(
        self, resolved: ResolvedSession, row: Optional[CustomerSession] = None
    ) -> str:
        return (
            resolved.table_number
            or (row.table_number if row is not None else None)
            or (None if resolved.is_legacy else extract_table_number(resolved.session_id))
            or DEFAULT_CONTEXT
        )

    async def open_for_write(self, db: AsyncSession, resolved: ResolvedSession) -> str:
        """
        Make sure a writable current-format session exists.

        Called inside the mutation's transaction while the locks taken by
        hold_for_write are held. Creates the session row on first
        interaction, refreshes its activity, and performs migration-on-write
        for legacy ids.

        Returns:
            The session id the mutation must be written under

        Raises:
            SessionExpired: the session's inactivity window elapsed
        """
        if resolved.is_legacy:
            return await self._migrate_legacy(db, resolved)

        now = utcnow()
        session_id = resolved.write_to or resolved.session_id
        row = await self._lock_row(db, session_id)

        if row is None:
            table_number = self._table_for_new_row(resolved)
            await self._retire_stale(db, table_number, now)
            db.add(CustomerSession(
                id=session_id,
                table_number=table_number,
                status=SessionStatus.ACTIVE,
                format=SessionFormat.CURRENT,
                created_at=now,
                last_activity=now,
            ))
            await db.flush()
            return session_id

        if self.is_expired(row, now):
            raise SessionExpired("Session expired; scan the table code again")

        self.touch(row, now)
        return row.id

    def touch(self, row: CustomerSession, now: Optional[datetime] = None) -> None:
        """Refresh the inactivity window of a session row."""
        row.last_activity = now or utcnow()

    async def _lock_row(self, db: AsyncSession, session_id: str) -> Optional[CustomerSession]:
        return (
            await db.execute(
                select(CustomerSession)
                .where(CustomerSession.id == session_id)
                .with_for_update()
            )
        ).scalar_one_or_none()

    async def _migrate_legacy(self, db: AsyncSession, resolved: ResolvedSession) -> str:
        now = utcnow()
        legacy_row = await self._lock_row(db, resolved.session_id)

        if legacy_row is not None and self.is_expired(legacy_row, now):
            raise SessionExpired("Session expired; scan the table code again")

        if resolved.write_to:
            target = await self._lock_row(db, resolved.write_to)
            if target is None or self.is_expired(target, now):
                raise SessionExpired("Session expired; scan the table code again")
            self.touch(target, now)
            new_id = target.id
            table_number = target.table_number
        else:
            table_number = self._table_for_new_row(resolved, legacy_row)
            await self._retire_stale(db, table_number, now)
            new_id = generate_session_id(table_number)
            db.add(CustomerSession(
                id=new_id,
                table_number=table_number,
                status=SessionStatus.ACTIVE,
                format=SessionFormat.CURRENT,
                created_at=legacy_row.created_at if legacy_row is not None else now,
                last_activity=now,
            ))
            await db.flush()

        # Moved lines go after whatever the target cart already holds
        offset = (
            await db.execute(
                select(func.max(CartLineItem.position))
                .where(CartLineItem.session_id == new_id)
            )
        ).scalar() or 0
        moved = await db.execute(
            update(CartLineItem)
            .where(CartLineItem.session_id == resolved.session_id)
            .values(session_id=new_id, position=CartLineItem.position + offset)
            .execution_options(synchronize_session=False)
        )

        if legacy_row is None:
            db.add(CustomerSession(
                id=resolved.session_id,
                table_number=table_number,
                status=SessionStatus.MIGRATED,
                format=SessionFormat.LEGACY,
                created_at=now,
                last_activity=now,
                migrated_to=new_id,
            ))
        else:
            legacy_row.status = SessionStatus.MIGRATED
            legacy_row.format = SessionFormat.LEGACY
            legacy_row.migrated_to = new_id
            legacy_row.last_activity = now
        await db.flush()

        logger.info(
            f"Migrated legacy session {resolved.session_id} → {new_id} "
            f"({moved.rowcount} cart lines, via {resolved.source.value})"
        )
        return new_id

    async def _retire_stale(self, db: AsyncSession, table_number: str, now: datetime) -> None:
        """Expire idle sessions still marked active before a table gets a new one."""
        if table_number == DEFAULT_CONTEXT:
            return
        stale = list((
            await db.execute(
                select(CustomerSession.id).where(
                    CustomerSession.table_number == table_number,
                    CustomerSession.status == SessionStatus.ACTIVE,
                    CustomerSession.last_activity < now - self.inactivity,
                )
            )
        ).scalars())
        if stale:
            await self._retire(db, stale)
            for session_id in stale:
                await self.cache.invalidate(self.cache.cart_key(session_id))
            logger.info(f"Expired {len(stale)} idle sessions of table {table_number}")

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def expire_inactive(
        self, now: Optional[datetime] = None, settle_seconds: float = 0.0
    ) -> list[str]:
        """
        Mark idle sessions expired, drop their carts, evict their cache entries.

        Args:
            now: Reference time (defaults to utcnow())
            settle_seconds: When > 0, evict the cart entries a second time after
                this delay. Callers outside the API process pass the longest
                time a just-committed mutation may still spend writing its
                cart snapshot.
        """
        cutoff = (now or utcnow()) - self.inactivity
        async with transaction(self.session_maker, self.storage_timeout) as db:
            expired = list((
                await db.execute(
                    select(CustomerSession.id).where(
                        CustomerSession.status == SessionStatus.ACTIVE,
                        CustomerSession.last_activity < cutoff,
                    )
                )
            ).scalars())
            await self._retire(db, expired)

        await self._evict_carts(expired, settle_seconds)
        logger.info(f"Expired {len(expired)} inactive sessions")
        return expired

    async def reset_table(self, table_number: str, settle_seconds: float = 0.0) -> list[str]:
        """Expire every active session of a table (admin "reset table")."""
        async with transaction(self.session_maker, self.storage_timeout) as db:
            sessions = list((
                await db.execute(
                    select(CustomerSession.id).where(
                        CustomerSession.table_number == table_number,
                        CustomerSession.status == SessionStatus.ACTIVE,
                    )
                )
            ).scalars())
            await self._retire(db, sessions)

        await self._evict_carts(sessions, settle_seconds)
        logger.info(f"Reset {len(sessions)} sessions for table {table_number}")
        return sessions

    async def _retire(self, db: AsyncSession, session_ids: list[str]) -> None:
        if not session_ids:
            return
        await db.execute(delete(CartLineItem).where(CartLineItem.session_id.in_(session_ids)))
        await db.execute(
            update(CustomerSession)
            .where(CustomerSession.id.in_(session_ids))
            .values(status=SessionStatus.EXPIRED)
        )

    async def _evict_carts(self, session_ids: list[str], settle_seconds: float = 0.0) -> None:
        # Taking the session lock waits out any in-process mutation still writing its cart entry
        for session_id in session_ids:
            async with self.locks.hold(session_id):
                await self.cache.invalidate(self.cache.cart_key(session_id))

        if settle_seconds > 0 and session_ids:
            # Mutations committed by other processes hold no lock here
            await asyncio.sleep(settle_seconds)
            for session_id in session_ids:
                await self.cache.invalidate(self.cache.cart_key(session_id))
