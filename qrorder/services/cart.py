"""
Cart Store

Per-session cart line items with snapshotted prices.

Every mutation:
    1. waits for the session's locks (read-modify-write is serialized),
    2. opens one durable transaction, creating or migrating the session,
    3. prices the line through the Pricing Calculator (caller prices are
       never accepted),
    4. commits, then writes the fresh cart snapshot through the cache
       before returning.

Reads are served read-through from the cache.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qrorder.core.exceptions import LineItemNotFound
from qrorder.database import transaction
from qrorder.models import CartLineItem
from qrorder.schemas import CartLineResponse, CartResponse
from qrorder.services.cache.coherence import CacheCoherenceLayer
from qrorder.services.catalog import MenuCatalog
from qrorder.services.pricing import normalize_selections, price, to_money
from qrorder.services.sessions import SessionIdentityResolver, SessionRef

logger = logging.getLogger(__name__)

_UNSET = object()


@dataclass
class CartMutation:
    """Outcome of a cart mutation."""
    session_id: str
    cart: CartResponse
    line_item_id: Optional[int] = None
    migrated_from: Optional[str] = None


def _clean_instructions(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value.strip()


async def build_cart_snapshot(db: AsyncSession, session_id: str) -> CartResponse:
    """Read a session's cart rows, in insertion order, inside an open transaction."""
    lines = (
        await db.execute(
            select(CartLineItem)
            .where(CartLineItem.session_id == session_id)
            .order_by(CartLineItem.position, CartLineItem.id)
        )
    ).scalars().all()

    items = [
        CartLineResponse(
            id=line.id,
            menu_item_id=line.menu_item_id,
            item_name=line.item_name,
            selections=list(line.selections or []),
            special_instructions=line.special_instructions,
            quantity=line.quantity,
            customization_cost=to_money(line.customization_cost),
            unit_price=to_money(line.unit_price),
            line_total=to_money(line.unit_price) * line.quantity,
        )
        for line in lines
    ]
    return CartResponse(
        session_id=session_id,
        items=items,
        total_items=len(items),
        total_quantity=sum(item.quantity for item in items),
        total=sum((item.line_total for item in items), to_money(0)),
    )


class CartStore:
    """
    Session-scoped cart with write-through caching.

    Attributes:
        session_maker: Durable store session factory
        cache: Coherence layer
        catalog: Menu catalog used for pricing
        sessions: Resolver performing session creation / migration on write
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        cache: CacheCoherenceLayer,
        catalog: MenuCatalog,
        sessions: SessionIdentityResolver,
        storage_timeout: float = 5.0,
    ):
        self.session_maker = session_maker
        self.cache = cache
        self.catalog = catalog
        self.sessions = sessions
        self.storage_timeout = storage_timeout

    # =========================================================================
    # READ
    # =========================================================================

    async def get(self, session: SessionRef) -> CartResponse:
        """Return the cart in insertion order (empty cart when none exists)."""
        session_id = self.sessions.coerce(session).session_id

        async def load() -> dict:
            async with transaction(self.session_maker, self.storage_timeout) as db:
                cart = await build_cart_snapshot(db, session_id)
            return cart.model_dump(mode="json")

        data = await self.cache.read(self.cache.cart_key(session_id), load)
        return CartResponse.model_validate(data)

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def add(
        self,
        session: SessionRef,
        menu_item_id: int,
        quantity: int = 1,
        selections: Iterable[int] = (),
        special_instructions: Optional[str] = None,
    ) -> CartMutation:
        """
        Add a line, merging into an identical existing line.

        Lines are identical when menu item, selection set and special
        instructions all match; their quantities are summed.

        Raises:
            MenuItemNotFound, UnknownCustomization, InvalidQuantity
        """
        menu_item = await self.catalog.get_menu_item(menu_item_id)
        chosen = normalize_selections(selections)
        instructions = _clean_instructions(special_instructions)
        quote = price(menu_item, chosen, quantity)

        async def work(db: AsyncSession, session_id: str) -> int:
            existing = (
                await db.execute(
                    select(CartLineItem)
                    .where(
                        CartLineItem.session_id == session_id,
                        CartLineItem.menu_item_id == menu_item_id,
                    )
                    .order_by(CartLineItem.position)
                )
            ).scalars().all()

            for line in existing:
                if list(line.selections or []) == chosen and line.special_instructions == instructions:
                    merged = price(menu_item, chosen, line.quantity + quantity)
                    line.quantity = merged.quantity
                    line.item_name = menu_item.name
                    line.unit_price = merged.unit_price
                    line.customization_cost = merged.customization_cost
                    logger.debug(f"Merged into cart line #{line.id} (qty {line.quantity})")
                    return line.id

            last_position = (
                await db.execute(
                    select(func.max(CartLineItem.position))
                    .where(CartLineItem.session_id == session_id)
                )
            ).scalar()
            line = CartLineItem(
                session_id=session_id,
                menu_item_id=menu_item.id,
                item_name=menu_item.name,
                selections=chosen,
                special_instructions=instructions,
                quantity=quote.quantity,
                customization_cost=quote.customization_cost,
                unit_price=quote.unit_price,
                position=(last_position or 0) + 1,
            )
            db.add(line)
            await db.flush()
            return line.id

        return await self._mutate(session, work)

    async def update(
        self,
        session: SessionRef,
        line_item_id: int,
        quantity: Optional[int] = None,
        selections: Optional[Iterable[int]] = None,
        special_instructions=_UNSET,
    ) -> CartMutation:
        """
        Replace quantity and/or selections of a line and re-price it.

        Raises:
            LineItemNotFound: no such line in this session's cart
        """
        async def work(db: AsyncSession, session_id: str) -> int:
            line = await self._line(db, session_id, line_item_id)
            menu_item = await self.catalog.get_menu_item(line.menu_item_id)
            chosen = (
                normalize_selections(selections)
                if selections is not None
                else list(line.selections or [])
            )
            quote = price(menu_item, chosen, line.quantity if quantity is None else quantity)

            line.selections = chosen
            line.quantity = quote.quantity
            line.item_name = menu_item.name
            line.unit_price = quote.unit_price
            line.customization_cost = quote.customization_cost
            if special_instructions is not _UNSET:
                line.special_instructions = _clean_instructions(special_instructions)
            return line.id

        return await self._mutate(session, work)

    async def remove(self, session: SessionRef, line_item_id: int) -> CartMutation:
        """
        Delete a line. Removing the last line leaves an empty cart.

        Raises:
            LineItemNotFound: no such line in this session's cart
        """
        async def work(db: AsyncSession, session_id: str) -> int:
            line = await self._line(db, session_id, line_item_id)
            await db.delete(line)
            await db.flush()
            return line_item_id

        return await self._mutate(session, work)

    async def clear(self, session: SessionRef) -> CartMutation:
        """Delete every line of the cart."""
        async def work(db: AsyncSession, session_id: str) -> None:
            await db.execute(delete(CartLineItem).where(CartLineItem.session_id == session_id))
            return None

        return await self._mutate(session, work)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _line(self, db: AsyncSession, session_id: str, line_item_id: int) -> CartLineItem:
        line = (
            await db.execute(
                select(CartLineItem).where(
                    CartLineItem.id == line_item_id,
                    CartLineItem.session_id == session_id,
                )
            )
        ).scalar_one_or_none()
        if line is None:
            raise LineItemNotFound(
                f"Cart line #{line_item_id} not found",
                detail={"line_item_id": line_item_id},
            )
        return line

    async def _mutate(
        self,
        session: SessionRef,
        work: Callable[[AsyncSession, str], Awaitable[Optional[int]]],
    ) -> CartMutation:
        resolved = self.sessions.coerce(session)

        async with self.sessions.hold_for_write(resolved) as target:
            async with transaction(self.session_maker, self.storage_timeout) as db:
                session_id = await self.sessions.open_for_write(db, target)
                line_item_id = await work(db, session_id)
                cart = await build_cart_snapshot(db, session_id)

            migrated_from = None
            if session_id != resolved.session_id:
                migrated_from = resolved.session_id
                await self.cache.invalidate(self.cache.cart_key(migrated_from))
            await self.cache.write(self.cache.cart_key(session_id), cart.model_dump(mode="json"))

        return CartMutation(
            session_id=session_id,
            cart=cart,
            line_item_id=line_item_id,
            migrated_from=migrated_from,
        )
