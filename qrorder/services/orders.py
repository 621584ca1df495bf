"""
Order Assembler

Converts a session's cart into a placed order.

Placement runs under the session lock and inside one durable transaction:
every line is re-priced against the current catalog, the order and its
lines are inserted, and the cart rows are deleted. Either all of it is
committed or none of it is. Lines whose catalog price moved since they
were added are charged the current price and reported as warnings.

Also hosts the order read projections used by the admin screens.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from qrorder.core.exceptions import EmptyCart, InvalidOrderStatus, OrderNotFound
from qrorder.database import transaction, utcnow
from qrorder.models import CartLineItem, CustomerSession, Order, OrderLineItem, OrderStatus
from qrorder.schemas import CartResponse, OrderResponse, PriceDiscrepancyResponse
from qrorder.services.cache.coherence import CacheCoherenceLayer
from qrorder.services.catalog import MenuCatalog
from qrorder.services.locks import KeyedLock
from qrorder.services.pricing import price, to_money
from qrorder.services.sessions import SessionIdentityResolver, SessionRef

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceDiscrepancy:
    """A cart line whose snapshotted price differs from the charged price."""
    line_item_id: int
    item_name: str
    cart_unit_price: Decimal
    charged_unit_price: Decimal

    def to_response(self) -> PriceDiscrepancyResponse:
        return PriceDiscrepancyResponse(
            line_item_id=self.line_item_id,
            item_name=self.item_name,
            cart_unit_price=self.cart_unit_price,
            charged_unit_price=self.charged_unit_price,
        )


@dataclass
class PlacedOrder:
    order: OrderResponse
    session_id: str
    warnings: list[PriceDiscrepancy] = field(default_factory=list)
    migrated_from: Optional[str] = None


def parse_order_status(value) -> OrderStatus:
    """Accept an OrderStatus or its (case-insensitive) value."""
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(str(value).strip().lower())
    except ValueError:
        raise InvalidOrderStatus(
            f"Invalid status. Options: {[s.value for s in OrderStatus]}",
            detail={"status": value},
        )


class OrderAssembler:
    """
    Cart → order conversion and order projections.

    Attributes:
        service_fee: Flat fee added to every order total
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        cache: CacheCoherenceLayer,
        catalog: MenuCatalog,
        sessions: SessionIdentityResolver,
        locks: KeyedLock,
        storage_timeout: float = 5.0,
        service_fee=Decimal("0.00"),
    ):
        self.session_maker = session_maker
        self.cache = cache
        self.catalog = catalog
        self.sessions = sessions
        self.locks = locks
        self.storage_timeout = storage_timeout
        self.service_fee = to_money(service_fee)

    # =========================================================================
    # PLACEMENT
    # =========================================================================

    async def place_order(
        self,
        session: SessionRef,
        table_number: Optional[str] = None,
        customer_name: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> PlacedOrder:
        """
        Place the session's cart as an order.

        Args:
            session: Session id or resolved session
            table_number: Table to attribute the order to (defaults to the session's)
            customer_name: Optional name shown to the kitchen
            notes: Optional order-level notes

        Returns:
            PlacedOrder: The order snapshot plus any price discrepancy warnings

        Raises:
            EmptyCart: nothing to place
            MenuItemNotFound: a carted item left the menu
            DurableWriteFailure / TransientStorageFailure: nothing was committed
        """
        resolved = self.sessions.coerce(session)

        async with self.sessions.hold_for_write(resolved) as target:
            async with transaction(self.session_maker, self.storage_timeout) as db:
                session_id = await self.sessions.open_for_write(db, target)

                lines = (
                    await db.execute(
                        select(CartLineItem)
                        .where(CartLineItem.session_id == session_id)
                        .order_by(CartLineItem.position, CartLineItem.id)
                    )
                ).scalars().all()
                if not lines:
                    raise EmptyCart("Cart is empty", detail={"session_id": session_id})

                warnings: list[PriceDiscrepancy] = []
                order_lines: list[OrderLineItem] = []
                subtotal = to_money(0)

                for position, line in enumerate(lines, start=1):
                    menu_item = await self.catalog.get_menu_item(line.menu_item_id)
                    quote = price(menu_item, line.selections or [], line.quantity)

                    if quote.unit_price != to_money(line.unit_price):
                        logger.warning(
                            f"⚠️ Price changed for '{menu_item.name}' in {session_id}: "
                            f"{to_money(line.unit_price)} → {quote.unit_price}"
                        )
                        warnings.append(PriceDiscrepancy(
                            line_item_id=line.id,
                            item_name=menu_item.name,
                            cart_unit_price=to_money(line.unit_price),
                            charged_unit_price=quote.unit_price,
                        ))

                    order_lines.append(OrderLineItem(
                        menu_item_id=line.menu_item_id,
                        item_name=menu_item.name,
                        selections=list(line.selections or []),
                        special_instructions=line.special_instructions,
                        quantity=quote.quantity,
                        unit_price=quote.unit_price,
                        customization_cost=quote.customization_cost,
                        line_total=quote.line_total,
                        position=position,
                    ))
                    subtotal += quote.line_total

                session_row = await db.get(CustomerSession, session_id)
                now = utcnow()
                order = Order(
                    session_id=session_id,
                    table_number=table_number or session_row.table_number,
                    status=OrderStatus.PENDING,
                    subtotal=subtotal,
                    service_fee=self.service_fee,
                    total=subtotal + self.service_fee,
                    customer_name=customer_name,
                    notes=notes,
                    created_at=now,
                    updated_at=None,
                )
                order.line_items = order_lines
                db.add(order)

                await db.execute(delete(CartLineItem).where(CartLineItem.session_id == session_id))
                await db.flush()
                snapshot = OrderResponse.model_validate(order)

            logger.info(
                f"✅ Order #{snapshot.id} placed for {session_id} "
                f"({len(order_lines)} lines, total {snapshot.total})"
            )

            migrated_from = None
            if session_id != resolved.session_id:
                migrated_from = resolved.session_id
                await self.cache.invalidate(self.cache.cart_key(migrated_from))
            await self.cache.write(
                self.cache.cart_key(session_id),
                CartResponse(session_id=session_id).model_dump(mode="json"),
            )
            await self.cache.write(self.cache.order_key(snapshot.id), snapshot.model_dump(mode="json"))

        return PlacedOrder(
            order=snapshot,
            session_id=session_id,
            warnings=warnings,
            migrated_from=migrated_from,
        )

    # =========================================================================
    # PROJECTIONS
    # =========================================================================

    async def get_order_by_id(self, order_id: int) -> OrderResponse:
        """
        Fetch one order, read-through from the cache.

        Raises:
            OrderNotFound: no such order
        """
        async def load() -> Optional[dict]:
            async with transaction(self.session_maker, self.storage_timeout) as db:
                order = await db.get(Order, order_id)
                if order is None:
                    return None
                return OrderResponse.model_validate(order).model_dump(mode="json")

        data = await self.cache.read(self.cache.order_key(order_id), load)
        if data is None:
            raise OrderNotFound(f"Order #{order_id} not found")
        return OrderResponse.model_validate(data)

    async def list_orders(
        self,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[int, list[OrderResponse]]:
        """Newest-first page of orders, optionally filtered by status."""
        query = select(Order).order_by(Order.created_at.desc(), Order.id.desc())
        count_query = select(func.count(Order.id))

        if status:
            status_enum = parse_order_status(status)
            query = query.where(Order.status == status_enum)
            count_query = count_query.where(Order.status == status_enum)

        async with transaction(self.session_maker, self.storage_timeout) as db:
            total = (await db.execute(count_query)).scalar() or 0
            orders = (await db.execute(query.offset(skip).limit(limit))).scalars().all()
            return total, [OrderResponse.model_validate(order) for order in orders]

    async def get_orders_by_session(self, session: SessionRef) -> list[OrderResponse]:
        """Orders placed under a session id, newest first."""
        session_id = self.sessions.coerce(session).session_id
        async with transaction(self.session_maker, self.storage_timeout) as db:
            orders = (
                await db.execute(
                    select(Order)
                    .where(Order.session_id == session_id)
                    .order_by(Order.created_at.desc(), Order.id.desc())
                )
            ).scalars().all()
            return [OrderResponse.model_validate(order) for order in orders]

    async def update_order_status(self, order_id: int, status) -> OrderResponse:
        """
        Move an order through the kitchen workflow.

        Raises:
            InvalidOrderStatus: unknown status value
            OrderNotFound: no such order
        """
        status_enum = parse_order_status(status)

        async with self.locks.hold(self.cache.order_key(order_id)):
            async with transaction(self.session_maker, self.storage_timeout) as db:
                order = await db.get(Order, order_id)
                if order is None:
                    raise OrderNotFound(f"Order #{order_id} not found")
                order.status = status_enum
                order.updated_at = utcnow()
                await db.flush()
                snapshot = OrderResponse.model_validate(order)

            await self.cache.write(self.cache.order_key(order_id), snapshot.model_dump(mode="json"))

        logger.info(f"Order #{order_id} status → {status_enum.value}")
        return snapshot
