"""
SQLAlchemy Database Models

Relational layout for the QR ordering engine:
- Customer sessions (current and legacy identifier formats)
- Menu catalog items and their customization options
- Per-session cart line items with snapshotted prices
- Orders and their frozen line items

Money columns are Numeric(10, 2) and handled as decimal.Decimal.

Author: Khalil Bannouri
Version: 1.0.0
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from qrorder.database import Base, utcnow
import enum


class SessionStatus(str, enum.Enum):
    """Customer session lifecycle."""
    ACTIVE = "active"
    EXPIRED = "expired"
    MIGRATED = "migrated"


class SessionFormat(str, enum.Enum):
    """Shape of the session identifier."""
    LEGACY = "legacy"
    CURRENT = "current"


class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CustomerSession(Base):
    """
    Anonymous customer session scoping one cart, tied to a table context.

    Named CustomerSession to stay clear of sqlalchemy's own Session.
    """
    __tablename__ = "sessions"

    id = Column(String(128), primary_key=True)
    table_number = Column(String(64), nullable=False, default="guest", index=True)
    status = Column(
        Enum(SessionStatus),
        default=SessionStatus.ACTIVE,
        nullable=False,
        index=True
    )
    format = Column(Enum(SessionFormat), default=SessionFormat.CURRENT, nullable=False)

    # Set when a legacy identifier was rewritten to current format
    migrated_to = Column(String(128), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_activity = Column(DateTime, default=utcnow, nullable=False)

    line_items = relationship(
        "CartLineItem",
        back_populates="session",
        order_by="CartLineItem.position",
    )

    def __repr__(self):
        return f"<CustomerSession {self.id} - {self.status.value}>"


# =========================================================================
# MENU CATALOG
# =========================================================================

class MenuItem(Base):
    """Menu catalog entry. Read-only to the cart and order engine."""
    __tablename__ = "menu_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    base_price = Column(Numeric(10, 2), nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, onupdate=utcnow)

    options = relationship(
        "CustomizationOption",
        back_populates="menu_item",
        order_by="CustomizationOption.id",
        lazy="selectin",
    )

    def __repr__(self):
        return f"<MenuItem #{self.id} - {self.name} - {self.base_price}>"


class CustomizationOption(Base):
    """Optional modifier on a menu item with its own incremental cost."""
    __tablename__ = "customization_options"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=False, index=True)
    group_name = Column(String(50), nullable=False, default="extras")
    label = Column(String(100), nullable=False)
    cost = Column(Numeric(10, 2), nullable=False, default=0)

    menu_item = relationship("MenuItem", back_populates="options")


# =========================================================================
# CART
# =========================================================================

class CartLineItem(Base):
    """
    One line of a session's cart.

    unit_price and customization_cost are snapshots taken at the last
    mutation, not live references into the catalog.
    """
    __tablename__ = "cart_line_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    session_id = Column(String(128), ForeignKey("sessions.id"), nullable=False, index=True)
    menu_item_id = Column(Integer, nullable=False)
    item_name = Column(String(100), nullable=False)
    selections = Column(JSON, nullable=False, default=list)  # sorted option ids
    special_instructions = Column(Text, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    customization_cost = Column(Numeric(10, 2), nullable=False, default=0)
    unit_price = Column(Numeric(10, 2), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, onupdate=utcnow)

    session = relationship("CustomerSession", back_populates="line_items")

    def __repr__(self):
        return f"<CartLineItem #{self.id} - {self.item_name} x{self.quantity}>"


# =========================================================================
# ORDERS
# =========================================================================

class Order(Base):
    """
    Placed order with frozen prices.

    Keeps the originating session id as plain text: the order outlives
    the session it came from.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    session_id = Column(String(128), nullable=True, index=True)
    table_number = Column(String(64), nullable=True, index=True)
    status = Column(
        Enum(OrderStatus),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True
    )

    subtotal = Column(Numeric(10, 2), nullable=False)
    service_fee = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False)

    customer_name = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, onupdate=utcnow)

    line_items = relationship(
        "OrderLineItem",
        back_populates="order",
        order_by="OrderLineItem.position",
        lazy="selectin",
    )

    def __repr__(self):
        return f"<Order #{self.id} - {self.table_number} - {self.status.value}>"


class OrderLineItem(Base):
    """Frozen copy of a cart line at placement time."""
    __tablename__ = "order_line_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    menu_item_id = Column(Integer, nullable=True)
    item_name = Column(String(100), nullable=False)
    selections = Column(JSON, nullable=False, default=list)
    special_instructions = Column(Text, nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    customization_cost = Column(Numeric(10, 2), nullable=False, default=0)
    line_total = Column(Numeric(10, 2), nullable=False)
    position = Column(Integer, nullable=False, default=0)

    order = relationship("Order", back_populates="line_items")
