"""
Pydantic Schemas for Request/Response Validation

Also used as the snapshot format stored in the cache: every cached cart,
order or menu item is the JSON dump of one of these models.

Money fields are Decimal and serialize as strings ("12.50") so that
totals survive the round trip without binary floating point.

Author: Khalil Bannouri
Version: 1.0.0
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# MENU SNAPSHOTS
# =============================================================================

class CustomizationOptionSnapshot(BaseModel):
    """Customization option as seen by the pricing calculator."""
    id: int
    group_name: str = "extras"
    label: str
    cost: Decimal = Decimal("0.00")

    model_config = ConfigDict(from_attributes=True)


class MenuItemSnapshot(BaseModel):
    """Read-only view of a menu item and its options."""
    id: int
    name: str
    base_price: Decimal
    is_available: bool = True
    options: List[CustomizationOptionSnapshot] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)

    def option_map(self) -> dict[int, CustomizationOptionSnapshot]:
        return {option.id: option for option in self.options}


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class LegacySessionFields(BaseModel):
    """Fields older clients send in the request body."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(None, alias="sessionId", examples=["session-T5-1750269477313-sbfn9f5xr"])
    table_number: Optional[str] = Field(None, alias="tableNumber", max_length=64, examples=["T5"])


class SessionCreate(BaseModel):
    """Request a session for a table (QR scan)."""
    model_config = ConfigDict(populate_by_name=True)

    table_number: Optional[str] = Field(None, alias="tableNumber", max_length=64, examples=["T5"])


class CartItemAdd(LegacySessionFields):
    """Add a menu item with its customization selections."""
    menu_item_id: int = Field(..., alias="menuItemId", ge=1, examples=[1])
    quantity: int = Field(default=1, ge=1, le=999, examples=[2])
    selections: List[int] = Field(default_factory=list, examples=[[3, 5]])
    special_instructions: Optional[str] = Field(
        None, alias="specialInstructions", max_length=500
    )

    @field_validator("special_instructions")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()


class CartItemUpdate(LegacySessionFields):
    """Change quantity and/or selections of an existing line."""
    quantity: Optional[int] = Field(None, ge=1, le=999)
    selections: Optional[List[int]] = None
    special_instructions: Optional[str] = Field(
        None, alias="specialInstructions", max_length=500
    )


class PlaceOrderRequest(LegacySessionFields):
    """Turn the current cart into an order."""
    customer_name: Optional[str] = Field(None, alias="customerName", max_length=100)
    notes: Optional[str] = Field(None, max_length=500)


class OrderStatusUpdate(BaseModel):
    status: str = Field(..., examples=["preparing"])


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class SessionResponse(BaseModel):
    session_id: str
    format: str
    table_number: str
    is_new: bool


class CartLineResponse(BaseModel):
    """A single cart line with its snapshotted prices."""
    id: int
    menu_item_id: int
    item_name: str
    selections: List[int]
    special_instructions: Optional[str] = None
    quantity: int
    customization_cost: Decimal
    unit_price: Decimal
    line_total: Decimal


class CartResponse(BaseModel):
    """A session's cart in insertion order."""
    session_id: str
    items: List[CartLineResponse] = Field(default_factory=list)
    total_items: int = 0
    total_quantity: int = 0
    total: Decimal = Decimal("0.00")


class OrderLineResponse(BaseModel):
    id: int
    menu_item_id: Optional[int]
    item_name: str
    selections: List[int]
    special_instructions: Optional[str]
    quantity: int
    unit_price: Decimal
    customization_cost: Decimal
    line_total: Decimal

    model_config = ConfigDict(from_attributes=True)


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    id: int
    session_id: Optional[str]
    table_number: Optional[str]
    status: str
    subtotal: Decimal
    service_fee: Decimal
    total: Decimal
    customer_name: Optional[str]
    notes: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]
    line_items: List[OrderLineResponse]

    model_config = ConfigDict(from_attributes=True)

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v):
        return getattr(v, "value", v)


class PriceDiscrepancyResponse(BaseModel):
    """Catalog price changed between add-to-cart and placement."""
    line_item_id: int
    item_name: str
    cart_unit_price: Decimal
    charged_unit_price: Decimal


class PlacedOrderResponse(BaseModel):
    """Response after successfully placing an order."""
    success: bool = True
    message: str
    session_id: str
    order: OrderResponse
    warnings: List[PriceDiscrepancyResponse] = Field(default_factory=list)


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    total: int
    orders: List[OrderResponse]


class MaintenanceResponse(BaseModel):
    success: bool = True
    message: str
    affected: int = 0


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None
    retryable: bool = False


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    cache: str
    cache_backend: str
    timestamp: datetime
