"""
Pricing Calculator

Pure fixed-point pricing for a menu item plus a selection of customization
options. Shared by the cart (live price at add/update) and the order
assembler (re-pricing at placement) so both always agree.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from qrorder.core.exceptions import InvalidQuantity, UnknownCustomization
from qrorder.schemas import MenuItemSnapshot

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Quantize any numeric input to two fractional digits."""
    if isinstance(value, float):
        # repr() keeps 2.5 as "2.5" instead of its binary expansion
        value = repr(value)
    return Decimal(value).quantize(CENT)


def normalize_selections(selections: Iterable[int]) -> list[int]:
    """Selections are a set: drop duplicates, sort for stable comparison."""
    return sorted({int(option_id) for option_id in selections or ()})


@dataclass(frozen=True)
class PriceQuote:
    unit_price: Decimal
    customization_cost: Decimal
    line_total: Decimal
    quantity: int


def price(menu_item: MenuItemSnapshot, selections: Iterable[int], quantity: int = 1) -> PriceQuote:
    """
    Price one line.

    Args:
        menu_item: Catalog snapshot of the item
        selections: Customization option ids chosen for the item
        quantity: Number of units (>= 1)

    Returns:
        PriceQuote: unit price (base + customizations), customization cost
        and line total, all exact to the cent

    Raises:
        InvalidQuantity: quantity below 1
        UnknownCustomization: an option id that does not belong to the item
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise InvalidQuantity(f"Quantity must be a positive integer, got {quantity!r}")

    options = menu_item.option_map()
    chosen = normalize_selections(selections)
    unknown = [option_id for option_id in chosen if option_id not in options]
    if unknown:
        raise UnknownCustomization(
            f"Unknown customization option(s) {unknown} for menu item #{menu_item.id}",
            detail={"menu_item_id": menu_item.id, "option_ids": unknown},
        )

    customization_cost = sum((to_money(options[i].cost) for i in chosen), Decimal("0.00"))
    unit_price = to_money(menu_item.base_price) + customization_cost
    return PriceQuote(
        unit_price=unit_price,
        customization_cost=customization_cost,
        line_total=unit_price * quantity,
        quantity=quantity,
    )
