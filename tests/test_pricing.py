"""
Tests for the pricing calculator
"""
import unittest
from decimal import Decimal

from qrorder.core.exceptions import InvalidQuantity, UnknownCustomization
from qrorder.schemas import CustomizationOptionSnapshot, MenuItemSnapshot
from qrorder.services.pricing import normalize_selections, price, to_money


def espresso() -> MenuItemSnapshot:
    return MenuItemSnapshot(
        id=3,
        name="Espresso",
        base_price=Decimal("2.35"),
        options=[
            CustomizationOptionSnapshot(id=10, group_name="milk", label="Oat milk", cost=Decimal("0.45")),
            CustomizationOptionSnapshot(id=11, group_name="size", label="Small cup", cost=Decimal("-0.10")),
            CustomizationOptionSnapshot(id=12, group_name="extras", label="Sugar", cost=Decimal("0.00")),
        ],
    )


class TestPricing(unittest.TestCase):
    """Test cases for price()"""

    def test_base_price_without_selections(self):
        quote = price(espresso(), [])

        self.assertEqual(quote.unit_price, Decimal("2.35"))
        self.assertEqual(quote.customization_cost, Decimal("0.00"))
        self.assertEqual(quote.line_total, Decimal("2.35"))

    def test_customizations_are_added_to_unit_price(self):
        quote = price(espresso(), [10, 11, 12], quantity=2)

        self.assertEqual(quote.customization_cost, Decimal("0.35"))
        self.assertEqual(quote.unit_price, Decimal("2.70"))
        self.assertEqual(quote.line_total, Decimal("5.40"))

    def test_line_total_is_exact_for_every_quantity(self):
        item = espresso()
        for quantity in range(1, 1001):
            quote = price(item, [10, 11], quantity)
            expected = (Decimal("2.35") + Decimal("0.45") - Decimal("0.10")) * quantity
            self.assertEqual(quote.line_total, expected, f"quantity={quantity}")
            self.assertEqual(quote.line_total.as_tuple().exponent, -2)

    def test_duplicate_selections_collapse(self):
        self.assertEqual(price(espresso(), [10, 10, 10]).unit_price, Decimal("2.80"))
        self.assertEqual(normalize_selections([12, 10, 12]), [10, 12])

    def test_unknown_customization(self):
        with self.assertRaises(UnknownCustomization) as ctx:
            price(espresso(), [10, 99])

        self.assertEqual(ctx.exception.detail["option_ids"], [99])
        self.assertEqual(ctx.exception.category, "validation")

    def test_invalid_quantities(self):
        for quantity in (0, -1, True, 1.5, "2"):
            with self.assertRaises(InvalidQuantity):
                price(espresso(), [], quantity)

    def test_to_money_quantizes_floats_by_value(self):
        self.assertEqual(to_money(0.1 + 0.2), Decimal("0.30"))
        self.assertEqual(to_money(2.5), Decimal("2.50"))
        self.assertEqual(to_money("280"), Decimal("280.00"))


if __name__ == '__main__':
    unittest.main()
