"""
Tests for the cart store
"""
import asyncio
import unittest
from decimal import Decimal

from qrorder.core.exceptions import (
    InvalidQuantity,
    LineItemNotFound,
    MenuItemNotFound,
    UnknownCustomization,
)
from qrorder.database import transaction
from qrorder.models import CustomerSession
from qrorder.schemas import CartResponse

from tests.support import EngineTestCase, FlakyCacheBackend, option_id

SESSION_ID = "session-T1-1750269477313-abcdef123"


class TestCartStore(EngineTestCase):
    """Test cases for CartStore"""

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.carts = self.engine.carts
        self.burger = self.menu["burger"]
        self.cheese = option_id(self.burger, "Cheese")
        self.bacon = option_id(self.burger, "Bacon")

    async def cached_cart(self, session_id: str = SESSION_ID) -> CartResponse:
        data = await self.engine.cache.read(self.engine.cache.cart_key(session_id))
        return CartResponse.model_validate(data)

    async def test_empty_cart(self):
        cart = await self.carts.get(SESSION_ID)

        self.assertEqual(cart.items, [])
        self.assertEqual(cart.total, Decimal("0.00"))
        self.assertEqual(cart.total_quantity, 0)

    async def test_add_prices_from_catalog(self):
        mutation = await self.carts.add(SESSION_ID, self.burger.id, quantity=2, selections=[self.bacon])
        line = mutation.cart.items[0]

        self.assertEqual(mutation.session_id, SESSION_ID)
        self.assertIsNone(mutation.migrated_from)
        self.assertEqual(line.item_name, "Classic Burger")
        self.assertEqual(line.customization_cost, Decimal("90.00"))
        self.assertEqual(line.unit_price, Decimal("370.00"))
        self.assertEqual(line.line_total, Decimal("740.00"))
        self.assertEqual(mutation.cart.total, Decimal("740.00"))

    async def test_first_add_creates_the_session(self):
        await self.carts.add(SESSION_ID, self.burger.id)

        async with transaction(self.engine.session_maker, 5) as db:
            row = await db.get(CustomerSession, SESSION_ID)
        self.assertIsNotNone(row)
        self.assertEqual(row.table_number, "T1")

    async def test_identical_adds_merge(self):
        await self.carts.add(SESSION_ID, self.burger.id, selections=[self.bacon, self.cheese])
        mutation = await self.carts.add(
            SESSION_ID, self.burger.id, quantity=3, selections=[self.cheese, self.bacon, self.cheese]
        )

        self.assertEqual(len(mutation.cart.items), 1)
        self.assertEqual(mutation.cart.items[0].quantity, 4)
        self.assertEqual(mutation.cart.items[0].selections, sorted([self.cheese, self.bacon]))
        self.assertEqual(mutation.cart.total, Decimal("420.00") * 4)

    async def test_different_selections_or_instructions_append(self):
        await self.carts.add(SESSION_ID, self.burger.id)
        await self.carts.add(SESSION_ID, self.burger.id, selections=[self.cheese])
        await self.carts.add(SESSION_ID, self.burger.id, special_instructions="no onions")
        mutation = await self.carts.add(SESSION_ID, self.burger.id, special_instructions="  ")

        self.assertEqual([line.quantity for line in mutation.cart.items], [2, 1, 1])
        self.assertEqual(
            [line.special_instructions for line in mutation.cart.items],
            [None, None, "no onions"],
        )

    async def test_lines_keep_insertion_order(self):
        await self.carts.add(SESSION_ID, self.menu["espresso"].id)
        await self.carts.add(SESSION_ID, self.burger.id)
        mutation = await self.carts.add(SESSION_ID, self.menu["carbonara"].id)

        self.assertEqual(
            [line.item_name for line in mutation.cart.items],
            ["Espresso", "Classic Burger", "Carbonara"],
        )

    async def test_update_reprices_line(self):
        added = await self.carts.add(SESSION_ID, self.burger.id)

        mutation = await self.carts.update(
            SESSION_ID, added.line_item_id, quantity=3, selections=[self.cheese]
        )
        line = mutation.cart.items[0]

        self.assertEqual(line.id, added.line_item_id)
        self.assertEqual(line.quantity, 3)
        self.assertEqual(line.unit_price, Decimal("330.00"))
        self.assertEqual(mutation.cart.total, Decimal("990.00"))

    async def test_update_quantity_only_keeps_selections(self):
        added = await self.carts.add(SESSION_ID, self.burger.id, selections=[self.bacon])

        mutation = await self.carts.update(SESSION_ID, added.line_item_id, quantity=2)

        self.assertEqual(mutation.cart.items[0].selections, [self.bacon])
        self.assertEqual(mutation.cart.items[0].line_total, Decimal("740.00"))

    async def test_update_special_instructions(self):
        added = await self.carts.add(SESSION_ID, self.burger.id, special_instructions="well done")

        kept = await self.carts.update(SESSION_ID, added.line_item_id, quantity=2)
        cleared = await self.carts.update(SESSION_ID, added.line_item_id, special_instructions=None)

        self.assertEqual(kept.cart.items[0].special_instructions, "well done")
        self.assertIsNone(cleared.cart.items[0].special_instructions)

    async def test_update_unknown_line(self):
        with self.assertRaises(LineItemNotFound):
            await self.carts.update(SESSION_ID, 12345, quantity=2)

    async def test_lines_are_scoped_to_their_session(self):
        added = await self.carts.add(SESSION_ID, self.burger.id)
        other = "session-T2-1750269477313-zzzzzz999"

        with self.assertRaises(LineItemNotFound):
            await self.carts.remove(other, added.line_item_id)
        with self.assertRaises(LineItemNotFound):
            await self.carts.update(other, added.line_item_id, quantity=5)

    async def test_remove_last_line_leaves_empty_cart(self):
        added = await self.carts.add(SESSION_ID, self.burger.id)

        mutation = await self.carts.remove(SESSION_ID, added.line_item_id)

        self.assertEqual(mutation.cart.items, [])
        self.assertEqual(mutation.cart.total, Decimal("0.00"))
        with self.assertRaises(LineItemNotFound):
            await self.carts.remove(SESSION_ID, added.line_item_id)

    async def test_clear(self):
        await self.carts.add(SESSION_ID, self.burger.id)
        await self.carts.add(SESSION_ID, self.menu["carbonara"].id)

        mutation = await self.carts.clear(SESSION_ID)

        self.assertEqual(mutation.cart.items, [])
        self.assertEqual((await self.carts.get(SESSION_ID)).items, [])

    async def test_validation_errors(self):
        with self.assertRaises(UnknownCustomization):
            await self.carts.add(SESSION_ID, self.burger.id, selections=[option_id(self.menu["espresso"], "Oat milk")])
        with self.assertRaises(InvalidQuantity):
            await self.carts.add(SESSION_ID, self.burger.id, quantity=0)
        with self.assertRaises(MenuItemNotFound):
            await self.carts.add(SESSION_ID, 999)

        self.assertEqual((await self.carts.get(SESSION_ID)).items, [])

    async def test_unavailable_item_cannot_be_added(self):
        await self.engine.catalog.update_menu_item(self.burger.id, is_available=False)

        with self.assertRaises(MenuItemNotFound):
            await self.carts.add(SESSION_ID, self.burger.id)

    async def test_no_stale_read_after_mutations(self):
        added = await self.carts.add(SESSION_ID, self.burger.id)
        self.assertEqual((await self.cached_cart()).total_quantity, 1)

        await self.carts.update(SESSION_ID, added.line_item_id, quantity=4)
        self.assertEqual((await self.cached_cart()).total_quantity, 4)
        self.assertEqual((await self.carts.get(SESSION_ID)).total_quantity, 4)

        await self.carts.remove(SESSION_ID, added.line_item_id)
        self.assertEqual((await self.cached_cart()).items, [])
        self.assertEqual((await self.carts.get(SESSION_ID)).items, [])

    async def test_concurrent_identical_adds_merge(self):
        await self.carts.add(SESSION_ID, self.burger.id)

        await asyncio.gather(*[
            self.carts.add(SESSION_ID, self.burger.id, quantity=2) for _ in range(10)
        ])

        cart = await self.carts.get(SESSION_ID)
        self.assertEqual(len(cart.items), 1)
        self.assertEqual(cart.items[0].quantity, 21)
        self.assertEqual(cart.total, Decimal("280.00") * 21)
        self.assertEqual(len(self.engine.locks), 0)


class TestCartWithFailingCache(EngineTestCase):
    """The cart stays correct while the cache is down"""

    cache_backend_class = FlakyCacheBackend

    async def test_mutations_succeed_and_reads_stay_fresh(self):
        burger = self.menu["burger"]
        await self.engine.carts.add(SESSION_ID, burger.id)
        await self.engine.carts.get(SESSION_ID)

        self.backend.fail_set = True
        self.backend.fail_delete = True
        mutation = await self.engine.carts.add(SESSION_ID, burger.id)

        self.assertEqual(mutation.cart.total_quantity, 2)
        self.assertIn(self.engine.cache.cart_key(SESSION_ID), self.engine.cache.suspect_keys)
        self.assertEqual((await self.engine.carts.get(SESSION_ID)).total_quantity, 2)

        self.backend.fail_set = False
        self.backend.fail_delete = False
        self.assertEqual((await self.engine.carts.get(SESSION_ID)).total_quantity, 2)
        self.assertEqual(self.engine.cache.suspect_keys, frozenset())

    async def test_cache_reads_failing(self):
        self.backend.fail_get = True

        mutation = await self.engine.carts.add(SESSION_ID, self.menu["carbonara"].id)

        self.assertEqual(mutation.cart.total, Decimal("150.00"))
        self.assertEqual((await self.engine.carts.get(SESSION_ID)).total, Decimal("150.00"))


if __name__ == '__main__':
    unittest.main()
