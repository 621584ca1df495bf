"""
Tests for session identity resolution, migration and expiry
"""
import asyncio
import unittest
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select

from qrorder.core.exceptions import InvalidSession, LineItemNotFound, SessionExpired
from qrorder.database import transaction, utcnow
from qrorder.models import CartLineItem, CustomerSession, SessionFormat, SessionStatus
from qrorder.services.compat import RequestShape, SessionSelection
from qrorder.services.sessions import (
    CURRENT_PATTERN,
    ResolvedSession,
    classify,
    context_fragment,
    generate_session_id,
)

from tests.support import EngineTestCase

CURRENT_ID = "session-T5-1750269477313-ab12cd34e"


class TestClassification(unittest.TestCase):
    """Test cases for identifier classification"""

    def test_current_format(self):
        self.assertEqual(classify(CURRENT_ID), SessionFormat.CURRENT)
        self.assertEqual(classify("session-guest-1750269477313-abcdef"), SessionFormat.CURRENT)
        self.assertEqual(classify("session-table_2-1750269477313-ABCdef123456789"), SessionFormat.CURRENT)

    def test_legacy_formats(self):
        # The old session-<timestamp>-<random> shape and ad-hoc client ids
        self.assertEqual(classify("session-1750269477313-sbfn9f5xr"), SessionFormat.LEGACY)
        self.assertEqual(classify("test-session-1700000000000"), SessionFormat.LEGACY)
        self.assertEqual(classify("abc"), SessionFormat.LEGACY)
        # Nonce too short for the current format
        self.assertEqual(classify("session-T5-1750269477313-abc"), SessionFormat.LEGACY)

    def test_invalid(self):
        for value in (None, "", "   ", "bad id!", "x" * 129, "séssion"):
            self.assertIsNone(classify(value), repr(value))

    def test_whitespace_is_stripped(self):
        self.assertEqual(classify(f"  {CURRENT_ID}\n"), SessionFormat.CURRENT)

    def test_generated_ids_are_current(self):
        session_id = generate_session_id("T 5/A")
        match = CURRENT_PATTERN.match(session_id)

        self.assertIsNotNone(match)
        self.assertEqual(match.group("context"), "T5A")
        self.assertEqual(len(match.group("nonce")), 9)
        self.assertNotEqual(session_id, generate_session_id("T 5/A"))

    def test_context_fragment_defaults_to_guest(self):
        self.assertEqual(context_fragment(None), "guest")
        self.assertEqual(context_fragment("!!"), "guest")
        self.assertEqual(generate_session_id().split("-")[1], "guest")


class TestSessionResolver(EngineTestCase):
    """Test cases for SessionIdentityResolver"""

    async def test_unknown_current_id_is_new(self):
        resolved = await self.engine.sessions.resolve(
            SessionSelection(CURRENT_ID, RequestShape.HEADER, None)
        )

        self.assertEqual(resolved.session_id, CURRENT_ID)
        self.assertTrue(resolved.is_new)
        self.assertFalse(resolved.is_legacy)

    async def test_invalid_id_is_rejected(self):
        for value in ("", "   ", "no spaces allowed"):
            with self.assertRaises(InvalidSession):
                await self.engine.sessions.resolve(SessionSelection(value, RequestShape.HEADER))

    async def test_start_session_reuses_the_active_table_session(self):
        first = await self.engine.sessions.start_session("T7")
        second = await self.engine.sessions.start_session("T7")
        other = await self.engine.sessions.start_session("T8")

        self.assertTrue(first.is_new)
        self.assertFalse(second.is_new)
        self.assertEqual(first.session_id, second.session_id)
        self.assertNotEqual(first.session_id, other.session_id)
        self.assertTrue(first.session_id.startswith("session-T7-"))

    async def test_resolve_without_id_uses_table_session(self):
        started = await self.engine.sessions.start_session("T7")

        resolved = await self.engine.sessions.resolve(SessionSelection(None, RequestShape.NONE, "T7"))

        self.assertEqual(resolved.session_id, started.session_id)

    async def test_table_number_mismatch(self):
        started = await self.engine.sessions.start_session("T7")

        with self.assertRaises(InvalidSession):
            await self.engine.sessions.resolve(
                SessionSelection(started.session_id, RequestShape.HEADER, "T9")
            )

    async def test_expired_session_is_rejected(self):
        started = await self.engine.sessions.start_session("T7")
        async with transaction(self.engine.session_maker, 5) as db:
            row = await db.get(CustomerSession, started.session_id)
            row.last_activity = utcnow() - timedelta(minutes=self.settings.session_inactivity_minutes + 1)

        with self.assertRaises(SessionExpired):
            await self.engine.sessions.resolve(
                SessionSelection(started.session_id, RequestShape.HEADER)
            )
        with self.assertRaises(SessionExpired):
            await self.engine.carts.add(started.session_id, self.menu["burger"].id)

    async def test_mutation_refreshes_last_activity(self):
        started = await self.engine.sessions.start_session("T7")
        stale = utcnow() - timedelta(minutes=30)
        async with transaction(self.engine.session_maker, 5) as db:
            (await db.get(CustomerSession, started.session_id)).last_activity = stale

        await self.engine.carts.add(started.session_id, self.menu["burger"].id)

        async with transaction(self.engine.session_maker, 5) as db:
            row = await db.get(CustomerSession, started.session_id)
            self.assertGreater(row.last_activity, stale)


class TestLegacyMigration(EngineTestCase):
    """A legacy id is rewritten to a current id on its first mutation"""

    legacy_id = "session-1750269477313-sbfn9f5xr"

    async def seed_legacy_cart(self):
        burger = self.menu["burger"]
        async with transaction(self.engine.session_maker, 5) as db:
            db.add(CustomerSession(
                id=self.legacy_id,
                table_number="T4",
                status=SessionStatus.ACTIVE,
                format=SessionFormat.LEGACY,
            ))
            await db.flush()
            db.add(CartLineItem(
                session_id=self.legacy_id,
                menu_item_id=burger.id,
                item_name=burger.name,
                selections=[],
                quantity=2,
                customization_cost=Decimal("0.00"),
                unit_price=Decimal("280.00"),
                position=1,
            ))

    async def test_reads_never_migrate(self):
        await self.seed_legacy_cart()

        cart = await self.engine.carts.get(self.legacy_id)

        self.assertEqual(cart.session_id, self.legacy_id)
        self.assertEqual(cart.total_quantity, 2)
        async with transaction(self.engine.session_maker, 5) as db:
            row = await db.get(CustomerSession, self.legacy_id)
            self.assertEqual(row.status, SessionStatus.ACTIVE)

    async def test_mutation_migrates_existing_cart(self):
        await self.seed_legacy_cart()
        await self.engine.carts.get(self.legacy_id)  # warm the legacy cache entry

        mutation = await self.engine.carts.add(self.legacy_id, self.menu["carbonara"].id)

        self.assertEqual(mutation.migrated_from, self.legacy_id)
        self.assertEqual(classify(mutation.session_id), SessionFormat.CURRENT)
        self.assertTrue(mutation.session_id.startswith("session-T4-"))
        self.assertEqual([line.quantity for line in mutation.cart.items], [2, 1])

        # The legacy id now misses
        self.assertNotIn(self.engine.cache.cart_key(self.legacy_id), self.backend)
        legacy_cart = await self.engine.carts.get(self.legacy_id)
        self.assertEqual(legacy_cart.items, [])

        async with transaction(self.engine.session_maker, 5) as db:
            legacy = await db.get(CustomerSession, self.legacy_id)
            current = await db.get(CustomerSession, mutation.session_id)
            self.assertEqual(legacy.status, SessionStatus.MIGRATED)
            self.assertEqual(legacy.migrated_to, mutation.session_id)
            self.assertEqual(current.format, SessionFormat.CURRENT)
            self.assertEqual(current.table_number, "T4")

    async def test_unknown_legacy_id_migrates_on_first_add(self):
        mutation = await self.engine.carts.add("test-session-1700000000000", self.menu["burger"].id)

        self.assertNotEqual(mutation.session_id, "test-session-1700000000000")
        self.assertTrue(mutation.session_id.startswith("session-guest-"))
        self.assertEqual(len(mutation.cart.items), 1)

    async def test_failed_mutation_does_not_migrate(self):
        await self.seed_legacy_cart()

        with self.assertRaises(LineItemNotFound):
            await self.engine.carts.remove(self.legacy_id, 9999)

        async with transaction(self.engine.session_maker, 5) as db:
            row = await db.get(CustomerSession, self.legacy_id)
            self.assertEqual(row.status, SessionStatus.ACTIVE)
        self.assertEqual((await self.engine.carts.get(self.legacy_id)).total_quantity, 2)

    async def test_concurrent_adds_with_one_legacy_id_share_a_cart(self):
        legacy_id = "test-session-1700000000000"
        burger = self.menu["burger"]

        first, second = await asyncio.gather(
            self.engine.carts.add(legacy_id, burger.id, quantity=1),
            self.engine.carts.add(legacy_id, burger.id, quantity=2),
        )

        self.assertEqual(first.session_id, second.session_id)
        cart = await self.engine.carts.get(first.session_id)
        self.assertEqual([(line.menu_item_id, line.quantity) for line in cart.items], [(burger.id, 3)])

    async def test_migrated_legacy_id_is_forwarded(self):
        await self.seed_legacy_cart()
        first = await self.engine.carts.add(self.legacy_id, self.menu["carbonara"].id)

        second = await self.engine.carts.add(self.legacy_id, self.menu["burger"].id)

        self.assertEqual(second.session_id, first.session_id)
        self.assertEqual(second.migrated_from, self.legacy_id)
        self.assertEqual([line.quantity for line in second.cart.items], [3, 1])
        self.assertEqual((await self.engine.carts.get(self.legacy_id)).items, [])

    async def test_forwarding_to_an_expired_session_is_rejected(self):
        await self.seed_legacy_cart()
        await self.engine.carts.add(self.legacy_id, self.menu["carbonara"].id)
        await self.engine.sessions.reset_table("T4")

        with self.assertRaises(SessionExpired):
            await self.engine.carts.add(self.legacy_id, self.menu["burger"].id)


class TestOneActiveSessionPerTable(EngineTestCase):
    """A table never has two active sessions"""

    async def active_sessions(self, table_number: str) -> list[str]:
        async with transaction(self.engine.session_maker, 5) as db:
            return list((
                await db.execute(
                    select(CustomerSession.id).where(
                        CustomerSession.table_number == table_number,
                        CustomerSession.status == SessionStatus.ACTIVE,
                    )
                )
            ).scalars())

    async def test_legacy_body_id_joins_the_table_session(self):
        started = await self.engine.sessions.start_session("T5")
        await self.engine.carts.add(started.session_id, self.menu["burger"].id)
        legacy = ResolvedSession(
            session_id="test-session-1700000000000",
            format=SessionFormat.LEGACY,
            source=RequestShape.BODY,
            table_number="T5",
        )

        mutation = await self.engine.carts.add(legacy, self.menu["burger"].id)

        self.assertEqual(mutation.session_id, started.session_id)
        self.assertEqual([line.quantity for line in mutation.cart.items], [2])
        self.assertEqual(await self.active_sessions("T5"), [started.session_id])

    async def test_new_current_id_joins_the_table_session(self):
        started = await self.engine.sessions.start_session("T5")

        mutation = await self.engine.carts.add(CURRENT_ID, self.menu["burger"].id)

        self.assertEqual(mutation.session_id, started.session_id)
        self.assertEqual(mutation.migrated_from, CURRENT_ID)
        self.assertEqual(await self.active_sessions("T5"), [started.session_id])

    async def test_concurrent_first_adds_open_one_session(self):
        ids = [generate_session_id("T6"), generate_session_id("T6")]

        first, second = await asyncio.gather(*[
            self.engine.carts.add(session_id, self.menu["burger"].id) for session_id in ids
        ])

        self.assertEqual(first.session_id, second.session_id)
        self.assertEqual(await self.active_sessions("T6"), [first.session_id])
        self.assertEqual(second.cart.total_quantity, 2)

    async def test_idle_session_is_retired_when_the_table_starts_again(self):
        idle = await self.engine.sessions.start_session("T5")
        await self.engine.carts.add(idle.session_id, self.menu["burger"].id)
        async with transaction(self.engine.session_maker, 5) as db:
            row = await db.get(CustomerSession, idle.session_id)
            row.last_activity = utcnow() - timedelta(minutes=self.settings.session_inactivity_minutes + 1)

        fresh = await self.engine.sessions.start_session("T5")

        self.assertNotEqual(fresh.session_id, idle.session_id)
        self.assertEqual(await self.active_sessions("T5"), [fresh.session_id])
        self.assertEqual((await self.engine.carts.get(idle.session_id)).items, [])


class TestSessionMaintenance(EngineTestCase):
    """Test cases for expiry and table reset"""

    async def test_expire_inactive_drops_carts_and_cache(self):
        mutation = await self.engine.carts.add(
            (await self.engine.sessions.start_session("T2")).session_id,
            self.menu["burger"].id,
        )
        key = self.engine.cache.cart_key(mutation.session_id)
        self.assertIn(key, self.backend)

        expired = await self.engine.sessions.expire_inactive(
            now=utcnow() + timedelta(minutes=self.settings.session_inactivity_minutes + 1)
        )

        self.assertEqual(expired, [mutation.session_id])
        self.assertNotIn(key, self.backend)
        async with transaction(self.engine.session_maker, 5) as db:
            row = await db.get(CustomerSession, mutation.session_id)
            self.assertEqual(row.status, SessionStatus.EXPIRED)
        with self.assertRaises(SessionExpired):
            await self.engine.carts.add(mutation.session_id, self.menu["burger"].id)

    async def test_expire_inactive_keeps_recent_sessions(self):
        await self.engine.sessions.start_session("T2")

        self.assertEqual(await self.engine.sessions.expire_inactive(), [])

    async def test_reset_table(self):
        started = await self.engine.sessions.start_session("T3")
        await self.engine.carts.add(started.session_id, self.menu["burger"].id)
        await self.engine.sessions.start_session("T4")

        reset = await self.engine.sessions.reset_table("T3")

        self.assertEqual(reset, [started.session_id])
        fresh = await self.engine.sessions.start_session("T3")
        self.assertNotEqual(fresh.session_id, started.session_id)
        self.assertTrue(fresh.is_new)

    async def test_late_snapshot_write_is_evicted_after_settling(self):
        started = await self.engine.sessions.start_session("T3")
        mutation = await self.engine.carts.add(started.session_id, self.menu["burger"].id)
        key = self.engine.cache.cart_key(started.session_id)
        snapshot = mutation.cart.model_dump(mode="json")

        async def write_from_another_process():
            await asyncio.sleep(0.05)
            await self.engine.cache.write(key, snapshot)

        await asyncio.gather(
            self.engine.sessions.reset_table("T3", settle_seconds=0.2),
            write_from_another_process(),
        )

        self.assertNotIn(key, self.backend)
        self.assertEqual((await self.engine.carts.get(started.session_id)).items, [])


if __name__ == '__main__':
    unittest.main()
