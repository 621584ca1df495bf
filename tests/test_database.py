"""
Tests for the unit-of-work helper and its error translation
"""
import unittest

from sqlalchemy.exc import DBAPIError

from qrorder.core.exceptions import DurableWriteFailure, LineItemNotFound, TransientStorageFailure
from qrorder.database import transaction
from qrorder.models import CustomerSession, SessionFormat, SessionStatus

from tests.support import EngineTestCase


class TestTransaction(EngineTestCase):
    """Test cases for transaction()"""

    def session_row(self, session_id="session-T1-1750269477313-abcdef123"):
        return CustomerSession(
            id=session_id,
            table_number="T1",
            status=SessionStatus.ACTIVE,
            format=SessionFormat.CURRENT,
        )

    async def test_domain_errors_pass_through(self):
        with self.assertRaises(LineItemNotFound):
            async with transaction(self.engine.session_maker, 5) as db:
                db.add(self.session_row())
                raise LineItemNotFound("no such line")

        async with transaction(self.engine.session_maker, 5) as db:
            self.assertIsNone(await db.get(CustomerSession, "session-T1-1750269477313-abcdef123"))

    async def test_rejected_write(self):
        async with transaction(self.engine.session_maker, 5) as db:
            db.add(self.session_row())

        with self.assertRaises(DurableWriteFailure):
            async with transaction(self.engine.session_maker, 5) as db:
                db.add(self.session_row())

    async def test_driver_errors(self):
        with self.assertRaises(DurableWriteFailure):
            async with transaction(self.engine.session_maker, 5):
                raise DBAPIError("SELECT 1", {}, Exception("driver refused"))

        with self.assertRaises(TransientStorageFailure):
            async with transaction(self.engine.session_maker, 5):
                raise DBAPIError("SELECT 1", {}, Exception("socket closed"), connection_invalidated=True)

    async def test_unknown_line_surfaces_as_not_found(self):
        with self.assertRaises(LineItemNotFound):
            await self.engine.carts.remove("session-T1-1750269477313-abcdef123", 999)


if __name__ == '__main__':
    unittest.main()
