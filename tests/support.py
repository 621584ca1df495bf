"""
Shared fixtures for the test-suite: a throwaway SQLite database, the
in-memory cache backend and a small seeded menu.
"""
import os
import tempfile
import unittest
from decimal import Decimal

from qrorder.core.config import Settings
from qrorder.core.exceptions import CacheUnavailable
from qrorder.schemas import MenuItemSnapshot
from qrorder.services.cache.memory import MemoryCacheBackend
from qrorder.services.engine import OrderingEngine


def make_settings(db_path: str, **overrides) -> Settings:
    values = dict(
        env_mode="development",
        database_url=f"sqlite+aiosqlite:///{db_path}",
        cache_backend="memory",
        service_fee=Decimal("0.00"),
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


async def seed_menu(engine: OrderingEngine) -> dict[str, MenuItemSnapshot]:
    """Burger 280 (+cheese 50, +bacon 90), Carbonara 150 (+parmesan 90), Espresso 2.35."""
    catalog = engine.catalog
    return {
        "burger": await catalog.create_menu_item(
            "Classic Burger",
            Decimal("280.00"),
            options=[("extras", "Cheese", Decimal("50.00")), ("extras", "Bacon", Decimal("90.00"))],
        ),
        "carbonara": await catalog.create_menu_item(
            "Carbonara",
            Decimal("150.00"),
            options=[("extras", "Extra parmesan", Decimal("90.00"))],
        ),
        "espresso": await catalog.create_menu_item(
            "Espresso",
            Decimal("2.35"),
            options=[
                ("milk", "Oat milk", Decimal("0.45")),
                ("size", "Small cup discount", Decimal("-0.10")),
            ],
        ),
    }


def option_id(item: MenuItemSnapshot, label: str) -> int:
    return next(option.id for option in item.options if option.label == label)


class FlakyCacheBackend(MemoryCacheBackend):
    """Memory backend whose operations can be switched to fail."""

    def __init__(self):
        super().__init__()
        self.fail_get = False
        self.fail_set = False
        self.fail_delete = False

    async def get(self, key):
        if self.fail_get:
            raise CacheUnavailable("get disabled")
        return await super().get(key)

    async def set(self, key, value, ttl_seconds):
        if self.fail_set:
            raise CacheUnavailable("set disabled")
        return await super().set(key, value, ttl_seconds)

    async def delete(self, key):
        if self.fail_delete:
            raise CacheUnavailable("delete disabled")
        return await super().delete(key)


class EngineTestCase(unittest.IsolatedAsyncioTestCase):
    """Builds a full OrderingEngine on a temporary database per test."""

    cache_backend_class = MemoryCacheBackend
    settings_overrides: dict = {}

    async def asyncSetUp(self):
        """Set up test database"""
        self.test_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
        self.test_db.close()
        self.settings = make_settings(self.test_db.name, **self.settings_overrides)
        self.backend = self.cache_backend_class()
        self.engine = OrderingEngine.build(self.settings, cache_backend=self.backend)
        await self.engine.start()
        self.menu = await seed_menu(self.engine)

    async def asyncTearDown(self):
        """Clean up test database"""
        await self.engine.close()
        os.unlink(self.test_db.name)
