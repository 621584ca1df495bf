"""
Menu Catalog

Read side of the menu for the pricing engine. Menu items are served
read-through from the cache; the catalog's own write path evicts the
cached snapshot in the same call, so re-pricing at order placement always
sees the current catalog state.
"""

import logging
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from qrorder.core.exceptions import MenuItemNotFound
from qrorder.database import transaction
from qrorder.models import CustomizationOption, MenuItem
from qrorder.schemas import MenuItemSnapshot
from qrorder.services.cache.coherence import CacheCoherenceLayer
from qrorder.services.pricing import to_money

logger = logging.getLogger(__name__)


class MenuCatalog:
    """Cached access to menu items and their customization options."""

    def __init__(
        self,
        session_maker: async_sessionmaker,
        cache: CacheCoherenceLayer,
        storage_timeout: float = 5.0,
    ):
        self.session_maker = session_maker
        self.cache = cache
        self.storage_timeout = storage_timeout

    async def get_menu_item(self, menu_item_id: int) -> MenuItemSnapshot:
        """
        Fetch a menu item snapshot.

        Raises:
            MenuItemNotFound: unknown id or item no longer available
        """
        async def load() -> Optional[dict]:
            async with transaction(self.session_maker, self.storage_timeout) as db:
                item = await db.get(MenuItem, menu_item_id)
                if item is None:
                    return None
                return MenuItemSnapshot.model_validate(item).model_dump(mode="json")

        data = await self.cache.read(self.cache.menu_key(menu_item_id), load)
        if data is None:
            raise MenuItemNotFound(f"Menu item #{menu_item_id} not found")

        snapshot = MenuItemSnapshot.model_validate(data)
        if not snapshot.is_available:
            raise MenuItemNotFound(f"Menu item #{menu_item_id} is not available")
        return snapshot

    async def create_menu_item(
        self,
        name: str,
        base_price,
        options: Iterable[tuple[str, str, object]] = (),
        description: Optional[str] = None,
    ) -> MenuItemSnapshot:
        """
        Add a menu item with (group, label, cost) options.

        Used by seeding and maintenance scripts; menu management screens
        own the full CRUD.
        """
        async with transaction(self.session_maker, self.storage_timeout) as db:
            item = MenuItem(
                name=name,
                description=description,
                base_price=to_money(base_price),
                is_available=True,
            )
            db.add(item)
            await db.flush()
            for group_name, label, cost in options:
                db.add(CustomizationOption(
                    menu_item_id=item.id,
                    group_name=group_name,
                    label=label,
                    cost=to_money(cost),
                ))
            await db.flush()
            item_id = item.id

        logger.info(f"Menu item #{item_id} created: {name}")
        await self.cache.invalidate(self.cache.menu_key(item_id))
        return await self.get_menu_item(item_id)

    async def update_menu_item(
        self,
        menu_item_id: int,
        *,
        base_price=None,
        name: Optional[str] = None,
        is_available: Optional[bool] = None,
    ) -> None:
        """Change catalog fields and evict the cached snapshot."""
        async with transaction(self.session_maker, self.storage_timeout) as db:
            item = await db.get(MenuItem, menu_item_id)
            if item is None:
                raise MenuItemNotFound(f"Menu item #{menu_item_id} not found")
            if base_price is not None:
                item.base_price = to_money(base_price)
            if name is not None:
                item.name = name
            if is_available is not None:
                item.is_available = is_available

        await self.cache.invalidate(self.cache.menu_key(menu_item_id))
        logger.info(f"Menu item #{menu_item_id} updated")

    async def update_option_cost(self, option_id: int, cost) -> None:
        async with transaction(self.session_maker, self.storage_timeout) as db:
            option = await db.get(CustomizationOption, option_id)
            if option is None:
                raise MenuItemNotFound(f"Customization option #{option_id} not found")
            option.cost = to_money(cost)
            menu_item_id = option.menu_item_id

        await self.cache.invalidate(self.cache.menu_key(menu_item_id))
