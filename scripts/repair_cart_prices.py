"""
Cart Price Repair Script

Recomputes every open cart line against the current catalog and reports
lines whose snapshotted price drifted (e.g. after a manual SQL price
change that bypassed the catalog's cache invalidation). With --apply the
drifted lines are re-priced in place. The cache is flushed at the end so
no stale cart snapshot survives.

Run from project root: python scripts/repair_cart_prices.py [--apply]

Author: Khalil Bannouri
Version: 1.0.0
"""

import argparse
import asyncio
import os
import sys
from datetime import datetime

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from qrorder.core.config import setup_logging
from qrorder.core.exceptions import MenuItemNotFound, OrderingError
from qrorder.database import transaction
from qrorder.models import CartLineItem
from qrorder.services.engine import OrderingEngine
from qrorder.services.pricing import price, to_money

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


async def repair(apply: bool = False, engine: OrderingEngine = None) -> dict:
    """
    Scan all cart lines and optionally fix drifted prices.

    Args:
        apply: Write corrected prices instead of only reporting
        engine: Existing engine (a new one is built and closed otherwise)

    Returns:
        dict: scanned / drifted / repaired / orphaned counts
    """
    owns_engine = engine is None
    engine = engine or OrderingEngine.build()

    print("=" * 60)
    print("🔍 CART PRICE REPAIR REPORT")
    print("=" * 60)
    print(f"⏰ Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"🔧 Mode: {'apply' if apply else 'report only'}")
    print("=" * 60)

    stats = {"scanned": 0, "drifted": 0, "repaired": 0, "orphaned": 0}

    try:
        # Catalog reads must not come from a cache that may itself be stale
        await engine.flush_cache()

        async with transaction(engine.session_maker, engine.storage_timeout) as db:
            lines = (
                await db.execute(select(CartLineItem).order_by(CartLineItem.session_id, CartLineItem.position))
            ).scalars().all()

            for line in lines:
                stats["scanned"] += 1
                try:
                    menu_item = await engine.catalog.get_menu_item(line.menu_item_id)
                    quote = price(menu_item, line.selections or [], line.quantity)
                except MenuItemNotFound:
                    stats["orphaned"] += 1
                    print(f"   ⚠️ Line #{line.id} ({line.session_id}): menu item #{line.menu_item_id} gone")
                    continue
                except OrderingError as e:
                    stats["orphaned"] += 1
                    print(f"   ⚠️ Line #{line.id} ({line.session_id}): {e.message}")
                    continue

                if quote.unit_price == to_money(line.unit_price):
                    continue

                stats["drifted"] += 1
                print(
                    f"   💱 Line #{line.id} ({line.session_id}) {line.item_name}: "
                    f"{to_money(line.unit_price)} → {quote.unit_price}"
                )
                if apply:
                    line.unit_price = quote.unit_price
                    line.customization_cost = quote.customization_cost
                    line.item_name = menu_item.name
                    stats["repaired"] += 1

        removed = await engine.flush_cache()
        print(f"\n🧹 Cache flushed ({removed} entries)")
    finally:
        if owns_engine:
            await engine.close()

    print(f"\n📊 STATISTICS:")
    print(f"   Lines scanned: {stats['scanned']}")
    print(f"   Drifted: {stats['drifted']}")
    print(f"   Repaired: {stats['repaired']}")
    print(f"   Orphaned: {stats['orphaned']}")
    print("\n" + "=" * 60)
    print("✅ REPAIR COMPLETE" if apply or not stats["drifted"] else "⚠️ Run again with --apply to fix")
    print("=" * 60)
    return stats


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Cart price repair")
    parser.add_argument("--apply", action="store_true", help="Write corrected prices")
    args = parser.parse_args()

    setup_logging()
    asyncio.run(repair(apply=args.apply))
