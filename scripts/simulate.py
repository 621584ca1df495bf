"""
Chaos Simulation Script

Fires concurrent cart traffic at a running server to check that the
session lock, the merge rule and the cache stay consistent under load.

Per simulated table:
    1. start a session (QR scan)
    2. send N identical add-to-cart requests at once
       → expect ONE merged line with quantity N
    3. place the order
       → expect an empty cart and the order readable by id

Plus a legacy client that sends its id in the body and must be migrated
to a current-format id.

Run from project root: python scripts/simulate.py --menu-item 1

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
import sys
import os
import time
import argparse
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_TABLES = 10
ADDS_PER_TABLE = 20


# =============================================================================
# TABLE SIMULATION
# =============================================================================

async def simulate_table(
    client: httpx.AsyncClient,
    table_number: str,
    menu_item_id: int,
    selections: list[int],
    adds: int,
) -> dict[str, Any]:
    """Run one table through scan → concurrent adds → place order."""
    start_time = time.time()
    result: dict[str, Any] = {"table": table_number, "success": False}

    try:
        response = await client.post(
            f"{API_BASE_URL}/api/customer/session",
            json={"tableNumber": table_number},
        )
        response.raise_for_status()
        session_id = response.json()["session_id"]
        headers = {"x-session-id": session_id}

        payload = {"menuItemId": menu_item_id, "quantity": 1, "selections": selections}
        responses = await asyncio.gather(*[
            client.post(f"{API_BASE_URL}/api/customer/cart", json=payload, headers=headers)
            for _ in range(adds)
        ])
        failures = [r for r in responses if r.status_code != 200]
        if failures:
            result["error"] = f"{len(failures)} adds failed: {failures[0].text[:80]}"
            return result

        cart = (await client.get(f"{API_BASE_URL}/api/customer/cart", headers=headers)).json()
        if len(cart["items"]) != 1 or cart["items"][0]["quantity"] != adds:
            result["error"] = f"merge broken: {[(i['id'], i['quantity']) for i in cart['items']]}"
            return result

        response = await client.post(f"{API_BASE_URL}/api/customer/orders", json={}, headers=headers)
        response.raise_for_status()
        order = response.json()["order"]

        cart = (await client.get(f"{API_BASE_URL}/api/customer/cart", headers=headers)).json()
        if cart["items"]:
            result["error"] = "cart not cleared after placement"
            return result

        fetched = await client.get(f"{API_BASE_URL}/api/admin/orders/{order['id']}")
        if fetched.status_code != 200 or fetched.json()["total"] != order["total"]:
            result["error"] = f"order #{order['id']} not readable"
            return result

        result.update(success=True, order_id=order["id"], total=Decimal(order["total"]))
    except httpx.HTTPError as e:
        result["error"] = str(e)[:100]
    finally:
        result["time"] = round(time.time() - start_time, 3)

    return result


async def simulate_legacy_client(client: httpx.AsyncClient, menu_item_id: int) -> dict[str, Any]:
    """An old client keeps its id in the body; the server must upgrade it."""
    legacy_id = f"test-session-{int(time.time() * 1000)}"
    response = await client.post(
        f"{API_BASE_URL}/api/cart",
        json={"sessionId": legacy_id, "menuItemId": menu_item_id, "quantity": 2},
    )
    if response.status_code != 200:
        return {"success": False, "error": response.text[:100]}

    new_id = response.headers.get("x-session-id")
    legacy_cart = (await client.get(f"{API_BASE_URL}/api/cart/{legacy_id}")).json()
    return {
        "success": bool(new_id) and new_id != legacy_id and not legacy_cart["items"],
        "legacy_id": legacy_id,
        "new_id": new_id,
    }


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(
    menu_item_id: int,
    selections: list[int],
    tables: int = TOTAL_TABLES,
    adds: int = ADDS_PER_TABLE,
) -> dict[str, Any]:
    print("=" * 70)
    print("🔥 CHAOS SIMULATION - CONCURRENT CART TRAFFIC")
    print("=" * 70)
    print(f"📋 Tables: {tables} × {adds} concurrent adds")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    async with httpx.AsyncClient(timeout=30.0) as client:
        health = await client.get(f"{API_BASE_URL}/health")
        print(f"\n🩺 Health: {health.json().get('status')}")

        results = await asyncio.gather(*[
            simulate_table(client, f"T{i + 1}", menu_item_id, selections, adds)
            for i in range(tables)
        ])
        legacy = await simulate_legacy_client(client, menu_item_id)

    total_time = round(time.time() - start_time, 2)
    successful = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Tables OK: {len(successful)}/{tables}")
    print(f"❌ Tables failed: {len(failed)}/{tables}")
    print(f"🔁 Legacy migration: {'✅' if legacy['success'] else '❌'} {legacy}")
    print(f"⏱️  Total Time: {total_time}s")

    if successful:
        revenue = sum((r["total"] for r in successful), Decimal("0.00"))
        print(f"   💰 Total Revenue: ${revenue}")

    if failed:
        print(f"\n⚠️  Failed Table Details (showing first 5):")
        for f in failed[:5]:
            print(f"   {f['table']}: {f.get('error', 'Unknown error')}")

    print("=" * 70)
    return {"successful": len(successful), "failed": len(failed), "legacy": legacy}


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Chaos Simulation Script")
    parser.add_argument("--menu-item", type=int, required=True, help="Menu item id to order")
    parser.add_argument("--selection", type=int, action="append", default=[], help="Customization option id")
    parser.add_argument("--tables", type=int, default=TOTAL_TABLES, help="Number of tables")
    parser.add_argument("--adds", type=int, default=ADDS_PER_TABLE, help="Concurrent adds per table")
    parser.add_argument("--url", default=API_BASE_URL, help="Server base URL")
    args = parser.parse_args()

    API_BASE_URL = args.url
    summary = asyncio.run(run_simulation(args.menu_item, args.selection, args.tables, args.adds))
    sys.exit(0 if not summary["failed"] and summary["legacy"]["success"] else 1)
