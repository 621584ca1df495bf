"""
Celery Tasks
Background housekeeping for sessions and the cache.

Each task builds its own OrderingEngine inside a fresh event loop and
closes it before returning; worker processes share nothing with the API
process except the database and Redis.
"""

import asyncio
import time
from datetime import datetime

from qrorder.celery_worker import celery_app
from qrorder.services.engine import OrderingEngine


def _settle_seconds(engine: OrderingEngine) -> float:
    # Longest an API request may spend writing a cart snapshot after its commit
    return engine.settings.session_lock_timeout_seconds + engine.settings.cache_timeout_seconds


async def _expire_inactive() -> list[str]:
    engine = OrderingEngine.build()
    try:
        return await engine.sessions.expire_inactive(settle_seconds=_settle_seconds(engine))
    finally:
        await engine.close()


async def _flush_cache() -> int:
    engine = OrderingEngine.build()
    try:
        return await engine.flush_cache()
    finally:
        await engine.close()


async def _reset_table(table_number: str) -> list[str]:
    engine = OrderingEngine.build()
    try:
        return await engine.sessions.reset_table(
            table_number, settle_seconds=_settle_seconds(engine)
        )
    finally:
        await engine.close()


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def expire_inactive_sessions(self) -> dict:
    """
    Expire sessions idle past the inactivity window.
    Scheduled by celery beat (see celery_worker.beat_schedule).

    Returns:
        dict: Number of expired sessions and timing
    """
    task_id = self.request.id
    print(f"🧹 Task {task_id}: Expiring inactive sessions")
    start_time = time.time()

    expired = asyncio.run(_expire_inactive())

    elapsed = round(time.time() - start_time, 3)
    print(f"✅ Task {task_id}: {len(expired)} sessions expired in {elapsed}s")
    return {
        'success': True,
        'expired': len(expired),
        'task_id': task_id,
        'processing_time_seconds': elapsed,
    }


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def reset_table(self, table_number: str) -> dict:
    """Expire every active session of a table."""
    reset = asyncio.run(_reset_table(table_number))
    print(f"✅ Task {self.request.id}: table {table_number} reset ({len(reset)} sessions)")
    return {
        'success': True,
        'table_number': table_number,
        'reset': len(reset),
        'timestamp': datetime.now().isoformat()
    }


@celery_app.task
def flush_cache() -> dict:
    """
    Flush every cache entry (recovery after a Redis incident).
    Carts and orders are re-read from the database on next access.
    """
    removed = asyncio.run(_flush_cache())
    return {
        'success': True,
        'removed': removed,
        'message': f'{removed} cache entries removed',
        'timestamp': datetime.now().isoformat()
    }
