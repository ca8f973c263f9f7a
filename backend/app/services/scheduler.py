"""Background task scheduler: daily overdue sweep.

Uses FastAPI's lifespan context to start/stop an asyncio background loop.
No external dependencies (no Celery, no APScheduler), just an
asyncio.sleep loop that fires once per day at the configured hour.

Configuration:
    OVERDUE_SWEEP_HOUR=2          (run at 02:00 UTC daily, via .env)
    ENABLE_OVERDUE_SCHEDULER=false  (disable, e.g. when a cron job runs
                                     ``python -m app.cli mark-overdue``)

Multiple workers each run their own loop; the sweep is an idempotent
UPDATE, so duplicate runs only cost a query.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from fastapi import FastAPI

from app.config import settings
from app.deps import get_coordinator
from app.services.reconciliation import LedgerCoordinator
from app.utils.clock import utcnow

logger = logging.getLogger("propdesk.scheduler")


def seconds_until(target_hour: int, now: datetime) -> float:
    """Seconds from ``now`` to the next ``target_hour``:00."""
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


async def run_overdue_sweep(coordinator: LedgerCoordinator) -> int:
    logger.info("Starting overdue sweep")
    count = await coordinator.mark_overdue()
    logger.info("Overdue sweep complete: %d document(s) updated", count)
    return count


async def _scheduler_loop(coordinator: LedgerCoordinator) -> None:
    """Sleep loop that fires the overdue sweep once per day."""
    while True:
        wait_seconds = seconds_until(settings.overdue_sweep_hour, utcnow())
        logger.info("Next overdue sweep in %.0f seconds", wait_seconds)

        await asyncio.sleep(wait_seconds)

        try:
            await run_overdue_sweep(coordinator)
        except Exception:
            logger.exception("Unhandled error in overdue sweep")

        # Small buffer to avoid running twice in the same minute
        await asyncio.sleep(60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the sweep on startup; cancel it and drain renders on shutdown."""
    coordinator = app.dependency_overrides.get(get_coordinator, get_coordinator)()

    task = None
    if settings.enable_overdue_scheduler:
        task = asyncio.create_task(_scheduler_loop(coordinator))
        logger.info("Overdue scheduler started")
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Overdue scheduler stopped")
        await coordinator.drain()
