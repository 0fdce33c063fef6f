"""
Offer sweeper.

Background task that drives offer expiry. Each pass opens its own session
and runs AssignmentBroker.sweep; request handlers never wait on an offer.
"""

import asyncio
import logging
from typing import Optional

from backend.app.core.config import settings
from backend.app.db.session import AsyncSessionLocal
from backend.app.domain.pickups.broker import AssignmentBroker

logger = logging.getLogger(__name__)


async def sweep_once(session_factory=AsyncSessionLocal) -> dict:
    async with session_factory() as db:
        stats = await AssignmentBroker.sweep(db)
    if any(stats.values()):
        logger.info("Offer sweep: %s", stats)
    return stats


async def run_sweeper(interval_seconds: Optional[float] = None, session_factory=AsyncSessionLocal) -> None:
    """Sweep forever; a failed pass is logged and the loop carries on."""
    interval = interval_seconds or settings.offer_sweep_interval_seconds
    logger.info("Offer sweeper started (every %ss)", interval)
    while True:
        try:
            await sweep_once(session_factory)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Offer sweep failed")
        await asyncio.sleep(interval)


def start_sweeper() -> asyncio.Task:
    return asyncio.create_task(run_sweeper(), name="offer-sweeper")


async def stop_sweeper(task: Optional[asyncio.Task]) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    logger.info("Offer sweeper stopped")
