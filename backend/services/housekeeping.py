"""Housekeeping Service for the convocation RFID tracker.

Background task that periodically prunes reader debounce state and idle
per-EPC locks so long event days do not grow them without bound.
"""

import asyncio
import logging
from typing import Optional

from config import get_config
from services.tracker import get_tracker

logger = logging.getLogger(__name__)

# Task reference for housekeeping
_housekeeping_task: Optional[asyncio.Task[None]] = None


def run_housekeeping_once() -> int:
    """Prune reader and lock state once.

    Returns:
        Number of entries removed.
    """
    tracker = get_tracker()
    removed = tracker.reader.cleanup_old_entries(max_age_seconds=3600)
    removed += tracker.engine.locks.prune()
    if removed > 0:
        logger.info(f"Housekeeping: removed {removed} stale entries")
    return removed


async def _run_housekeeping_loop() -> None:
    """Run the housekeeping loop.

    Config is re-read on each iteration to support hot-reload.
    """
    logger.info("Housekeeping service started")

    while True:
        try:
            interval = get_config().reader.housekeeping_interval_seconds
            run_housekeeping_once()
            await asyncio.sleep(interval)

        except asyncio.CancelledError:
            logger.info("Housekeeping service stopping")
            break
        except Exception as e:
            logger.error(f"Error in housekeeping: {e}", exc_info=True)
            # Continue running despite errors
            await asyncio.sleep(10)


def start_housekeeping_service() -> asyncio.Task[None]:
    """Start the housekeeping background service.

    Returns:
        Asyncio task running the housekeeping loop.
    """
    global _housekeeping_task

    if _housekeeping_task is not None and not _housekeeping_task.done():
        logger.warning("Housekeeping service already running")
        return _housekeeping_task

    _housekeeping_task = asyncio.create_task(_run_housekeeping_loop())
    return _housekeeping_task


async def stop_housekeeping_service() -> None:
    """Stop the housekeeping background service."""
    global _housekeeping_task

    if _housekeeping_task is not None and not _housekeeping_task.done():
        _housekeeping_task.cancel()
        try:
            await _housekeeping_task
        except asyncio.CancelledError:
            pass
        logger.info("Housekeeping service stopped")

    _housekeeping_task = None
