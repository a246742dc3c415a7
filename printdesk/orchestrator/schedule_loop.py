"""Interval-driven scheduling loop with a cron-timed retention sweep."""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

import structlog
from croniter import croniter

from printdesk.orchestrator.coordinator import ExecutionCoordinator
from printdesk.orchestrator.jobs import utcnow
from printdesk.orchestrator.service import PrintQueueService

LOGGER = structlog.get_logger(__name__)


def next_cleanup_at(expression: str, now: datetime) -> datetime:
    return croniter(expression, now).get_next(datetime)


async def run_schedule_loop(
    coordinator: ExecutionCoordinator,
    *,
    service: Optional[PrintQueueService] = None,
    interval_seconds: float = 5.0,
    cleanup_cron: Optional[str] = None,
    ticks: Optional[int] = None,
    stop: Optional[asyncio.Event] = None,
) -> int:
    """Tick on every interval or submission wake-up; return the ticks run.

    The loop ends after ``ticks`` iterations or once ``stop`` is set; setting
    ``stop`` should be paired with ``coordinator.wake()`` to cut the wait short.
    """
    next_cleanup = None
    if service is not None and cleanup_cron:
        next_cleanup = next_cleanup_at(cleanup_cron, utcnow())
        LOGGER.info("cleanup_scheduled", cron=cleanup_cron, next_run=next_cleanup.isoformat())
    tick = 0
    while (ticks is None or tick < ticks) and not (stop is not None and stop.is_set()):
        result = await coordinator.tick()
        tick += 1
        if result.batch_key:
            LOGGER.info(
                "tick_finished",
                batch_key=result.batch_key,
                completed=len(result.completed),
                failed=len(result.failed),
                cancelled=len(result.cancelled),
            )
        if next_cleanup is not None and utcnow() >= next_cleanup:
            try:
                await service.cleanup()
            except Exception:  # noqa: BLE001 - a failed sweep is retried at the next fire time
                LOGGER.exception("cleanup_failed")
            next_cleanup = next_cleanup_at(cleanup_cron, utcnow())
        if ticks is None or tick < ticks:
            await coordinator.wait_for_wake(interval_seconds)
    return tick
