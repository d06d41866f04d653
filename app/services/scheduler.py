"""
app/services/scheduler.py
APScheduler-based background job scheduler.

Two recurring jobs on the application's event loop:
  1. Position monitor: every POSITION_MONITOR_INTERVAL_SECONDS (default 10s)
  2. Team reconciliation: every TEAM_SYNC_INTERVAL_MINUTES (default 5m)

Each job runs at most one instance at a time; a tick that is still running
when the next one is due is coalesced, not stacked.

Uses lazy imports inside job functions to avoid circular imports.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from core.config import get_settings

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


async def _job_position_monitor() -> None:
    """Scheduled job: stop-loss / take-profit / expiry scan."""
    try:
        from app.services.position_monitor import run_position_monitor
        await run_position_monitor()
    except Exception as exc:
        logger.error("Position monitor failed: %s", exc)


async def _job_team_reconciliation() -> None:
    """Scheduled job: correct team totals that drifted from member sums."""
    try:
        from app.services.team_sync import run_team_reconciliation
        await run_team_reconciliation()
    except Exception as exc:
        logger.error("[TEAM_SYNC] Failed to sync team points: %s", exc)


def start_scheduler() -> None:
    """Initialize and start the APScheduler with all jobs."""
    global _scheduler

    if _scheduler is not None:
        logger.warning("Scheduler already running")
        return

    settings = get_settings()
    _scheduler = AsyncIOScheduler()

    # Job 1: Position monitor (risk triggers + expiry)
    _scheduler.add_job(
        _job_position_monitor,
        "interval",
        seconds=settings.POSITION_MONITOR_INTERVAL_SECONDS,
        id="position_monitor",
        name="Position Monitor",
        max_instances=1,
        coalesce=True,
    )

    # Job 2: Team aggregate reconciliation
    _scheduler.add_job(
        _job_team_reconciliation,
        "interval",
        minutes=settings.TEAM_SYNC_INTERVAL_MINUTES,
        id="team_reconciliation",
        name="Team Reconciliation",
        max_instances=1,
        coalesce=True,
    )

    _scheduler.start()
    logger.info(
        "Scheduler started: monitor every %ds, team sync every %dm",
        settings.POSITION_MONITOR_INTERVAL_SECONDS,
        settings.TEAM_SYNC_INTERVAL_MINUTES,
    )


def stop_scheduler() -> None:
    """Shut down the scheduler gracefully."""
    global _scheduler

    if _scheduler is None:
        return

    _scheduler.shutdown(wait=False)
    _scheduler = None
    logger.info("Scheduler stopped")
