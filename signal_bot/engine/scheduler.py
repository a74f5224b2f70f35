"""APScheduler integration for FastAPI.

Runs the reconciliation loops on fixed intervals: position sync and the
stop-loss / take-profit monitors.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from signal_bot.config import settings

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def run_position_sync():
    from signal_bot.engine.runtime import position_sync
    await position_sync.run()


async def run_stop_loss_monitor():
    from signal_bot.engine.runtime import stop_loss_monitor
    await stop_loss_monitor.run()


async def run_take_profit_monitor():
    from signal_bot.engine.runtime import take_profit_monitor
    await take_profit_monitor.run()


def _jobs() -> list[tuple[str, str, object, int]]:
    return [
        ("position_sync", "Position sync", run_position_sync, settings.sync_interval_seconds),
        ("stop_loss_monitor", "Stop-loss monitor", run_stop_loss_monitor, settings.monitor_interval_seconds),
        ("take_profit_monitor", "Take-profit monitor", run_take_profit_monitor, settings.monitor_interval_seconds),
    ]


def add_jobs():
    """Add (or replace) the periodic reconciliation jobs."""
    for job_id, name, func, seconds in _jobs():
        scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_id,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
        )
        logger.info(f"Scheduled {job_id} every {seconds}s")


def start_scheduler():
    """Start the scheduler with all reconciliation jobs."""
    add_jobs()
    scheduler.start()
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")


def stop_scheduler():
    """Shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
    logger.info("Scheduler stopped")


def get_scheduler_status() -> dict:
    """Return current scheduler state for the API."""
    jobs = scheduler.get_jobs()
    return {
        "running": scheduler.running,
        "job_count": len(jobs),
        "jobs": [
            {
                "id": j.id,
                "name": j.name,
                "next_run": str(j.next_run_time) if j.next_run_time else None,
                "trigger": str(j.trigger),
            }
            for j in jobs
        ],
    }
