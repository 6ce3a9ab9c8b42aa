"""
APScheduler configuration for the weekly binary cycle.

The cycle job runs on BINARY_CYCLE_CRON (default: Monday 00:00). Each run
settles the ISO week that just ended, with the cutoff at the start of the
current week. Re-running a week resumes it without paying anyone twice.
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from app.config import settings
from app.db.session import async_session_factory
from app.services.commission import run_cycle

logger = logging.getLogger(__name__)

jobstores = {
    "default": MemoryJobStore()
}

executors = {
    "default": AsyncIOExecutor(),
}

job_defaults = {
    "coalesce": True,
    "max_instances": 1,
    "misfire_grace_time": 3600,
}

scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.SCHEDULER_TIMEZONE,
)


def current_cycle_window(now: datetime | None = None) -> tuple[str, datetime]:
    """Return (cycle_id, cutoff_at) for the week that ended before `now`.

    Cutoff is Monday 00:00 UTC of the week containing `now`; the cycle id is
    the ISO week of the day before, e.g. "2026-W41".
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)

    monday = now.date() - timedelta(days=now.weekday())
    cutoff = datetime(monday.year, monday.month, monday.day, tzinfo=timezone.utc)
    iso_year, iso_week, _ = (cutoff - timedelta(days=1)).isocalendar()
    return f"{iso_year}-W{iso_week:02d}", cutoff


async def run_scheduled_cycle():
    """Scheduler entry point: settle the week that just closed."""
    cycle_id, cutoff = current_cycle_window()
    try:
        report = await run_cycle(
            async_session_factory,
            cycle_id=cycle_id,
            percentage=settings.BINARY_PERCENTAGE,
            cap_per_cycle=settings.BINARY_CAP_PER_CYCLE,
            cutoff_at=cutoff,
        )
    except Exception:
        logger.exception("Binary cycle %s failed", cycle_id)
        return

    if report.failed_node_ids:
        logger.warning(
            "Scheduled cycle %s left %d nodes unsettled; re-run the cycle to retry them",
            cycle_id, len(report.failed_node_ids),
        )


def start_scheduler():
    """Start the background scheduler with the binary cycle job."""
    if not scheduler.running:
        scheduler.add_job(
            run_scheduled_cycle,
            CronTrigger.from_crontab(settings.BINARY_CYCLE_CRON, timezone=settings.SCHEDULER_TIMEZONE),
            id="binary_cycle",
            name="Weekly binary commission cycle",
            replace_existing=True,
        )
        scheduler.start()
        logger.info("Background job scheduler started")

        for job in scheduler.get_jobs():
            logger.info("Scheduled job: %s - Next run: %s", job.name, job.next_run_time)


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")
