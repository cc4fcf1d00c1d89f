"""Built-in scheduler — cron fan-out and interval sweep triggers."""

from __future__ import annotations
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger("concord.scheduler")

_scheduler: AsyncIOScheduler | None = None


def get_scheduler() -> AsyncIOScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler()
    return _scheduler


def start_scheduler():
    scheduler = get_scheduler()
    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started")


def stop_scheduler():
    global _scheduler
    scheduler = get_scheduler()
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    _scheduler = None


def parse_cron(cron_expression: str, timezone: str = "UTC") -> CronTrigger:
    """Build a trigger from a 5-field expression (min hour day month dow)."""
    parts = cron_expression.strip().split()
    if len(parts) != 5:
        raise ValueError(f"Invalid cron expression: {cron_expression} (need 5 fields)")
    return CronTrigger(
        minute=parts[0],
        hour=parts[1],
        day=parts[2],
        month=parts[3],
        day_of_week=parts[4],
        timezone=timezone,
    )


def add_cron_job(
    job_id: str,
    func,
    cron_expression: str,
    kwargs: dict | None = None,
    timezone: str = "UTC",
):
    """Add a cron-based scheduled job, replacing any job with the same id."""
    trigger = parse_cron(cron_expression, timezone)
    get_scheduler().add_job(
        func,
        trigger=trigger,
        id=job_id,
        kwargs=kwargs or {},
        replace_existing=True,
        misfire_grace_time=60,
        max_instances=1,
        coalesce=True,
    )
    logger.info(f"Scheduled job '{job_id}' with cron: {cron_expression}")


def add_interval_job(
    job_id: str,
    func,
    seconds: int,
    kwargs: dict | None = None,
):
    """Add an interval-based scheduled job."""
    if seconds <= 0:
        raise ValueError(f"Interval must be positive, got {seconds}")
    get_scheduler().add_job(
        func,
        trigger=IntervalTrigger(seconds=seconds),
        id=job_id,
        kwargs=kwargs or {},
        replace_existing=True,
        misfire_grace_time=60,
        max_instances=1,
        coalesce=True,
    )
    logger.info(f"Scheduled job '{job_id}' every {seconds}s")


def list_jobs() -> list[dict]:
    jobs = []
    for job in get_scheduler().get_jobs():
        next_run = getattr(job, "next_run_time", None)
        jobs.append({
            "id": job.id,
            "next_run": next_run.isoformat() if next_run else None,
            "trigger": str(job.trigger),
        })
    return jobs
