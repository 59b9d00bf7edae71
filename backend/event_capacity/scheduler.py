"""Background scheduler for the hold expiry sweeper.

Uses APScheduler to run the sweep on a fixed interval. The sweep is
idempotent and time-based, so the exact cadence is a deployment choice and
several app instances may run it at once.
"""
import logging
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from event_capacity.config import settings
from event_capacity.database import SessionLocal
from event_capacity.services.hold_sweeper import run_sweep
from event_capacity.services.notifier import get_notifier

logger = logging.getLogger(__name__)

scheduler: Optional[BackgroundScheduler] = None


def sweep_holds_job() -> None:
    """Scheduled entry point: one session per tick."""
    db = SessionLocal()
    try:
        result = run_sweep(db, get_notifier())
        if result["expired"] or result["warned"]:
            logger.info("Hold sweep: %d expired, %d warned", result["expired"], result["warned"])
    finally:
        db.close()


def _on_job_error(event):
    logger.error(
        "Scheduled job FAILED: job_id=%s error=%s",
        event.job_id, event.exception,
        exc_info=(type(event.exception), event.exception, None) if event.exception else None,
    )


def _on_job_missed(event):
    logger.warning(
        "Scheduled job MISSED: job_id=%s scheduled_run_time=%s",
        event.job_id, event.scheduled_run_time,
    )


def init_scheduler() -> BackgroundScheduler:
    """Start the sweeper. Called once on application startup."""
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already initialized")
        return scheduler

    scheduler = BackgroundScheduler(
        timezone="UTC",
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": settings.SWEEP_INTERVAL_SECONDS,
        },
    )
    scheduler.add_job(
        func=sweep_holds_job,
        trigger=IntervalTrigger(seconds=settings.SWEEP_INTERVAL_SECONDS),
        id="expire_stale_holds",
        name="Expire Stale Join Request Holds",
        replace_existing=True,
    )
    scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)
    scheduler.add_listener(_on_job_missed, EVENT_JOB_MISSED)
    scheduler.start()
    logger.info("Scheduled job: expire_stale_holds (every %d seconds)", settings.SWEEP_INTERVAL_SECONDS)
    return scheduler


def shutdown_scheduler() -> None:
    global scheduler
    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Scheduler stopped")
