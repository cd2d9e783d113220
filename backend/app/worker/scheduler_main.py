"""Dedicated APScheduler worker that keeps goal progress in step with the calendar.

Run with ``python -m app.worker.scheduler_main``. Once a day every stored goal is
advanced to its calendar day and checked for a missed day, so goals enter the
pending-adjustment state even when nobody opens them.
"""
from __future__ import annotations

import logging
import signal
import threading

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED, JobExecutionEvent
from apscheduler.schedulers.background import BackgroundScheduler

from app.core.config import settings
from app.core.logging import configure_logging
from app.db.session import SessionLocal
from app.observability.metrics import timed
from app.services.job_runner import run_progress_sync_for_all_goals

logger = logging.getLogger(__name__)

PROGRESS_SYNC_JOB_ID = "progress_sync_job"


def build_scheduler() -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone=settings.scheduler_timezone)
    scheduler.add_listener(_on_job_event, EVENT_JOB_ERROR | EVENT_JOB_MISSED)
    register_jobs(scheduler)
    return scheduler


def register_jobs(scheduler: BackgroundScheduler) -> None:
    scheduler.add_job(
        run_progress_sync_job,
        trigger="cron",
        hour=settings.sync_job_hour,
        minute=settings.sync_job_minute,
        id=PROGRESS_SYNC_JOB_ID,
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    logger.info(
        "Registered daily progress sync at %02d:%02d %s",
        settings.sync_job_hour,
        settings.sync_job_minute,
        settings.scheduler_timezone,
    )


def run_progress_sync_job() -> None:
    session = SessionLocal()
    try:
        with timed("jobs.progress_sync"):
            result = run_progress_sync_for_all_goals(session)
    finally:
        session.close()
    logger.info(
        "Progress sync complete: goals=%s, advanced=%s, flagged=%s, failures=%s",
        result.goals_processed,
        result.days_advanced,
        result.missed_days_flagged,
        result.failures,
    )


def _on_job_event(event: JobExecutionEvent) -> None:
    if event.exception is not None:
        logger.error("Job %s raised: %s", event.job_id, event.exception, exc_info=event.exception)
    else:
        logger.warning("Job %s missed its run time (%s)", event.job_id, event.scheduled_run_time)


def main() -> None:
    configure_logging(log_level=settings.log_level)
    if not settings.scheduler_enabled:
        logger.warning("SCHEDULER_ENABLED is false; worker exits without scheduling anything")
        return

    scheduler = build_scheduler()
    scheduler.start()
    logger.info("Scheduler worker started")
    if settings.jobs_run_on_startup:
        run_progress_sync_job()

    stopped = threading.Event()

    def shutdown(signum, frame):  # pragma: no cover - signal handler
        logger.info("Scheduler worker stopping (signal=%s)", signum)
        scheduler.shutdown(wait=False)
        stopped.set()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)
    stopped.wait()


if __name__ == "__main__":  # pragma: no cover - manual launch
    main()
