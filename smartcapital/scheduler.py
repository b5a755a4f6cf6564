"""
Background scheduling for the alert check and the daily digest.
"""

import logging
from typing import Callable

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MAX_INSTANCES
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler

from smartcapital.config import ScheduleConfig

logger = logging.getLogger(__name__)

ALERT_JOB_ID = "price_alert_check"
DIGEST_JOB_ID = "daily_digest"


def guarded(name: str, func: Callable[[], object]) -> Callable[[], None]:
    """
    Wrap a job so an exception is logged instead of escaping the run.

    The job keeps its schedule either way; this keeps every failure in the
    application log with its traceback.
    """

    def run() -> None:
        try:
            result = func()
            logger.info(f"Job {name} finished: {result}")
        except Exception:
            logger.exception(f"Job {name} failed")

    run.__name__ = name
    return run


def job_executed_listener(event):
    """Log successful job executions."""
    logger.debug(f"Job {event.job_id} executed at {event.scheduled_run_time}")


def job_error_listener(event):
    """Log job execution errors."""
    logger.error(f"Job {event.job_id} crashed: {event.exception}")


def job_skipped_listener(event):
    """Log firings dropped because the previous run is still going."""
    logger.warning(f"Job {event.job_id} still running, skipped run at {event.scheduled_run_time}")


class Scheduler:
    """Runs the alert tick and the daily digest on independent cadences."""

    def __init__(
        self,
        config: ScheduleConfig,
        alert_job: Callable[[], object],
        digest_job: Callable[[], object],
        max_workers: int = 2,
    ):
        self.config = config
        self.alert_job = alert_job
        self.digest_job = digest_job
        self.scheduler = self._create_scheduler(max_workers)

    def _create_scheduler(self, max_workers: int) -> BackgroundScheduler:
        executors = {"default": ThreadPoolExecutor(max_workers=max_workers)}

        # One run per job at a time; missed firings collapse into one
        job_defaults = {
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 60,
        }

        scheduler = BackgroundScheduler(
            executors=executors,
            job_defaults=job_defaults,
            timezone=self.config.timezone,
        )
        scheduler.add_listener(job_executed_listener, EVENT_JOB_EXECUTED)
        scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        scheduler.add_listener(job_skipped_listener, EVENT_JOB_MAX_INSTANCES)
        return scheduler

    def add_jobs(self) -> None:
        """Register both jobs, replacing any earlier registration."""
        self.scheduler.add_job(
            func=guarded(ALERT_JOB_ID, self.alert_job),
            trigger="interval",
            minutes=self.config.alert_check_minutes,
            id=ALERT_JOB_ID,
            name="Price Alert Check",
            replace_existing=True,
        )
        self.scheduler.add_job(
            func=guarded(DIGEST_JOB_ID, self.digest_job),
            trigger="cron",
            hour=self.config.digest_hour,
            minute=self.config.digest_minute,
            id=DIGEST_JOB_ID,
            name="Daily Digest",
            replace_existing=True,
        )
        logger.info(
            f"Scheduled alert check every {self.config.alert_check_minutes} minutes "
            f"and digest daily at {self.config.digest_hour:02d}:{self.config.digest_minute:02d} "
            f"({self.config.timezone})"
        )

    def start(self) -> None:
        """Register jobs and start the background thread."""
        if self.scheduler.running:
            return
        self.add_jobs()
        self.scheduler.start()
        logger.info("Scheduler started")

    def stop(self) -> None:
        """Stop scheduling and wait for in-flight runs to finish."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            logger.info("Scheduler shutdown complete")
