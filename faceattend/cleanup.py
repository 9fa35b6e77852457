"""
Retention cleanup for guest identities.
Runs daily at a configured wall-clock time through APScheduler; a failed run is
logged and retried on the next day.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from . import config
from .repository import Repository

logger = logging.getLogger(__name__)


def run_cleanup(repository: Repository, now: datetime) -> int:
    """
    Delete every guest whose ``expires_at`` has passed, together with their
    attendance history and tokens, then purge expired tokens.

    Returns:
        Number of guests deleted
    """
    deleted = 0
    for guest in repository.expired_guests(now):
        if repository.delete_guest(guest.id):
            deleted += 1
    tokens = repository.delete_expired_tokens(now)
    logger.info("Cleanup completed: %d expired guest records removed, %d expired tokens purged", deleted, tokens)
    return deleted


class CleanupScheduler:
    """Runs ``job`` once a day at ``hour:minute`` local time on an APScheduler background thread."""

    JOB_ID = "guest-cleanup"

    def __init__(self, job: Callable[[], int], hour: int = config.CLEANUP_HOUR, minute: int = config.CLEANUP_MINUTE,
                 run_immediately: bool = False):
        self.job = job
        self.hour = hour
        self.minute = minute
        self.run_immediately = run_immediately
        self.runs = 0
        self.failures = 0
        self.last_result: Optional[int] = None
        self._scheduler: Optional[BackgroundScheduler] = None

    def run_once(self) -> Optional[int]:
        """Run the job, swallowing and logging any failure."""
        self.runs += 1
        try:
            logger.info("Starting scheduled cleanup of expired guest records")
            self.last_result = self.job()
            return self.last_result
        except Exception:
            self.failures += 1
            logger.exception("Cleanup job failed; will retry on the next run")
            return None

    def start(self):
        if self.running:
            return
        self._scheduler = BackgroundScheduler(daemon=True)
        self._scheduler.add_job(self.run_once, "cron", hour=self.hour, minute=self.minute,
                                id=self.JOB_ID, max_instances=1, coalesce=True)
        if self.run_immediately:
            self._scheduler.add_job(self.run_once, id=f"{self.JOB_ID}-startup")
        self._scheduler.start()
        logger.info("Cleanup job scheduled: daily at %02d:%02d", self.hour, self.minute)

    def stop(self, wait: bool = True):
        if self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=wait)
            self._scheduler = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def next_run_time(self) -> Optional[datetime]:
        if not self.running:
            return None
        job = self._scheduler.get_job(self.JOB_ID)
        return job.next_run_time if job else None
