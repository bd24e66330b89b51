"""
Cron Scheduler Service using APScheduler.
Manages the cron jobs behind schedule-triggered workflows.
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.jobstores.base import JobLookupError
from typing import Callable, Dict, List, Optional

from core.logging import get_logger

logger = get_logger(__name__)


def build_cron_trigger(cron_expression: str, timezone: str = "UTC") -> CronTrigger:
    """Parse a 5-field (minute hour day month weekday) or 6-field
    (second minute hour day month weekday) cron expression.

    Raises:
        ValueError: if the expression has too many fields or a field is invalid
    """
    parts = cron_expression.split()
    if not parts or len(parts) > 6:
        raise ValueError(f"Invalid cron expression: {cron_expression!r}")

    if len(parts) == 6:
        second, minute, hour, day, month, day_of_week = parts
    else:
        # Missing trailing fields default to '*', second defaults to 0
        parts = parts + ['*'] * (5 - len(parts))
        second = '0'
        minute, hour, day, month, day_of_week = parts

    return CronTrigger(
        second=second,
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=day_of_week,
        timezone=timezone,
    )


class CronScheduler:
    """Thin wrapper over an AsyncIOScheduler owned by the application."""

    def __init__(self, timezone: str = "UTC", scheduler: Optional[AsyncIOScheduler] = None):
        self.timezone = timezone
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone)

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        """Start the scheduler if not already running."""
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("[Scheduler] Started", timezone=self.timezone)

    def shutdown(self) -> None:
        """Shutdown the scheduler gracefully."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("[Scheduler] Shutdown")

    def register_cron_job(
        self,
        job_id: str,
        cron_expression: str,
        callback: Callable,
        timezone: Optional[str] = None,
        **kwargs
    ) -> str:
        """
        Register a cron job with the scheduler.

        Args:
            job_id: Unique identifier for the job
            cron_expression: 5- or 6-field cron expression
            callback: Async function to call when job fires
            timezone: Timezone for schedule (default: scheduler timezone)
            **kwargs: Additional arguments passed to the callback

        Returns:
            The job_id
        """
        trigger = build_cron_trigger(cron_expression, timezone or self.timezone)
        self._scheduler.add_job(
            callback,
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            kwargs=kwargs
        )
        logger.info("[Scheduler] Registered cron job", job_id=job_id, expression=cron_expression)
        return job_id

    def remove_cron_job(self, job_id: str) -> bool:
        """Remove a cron job. Returns False if it was not registered."""
        try:
            self._scheduler.remove_job(job_id)
            logger.info("[Scheduler] Removed cron job", job_id=job_id)
            return True
        except JobLookupError:
            logger.warning("[Scheduler] Job not found", job_id=job_id)
            return False

    @staticmethod
    def _job_info(job) -> Dict:
        next_run = getattr(job, "next_run_time", None)
        return {
            "id": job.id,
            "next_run_time": next_run.isoformat() if next_run else None,
            "trigger": str(job.trigger)
        }

    def get_job_info(self, job_id: str) -> Optional[Dict]:
        job = self._scheduler.get_job(job_id)
        return self._job_info(job) if job else None

    def get_all_jobs(self) -> List[Dict]:
        return [self._job_info(job) for job in self._scheduler.get_jobs()]
