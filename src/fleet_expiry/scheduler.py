"""Cron trigger for expiration runs, built on APScheduler."""
from __future__ import annotations

from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .constants import SchedulerDefaults
from .exceptions import RunInProgressError
from .logging import get_logger
from .models import ProcessRun
from .orchestrator import ExpirationOrchestrator

logger = get_logger(__name__)


class ExpirationScheduler:
    """Runs the expiration pipeline on a cron schedule, or on demand."""

    def __init__(
        self,
        orchestrator: ExpirationOrchestrator,
        cron_expression: str = SchedulerDefaults.CRON_EXPRESSION,
        timezone: str = SchedulerDefaults.TIMEZONE,
        job_id: str = SchedulerDefaults.JOB_ID,
    ):
        self._orchestrator = orchestrator
        self._cron_expression = cron_expression
        self._timezone = timezone
        self._job_id = job_id
        self._started = False

        job_defaults = {
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": SchedulerDefaults.MISFIRE_GRACE_SECONDS,
        }
        self._scheduler = AsyncIOScheduler(
            executors={"default": AsyncIOExecutor()},
            job_defaults=job_defaults,
            timezone=timezone,
        )

    @property
    def job_id(self) -> str:
        return self._job_id

    def schedule(self) -> None:
        """Register the cron job. Raises ValueError on a bad expression."""
        trigger = CronTrigger.from_crontab(self._cron_expression, timezone=self._timezone)
        self._scheduler.add_job(
            self._run_scheduled,
            trigger,
            id=self._job_id,
            name="Booking expiration",
            replace_existing=True,
        )
        logger.info(
            "Booking expiration scheduler initialized",
            cron_expression=self._cron_expression,
            timezone=self._timezone,
        )

    async def _run_scheduled(self) -> Optional[ProcessRun]:
        try:
            return await self._orchestrator.run(trigger="cron")
        except RunInProgressError as e:
            logger.warning(
                "Previous booking expiration run still in progress, skipping",
                lease_key=e.details.get("lease_key"),
            )
        except Exception as e:
            # Already logged by the run; keep the scheduler ticking
            logger.error("Scheduled booking expiration run failed", error=str(e))
        return None

    async def run_now(self) -> ProcessRun:
        """Manual trigger. Fatal errors propagate to the caller."""
        logger.info("Manual trigger: Running booking expiration immediately")
        return await self._orchestrator.run(trigger="manual")

    async def start(self) -> None:
        if self._started:
            return
        if self._scheduler.get_job(self._job_id) is None:
            self.schedule()
        self._scheduler.start()
        self._started = True
        logger.info("Scheduler started", job_id=self._job_id)

    async def shutdown(self, wait: bool = True) -> None:
        if not self._started:
            return
        self._scheduler.shutdown(wait=wait)
        self._started = False
        logger.info("Scheduler stopped", job_id=self._job_id)

    @property
    def is_running(self) -> bool:
        return self._started and bool(self._scheduler.running)

    def next_run_time(self):
        job = self._scheduler.get_job(self._job_id)
        # Pending jobs get a next_run_time only once the scheduler starts
        return getattr(job, "next_run_time", None) if job is not None else None
