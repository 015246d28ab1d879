"""
Background deployment scheduler.

Runs a deployment pass at startup and then every ``check_interval``
hours using APScheduler. Passes never overlap: a pass requested while
another is running is rejected.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config_store import ConfigStoreError
from core.orchestrator import summarize
from models.certificate import DeploymentResult

logger = logging.getLogger(__name__)

PASS_JOB_ID = "deployment_pass"


class PassInProgressError(Exception):
    """A deployment pass is already running."""

    def __init__(self, message: str = "A deployment pass is already running"):
        self.message = message
        super().__init__(message)


class DeployScheduler:
    """Periodic and on-demand deployment passes."""

    def __init__(self, run_pass: Callable[[], Awaitable[List[DeploymentResult]]]):
        self.scheduler = AsyncIOScheduler()
        self._run_pass = run_pass
        self._lock = asyncio.Lock()
        self._started = False
        self.last_run: Optional[datetime] = None
        self.last_results: List[DeploymentResult] = []
        self.last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def start(self, interval_hours: int, run_immediately: bool = True) -> None:
        """Start the scheduler."""
        if self._started:
            logger.warning("Deployment scheduler already started")
            return

        job_kwargs = {}
        if run_immediately:
            # next_run_time=None would add the job paused
            job_kwargs["next_run_time"] = datetime.now(timezone.utc)

        self.scheduler.add_job(
            self._scheduled_pass,
            IntervalTrigger(hours=interval_hours),
            id=PASS_JOB_ID,
            name="Certificate Deployment Pass",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **job_kwargs,
        )
        self.scheduler.start()
        self._started = True
        logger.info(f"Deployment scheduler started (every {interval_hours}h)")

    async def stop(self) -> None:
        """Stop the scheduler."""
        if self._started:
            self.scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Deployment scheduler stopped")

    async def _scheduled_pass(self) -> None:
        try:
            await self.run_now()
        except PassInProgressError:
            logger.info("Scheduled pass skipped: previous pass still running")

    async def run_now(self) -> List[DeploymentResult]:
        """
        Run one pass immediately.

        Returns:
            Results of the pass (empty if it failed before processing any certificate)

        Raises:
            PassInProgressError: if a pass is already running
        """
        if self._lock.locked():
            raise PassInProgressError()

        async with self._lock:
            logger.info("Deployment pass triggered")
            self.last_run = datetime.now(timezone.utc)
            try:
                results = await self._run_pass()
                self.last_error = None
            except ConfigStoreError as e:
                logger.error(f"Deployment pass aborted: {e.message}")
                self.last_error = e.message
                results = []
            except Exception as e:
                logger.exception(f"Error in deployment pass: {e}")
                self.last_error = str(e)
                results = []
            self.last_results = results
            return results

    def get_status(self) -> dict:
        succeeded, failed = summarize(self.last_results)
        job = self.scheduler.get_job(PASS_JOB_ID) if self._started else None
        return {
            "scheduler_running": self._started,
            "pass_running": self.running,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": job.next_run_time.isoformat() if job and job.next_run_time else None,
            "last_error": self.last_error,
            "succeeded": succeeded,
            "failed": failed,
        }
