"""
Scheduler module for automatic batch runs.

Uses APScheduler to rebuild every active site at configured hours (UTC).
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .logging_conf import get_logger

if TYPE_CHECKING:
    from .pipeline import FeedPipeline

logger = get_logger(__name__)

JOB_ID = "sloth_proxy_batch"


class BatchScheduler:
    """
    Scheduler for automatic batch runs.
    """

    def __init__(self, pipeline: "FeedPipeline", hours: list[int]):
        """Initialize scheduler."""
        self.pipeline = pipeline
        self.hours = hours
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self._running = False

        logger.info("scheduler_initialized")

    def _create_job(self) -> None:
        """Create the scheduled job. Runs at minute 0 of each hour."""
        hour_spec = ",".join(str(h) for h in self.hours)

        self.scheduler.add_job(
            self._run_job,
            CronTrigger(hour=hour_spec, minute=0, timezone="UTC"),
            id=JOB_ID,
            name="Batch Feed Build",
            replace_existing=True,
            max_instances=1,
        )

        logger.info("job_scheduled", hours=self.hours)

    async def _run_job(self) -> None:
        """Execute a single batch run."""
        logger.info("scheduled_batch_starting")

        try:
            report = await self.pipeline.run_batch()
            logger.info(
                "scheduled_batch_completed",
                total=report.total,
                succeeded=report.succeeded,
            )
        except Exception as e:
            logger.error("scheduled_batch_failed", error=str(e))

    def start(self) -> None:
        """Start the scheduler."""
        if self._running:
            logger.warning("scheduler_already_running")
            return

        self._create_job()
        self.scheduler.start()
        self._running = True

        logger.info("scheduler_started")

    def stop(self) -> None:
        """Stop the scheduler."""
        if not self._running:
            return

        self.scheduler.shutdown(wait=False)
        self._running = False

        logger.info("scheduler_stopped")

    def get_next_run(self) -> Optional[datetime]:
        """Get the next scheduled run time."""
        job = self.scheduler.get_job(JOB_ID)
        if job:
            return job.next_run_time
        return None
