"""
Time-block scheduler using APScheduler.
Fires trigger jobs onto the workflow-trigger queue.
"""
import time
from typing import Dict, List, Optional, TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from flowrunner.constants import time_block_job_id
from flowrunner.core.logging import get_logger
from flowrunner.services.execution.models import RecurrenceType, TriggerType, as_utc
from flowrunner.services.queue.broker import JobQueue
from flowrunner.services.queue.jobs import QueueName, TriggerJob

if TYPE_CHECKING:
    from flowrunner.core.database import Database
    from flowrunner.models.database import TimeBlock

logger = get_logger(__name__)


class TimeBlockScheduler:
    """Keeps one APScheduler job per active time block.

    Each firing enqueues a ``TriggerJob`` whose id carries the fire time, so
    two schedulers firing the same block in the same second collapse into one
    trigger job.
    """

    def __init__(self, queue: JobQueue, database: "Database",
                 scheduler: Optional[AsyncIOScheduler] = None):
        self.queue = queue
        self.database = database
        self._scheduler = scheduler or AsyncIOScheduler(timezone="UTC")

    @property
    def running(self) -> bool:
        return self._scheduler.running

    async def start(self) -> int:
        """Start the scheduler and re-register every active time block.

        Returns:
            Number of time blocks scheduled
        """
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Scheduler started")

        blocks = await self.database.list_active_time_blocks()
        for block in blocks:
            self.schedule(block)
        logger.info("Active time blocks scheduled", count=len(blocks))
        return len(blocks)

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler shutdown")

    def schedule(self, block: "TimeBlock") -> str:
        """Register (or replace) the job for ``block``.

        Returns:
            The scheduler job id
        """
        job_id = time_block_job_id(block.id)
        trigger = self._build_trigger(block)

        self._scheduler.add_job(
            self._fire,
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            kwargs={
                "time_block_id": block.id,
                "workflow_id": block.workflow_id,
                "user_id": block.user_id,
            },
        )
        logger.info("Time block scheduled", time_block_id=block.id,
                    recurrence_type=block.recurrence_type, trigger=str(trigger))
        return job_id

    def cancel(self, time_block_id: str) -> bool:
        """Remove the job for a time block. False when none was scheduled."""
        try:
            self._scheduler.remove_job(time_block_job_id(time_block_id))
        except JobLookupError:
            logger.debug("No scheduled job for time block", time_block_id=time_block_id)
            return False
        logger.info("Time block unscheduled", time_block_id=time_block_id)
        return True

    def get_job_info(self, time_block_id: str) -> Optional[Dict]:
        job = self._scheduler.get_job(time_block_job_id(time_block_id))
        if job:
            return {
                "id": job.id,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                "trigger": str(job.trigger),
            }
        return None

    def get_all_jobs(self) -> List[Dict]:
        return [
            {
                "id": job.id,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                "trigger": str(job.trigger),
            }
            for job in self._scheduler.get_jobs()
        ]

    @staticmethod
    def _build_trigger(block: "TimeBlock"):
        run_at = as_utc(block.run_at)
        until_at = as_utc(block.until_at)
        recurrence = RecurrenceType(block.recurrence_type)

        if recurrence == RecurrenceType.INTERVAL:
            if not block.interval_seconds or block.interval_seconds < 1:
                raise ValueError(f"Time block {block.id} needs a positive interval_seconds")
            return IntervalTrigger(seconds=block.interval_seconds, start_date=run_at,
                                   end_date=until_at, timezone="UTC")

        if recurrence == RecurrenceType.CRON:
            if not block.cron_expression:
                raise ValueError(f"Time block {block.id} needs a cron_expression")
            parts = block.cron_expression.split()
            if len(parts) != 5:
                raise ValueError(f"Time block {block.id} cron_expression must have 5 fields")
            return CronTrigger(
                minute=parts[0],
                hour=parts[1],
                day=parts[2],
                month=parts[3],
                day_of_week=parts[4],
                end_date=until_at,
                timezone=block.timezone or "UTC",
            )

        return DateTrigger(run_date=run_at, timezone="UTC")

    async def _fire(self, time_block_id: str, workflow_id: str, user_id: str) -> None:
        fired_at_ms = int(time.time()) * 1000
        job = TriggerJob(
            workflow_id=workflow_id,
            user_id=user_id,
            triggered_by=TriggerType.TIME_BLOCK.value,
            time_block_id=time_block_id,
        )
        await self.queue.enqueue(
            QueueName.WORKFLOW_TRIGGER,
            job.model_dump(),
            job_id=f"{time_block_job_id(time_block_id)}:{fired_at_ms}",
        )
        logger.info("Time block fired", time_block_id=time_block_id, workflow_id=workflow_id)
