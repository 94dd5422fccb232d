import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Dict, List, Optional, Protocol

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

if TYPE_CHECKING:
    from pipeline.runner import PipelineOrchestrator

logger = logging.getLogger(__name__)


class NextRunCalculator(Protocol):
    def next_run(self, expression: str, from_time: datetime) -> Optional[datetime]: ...


class CronNextRunCalculator:
    """Next fire time of a 5-field cron expression, evaluated in UTC"""

    def __init__(self, tz: timezone = timezone.utc):
        self.tz = tz

    def next_run(self, expression: str, from_time: datetime) -> Optional[datetime]:
        """First fire time strictly after from_time (naive values are read as UTC)"""
        if from_time.tzinfo is None:
            from_time = from_time.replace(tzinfo=timezone.utc)
        trigger = CronTrigger.from_crontab(expression, timezone=self.tz)
        # Cron resolution is one second; step past from_time so an exact match is skipped
        after = from_time.replace(microsecond=0) + timedelta(seconds=1)
        return trigger.get_next_fire_time(None, after)


class PipelineScheduler:
    """
    Runs registered pipelines on their cron schedules.

    Each orchestrator is one APScheduler job. A run that is still going when
    its next fire time arrives is skipped by APScheduler (max_instances=1)
    and would be refused by the pipeline lock anyway.
    """

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self.orchestrators: Dict[str, "PipelineOrchestrator"] = {}

    def add_pipeline(self, orchestrator: "PipelineOrchestrator", job_id: Optional[str] = None) -> str:
        job_id = job_id or orchestrator.config.name
        self.orchestrators[job_id] = orchestrator
        self.scheduler.add_job(
            self.run_pipeline_job,
            trigger=CronTrigger.from_crontab(orchestrator.config.schedule, timezone=timezone.utc),
            args=[job_id],
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Scheduled pipeline {job_id} ({orchestrator.config.schedule})")
        return job_id

    def remove_pipeline(self, job_id: str) -> None:
        self.orchestrators.pop(job_id, None)
        if self.scheduler.get_job(job_id):
            self.scheduler.remove_job(job_id)

    async def run_pipeline_job(self, job_id: str) -> None:
        """Job to run one pipeline"""
        orchestrator = self.orchestrators.get(job_id)
        if orchestrator is None:
            logger.warning(f"Scheduler: no pipeline registered as {job_id}")
            return

        logger.info(f"Scheduler: Starting pipeline {job_id}")
        try:
            result = await orchestrator.execute()
            if result.success:
                logger.info(
                    f"Scheduler: Pipeline {job_id} completed "
                    f"({result.steps_completed}/{result.total_steps} steps)"
                )
            else:
                logger.error(f"Scheduler: Pipeline {job_id} failed - {result.error}")
        except Exception as e:
            logger.error(f"Scheduler: Pipeline {job_id} job crashed - {e}")

    def get_jobs(self) -> List[Dict[str, Optional[str]]]:
        jobs = []
        for job in self.scheduler.get_jobs():
            # Pending jobs (scheduler not started) have no next_run_time yet
            next_run = getattr(job, "next_run_time", None)
            jobs.append({"id": job.id, "next_run": next_run.isoformat() if next_run else None})
        return jobs

    def start(self):
        """Start the scheduler"""
        self.scheduler.start()
        logger.info(f"Pipeline scheduler started with {len(self.orchestrators)} pipelines")

    async def stop(self):
        """Stop scheduling and shut every registered pipeline down"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        for orchestrator in self.orchestrators.values():
            await orchestrator.shutdown()
        logger.info("Pipeline scheduler stopped")
