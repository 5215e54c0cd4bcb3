import logging
import asyncio
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncEngine
from core.config import settings
from core.database import create_engine
from core.exceptions import ConcurrentRunError, ETLException, StaleRunError
from ingestion.runner import ETLRunner
from models.base import RunMode
from schemas.report import RunReport

logger = logging.getLogger(__name__)


class ETLScheduler:
    """Periodic incremental runs (each followed by a view refresh) over one input file"""

    def __init__(
        self,
        input_path: str,
        interval_minutes: Optional[int] = None,
        engine: Optional[AsyncEngine] = None,
        runner: Optional[ETLRunner] = None,
    ):
        self.input_path = input_path
        self.interval_minutes = interval_minutes or settings.SCHEDULE_INTERVAL_MINUTES
        self.scheduler = AsyncIOScheduler()
        self.engine = engine or create_engine()
        self.runner = runner or ETLRunner(self.engine)
        self.last_report: Optional[RunReport] = None

    async def run_etl_job(self) -> Optional[RunReport]:
        """Job to run the incremental pipeline"""
        logger.info(f"Scheduler: Starting incremental run on {self.input_path}")
        try:
            self.last_report = await self.runner.run(self.input_path, mode=RunMode.INCREMENTAL)
            return self.last_report
        except (ConcurrentRunError, StaleRunError) as e:
            logger.warning(f"Scheduler: run skipped - {e.message}")
        except ETLException as e:
            logger.error(f"Scheduler: ETL job failed - {e}")
        self.last_report = self.runner.last_report
        return None

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_etl_job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="etl_job",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(f"ETL Scheduler started (every {self.interval_minutes} minutes)")

    def stop(self):
        self.runner.request_stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("ETL Scheduler stopped")

    async def serve(self, stop_event: asyncio.Event, run_immediately: bool = True):
        """Run until ``stop_event`` is set"""
        if run_immediately:
            await self.run_etl_job()
        self.start()
        try:
            await stop_event.wait()
        finally:
            self.stop()
