"""
ETL Runner - Orchestrates the chunked Extract, Transform, Load pipeline.

This module provides run orchestration with:
- One transaction per chunk, chunks strictly in source order
- Watermark lifecycle (running -> completed | failed) around the load
- Run-level mutual exclusion (advisory lock + running-row claim)
- Interrupts honored only between chunks
- A single run report emitted whatever the outcome
"""

import asyncio
from pathlib import Path
from typing import Optional, Union
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from core.config import settings
from core.database import create_session_maker
from core.exceptions import ETLException, ExtractionConfigError, RunInterrupted
from ingestion.extractors.csv_extractor import ServiceRequestCSVExtractor
from ingestion.loaders.postgres_loader import PostgresLoader
from ingestion.quarantine import QuarantineWriter
from ingestion.reporter import RunReporter
from ingestion.run_lock import RunLock
from ingestion.transformers.chunk_processor import ChunkProcessor
from ingestion.transformers.deduplicator import Deduplicator
from ingestion.views import ViewRefresher
from ingestion.watermark import WatermarkTracker
from models.base import RunMode, RunStatus
from schemas.report import RefreshOutcome, RunReport
import logging

logger = logging.getLogger(__name__)


class ETLRunner:
    """
    Pipeline orchestrator

    Responsibilities:
    - Orchestrate Extract -> Decode/Validate/Dedupe -> Load per chunk
    - Own the run-scoped Deduplicator and the WatermarkTracker
    - Decide when the watermark advances and when it is persisted
    - Refresh derived views after a successful load phase
    - Produce the RunReport (also kept on ``last_report`` when the run raises)
    """

    def __init__(
        self,
        engine: AsyncEngine,
        session_maker: Optional[async_sessionmaker] = None,
        workers: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        runs_dir: Optional[str] = settings.ETL_RUNS_DIR,
        bad_rows_dir: Optional[str] = settings.ETL_BAD_ROWS_DIR,
        refresh_views: bool = True,
        refresh_concurrently: Optional[bool] = None,
        lock_key: Optional[int] = None,
    ):
        self.engine = engine
        self.session_maker = session_maker or create_session_maker(engine)
        self.workers = workers or settings.ETL_WORKERS
        self.max_retries = settings.MAX_RETRIES if max_retries is None else max_retries
        self.retry_delay = settings.RETRY_BASE_DELAY if retry_delay is None else retry_delay
        self.runs_dir = runs_dir
        self.bad_rows_dir = bad_rows_dir
        self.refresh_views = refresh_views
        self.refresh_concurrently = (
            settings.REFRESH_CONCURRENTLY if refresh_concurrently is None else refresh_concurrently
        )
        self.lock_key = lock_key

        self.last_report: Optional[RunReport] = None
        self._stop_requested = False

    def request_stop(self) -> None:
        """
        Ask the run to stop at the next chunk boundary.

        A request made before ``run`` starts stops that run before it claims
        the watermark. The request is cleared when the run finishes.
        """
        if not self._stop_requested:
            logger.warning("Stop requested; finishing the current chunk before stopping")
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    async def run(
        self,
        input_path: Union[str, Path],
        mode: Union[RunMode, str] = RunMode.FULL,
        chunk_size: Optional[int] = None,
        dry_run: bool = False,
    ) -> RunReport:
        """
        Run the pipeline over one input file.

        Args:
            input_path: Delimited file to ingest
            mode: full or incremental
            chunk_size: Rows per chunk (defaults to ETL_CHUNK_SIZE)
            dry_run: Extract, decode, validate and dedupe but write nothing

        Returns:
            RunReport with status ``completed`` or ``partial``

        Raises:
            ETLException: Any run-level failure. The failure report is
                available on ``last_report`` and the watermark row is
                marked failed.
        """
        run_id = uuid4()
        mode = RunMode(mode)
        chunk_size = settings.ETL_CHUNK_SIZE if chunk_size is None else chunk_size
        self.last_report = None

        reporter = RunReporter(
            run_id=run_id,
            mode=mode,
            input_descriptor=str(input_path),
            dry_run=dry_run,
            runs_dir=self.runs_dir,
        )
        logger.info(
            f"Starting {'dry ' if dry_run else ''}{mode.value} run {run_id} "
            f"on {input_path} (chunk_size={chunk_size}, workers={self.workers})"
        )

        tracker: Optional[WatermarkTracker] = None
        try:
            async with self.session_maker() as session:
                tracker = WatermarkTracker(session)
                try:
                    if dry_run:
                        report = await self._execute(
                            session, tracker, reporter, run_id, mode, input_path, chunk_size
                        )
                    else:
                        async with RunLock(self.engine, self.lock_key):
                            report = await self._execute(
                                session, tracker, reporter, run_id, mode, input_path, chunk_size
                            )
                except (Exception, asyncio.CancelledError) as e:
                    await self.mark_failed(session, tracker, reporter, e)
                    raise

        except ETLException as e:
            logger.error(f"ETL pipeline failed: {e.message}", extra={"error_context": e.to_dict()})
            self._finish_failed(reporter, tracker, e)
            raise

        except asyncio.CancelledError:
            self._finish_failed(reporter, tracker, RunInterrupted("Run was cancelled", context={"run_id": run_id}))
            raise

        except Exception as e:
            logger.exception("Unexpected error in ETL pipeline")
            wrapped = ETLException(
                "Unexpected error in ETL pipeline",
                context={"run_id": run_id, "input": str(input_path)},
                original_exception=e
            )
            self._finish_failed(reporter, tracker, wrapped)
            raise wrapped

        self.last_report = report
        self._stop_requested = False
        reporter.emit(report)
        return report

    async def _execute(
        self,
        session: AsyncSession,
        tracker: WatermarkTracker,
        reporter: RunReporter,
        run_id: UUID,
        mode: RunMode,
        input_path: Union[str, Path],
        chunk_size: int,
    ) -> RunReport:
        dry_run = reporter.dry_run
        if chunk_size < 1:
            raise ExtractionConfigError(
                "Chunk size must be a positive integer",
                context={"chunk_size": chunk_size}
            )
        if self._stop_requested:
            raise RunInterrupted("Stop requested before the run started", context={"run_id": run_id})

        # --------------------------------------------------
        # PHASE 1: RESUME POINT + CLAIM THE RUN
        # --------------------------------------------------
        with reporter.stage("watermark"):
            resume_point = None
            if mode == RunMode.INCREMENTAL:
                resume_point = await tracker.get_resume_point()
                if resume_point is None:
                    logger.warning("No completed run found; incremental run will read the whole file")

            if dry_run:
                stale = await tracker.find_stale_runs()
                if stale:
                    logger.warning(f"{len(stale)} run(s) still marked running; a real run would be refused")
                tracker.new_watermark(run_id, mode, str(input_path))
            else:
                await tracker.start_run(run_id, mode, str(input_path))

        extractor = ServiceRequestCSVExtractor(
            file_path=str(input_path),
            chunk_size=chunk_size,
            mode=mode,
            watermark=resume_point,
        )
        with reporter.stage("extract"):
            await asyncio.to_thread(extractor.read_header)

        loader = None if dry_run else PostgresLoader(
            session, max_retries=self.max_retries, retry_delay=self.retry_delay
        )
        quarantine = QuarantineWriter(self.bad_rows_dir, run_id) if self.bad_rows_dir and not dry_run else None

        # --------------------------------------------------
        # PHASE 2: CHUNK LOOP
        # --------------------------------------------------
        chunks = extractor.iter_chunks()
        try:
            with ChunkProcessor(Deduplicator(), workers=self.workers) as processor:
                chunk_index = 0
                while True:
                    if self._stop_requested:
                        raise RunInterrupted(
                            "Run interrupted between chunks",
                            context={"run_id": run_id, "chunks_committed": chunk_index}
                        )

                    with reporter.stage("extract"):
                        chunk = await asyncio.to_thread(next, chunks, None)
                    reporter.counts.filtered_by_watermark = extractor.rows_filtered
                    if chunk is None:
                        break

                    with reporter.stage("transform"):
                        result = await processor.process(chunk)

                    if quarantine is not None and result.rejected:
                        quarantine.write(result.rejected)

                    inserted = skipped = 0
                    if loader is not None and result.accepted:
                        with reporter.stage("load"):
                            loaded = await loader.load(result.accepted, chunk_index=chunk_index)
                        inserted, skipped = loaded.inserted, loaded.skipped

                    reporter.record_chunk(result, inserted=inserted, skipped=skipped)
                    tracker.advance(result.accepted)
                    tracker.apply_counts(reporter.counts)
                    chunk_index += 1
        finally:
            chunks.close()
            if quarantine is not None:
                quarantine.close()

        # --------------------------------------------------
        # PHASE 3: PERSIST WATERMARK
        # --------------------------------------------------
        with reporter.stage("watermark"):
            if dry_run:
                tracker.apply_counts(reporter.counts)
                watermark = tracker.current
                watermark.status = RunStatus.COMPLETED
            else:
                watermark = await tracker.complete_run(reporter.counts)

        # --------------------------------------------------
        # PHASE 4: REFRESH DERIVED VIEWS
        # --------------------------------------------------
        refresh = RefreshOutcome(status="not_run", concurrently=self.refresh_concurrently)
        if self.refresh_views and not dry_run:
            with reporter.stage("refresh"):
                refresh = await ViewRefresher(session).refresh(concurrently=self.refresh_concurrently)
            if refresh.status == "failed":
                logger.error(
                    f"View refresh failed for {', '.join(refresh.failed_views)}; loaded data is unaffected"
                )

        return reporter.finish(watermark=watermark, refresh=refresh)

    def _finish_failed(
        self,
        reporter: RunReporter,
        tracker: Optional[WatermarkTracker],
        error: ETLException,
    ) -> None:
        # Stop requests end with the run they were made during or before
        self._stop_requested = False
        self.last_report = reporter.finish(
            watermark=tracker.current if tracker else None,
            error=error,
        )
        reporter.emit(self.last_report)

    async def mark_failed(
        self,
        session: AsyncSession,
        tracker: WatermarkTracker,
        reporter: RunReporter,
        error: BaseException,
    ) -> None:
        """Persist the failure on the running row; never masks the original error"""
        if tracker.current is None or reporter.dry_run or tracker.current.status != RunStatus.RUNNING:
            return
        if isinstance(error, ETLException):
            message = error.message
        else:
            message = f"{type(error).__name__}: {error}"
        try:
            await session.rollback()
            await tracker.fail_run(reporter.counts, message)
        except (ETLException, SQLAlchemyError) as e:
            logger.error(f"Could not mark run {tracker.current.run_id} failed: {e}")
