"""
Run reporting: stage timings, counts and the final JSON summary
"""

import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, Optional
from uuid import UUID

from core.exceptions import ETLException, ExitCode
from models.base import RunMode
from schemas.report import RefreshOutcome, RunCounts, RunReport
from schemas.watermark import Watermark
from ingestion.transformers.chunk_processor import ChunkResult
import logging

logger = logging.getLogger(__name__)

STAGES = ("extract", "transform", "load", "watermark", "refresh")


class RunReporter:
    """
    Collects what happened during one run and emits a single summary.

    The summary is produced whatever the outcome: completed, partial
    (loads committed but refresh failed) or failed.
    """

    def __init__(
        self,
        run_id: UUID,
        mode: RunMode,
        input_descriptor: str,
        dry_run: bool = False,
        runs_dir: Optional[str] = None,
    ):
        self.run_id = run_id
        self.mode = mode
        self.input_descriptor = input_descriptor
        self.dry_run = dry_run
        self.runs_dir = runs_dir

        self.counts = RunCounts()
        self.chunks = 0
        self.durations: Dict[str, float] = {stage: 0.0 for stage in STAGES}
        self.started_at = datetime.now(timezone.utc)

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        """Add the wall time of the block to stage ``name``"""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.durations[name] = self.durations.get(name, 0.0) + (time.perf_counter() - start)

    def record_chunk(self, result: ChunkResult, inserted: int = 0, skipped: int = 0) -> None:
        self.chunks += 1
        self.counts.merge(RunCounts(
            extracted=result.rows,
            accepted=len(result.accepted),
            rejected=len(result.rejected),
            duplicated=result.duplicated,
            inserted=inserted,
            skipped_existing=skipped,
            rejected_by_reason=result.rejected_by_reason(),
        ))
        logger.info(
            f"Chunk {self.chunks}: {result.rows} rows, {len(result.accepted)} accepted, "
            f"{len(result.rejected)} rejected, {result.duplicated} duplicates, "
            f"{inserted} inserted, {skipped} already present"
        )

    def finish(
        self,
        watermark: Optional[Watermark] = None,
        refresh: Optional[RefreshOutcome] = None,
        error: Optional[BaseException] = None,
    ) -> RunReport:
        """Build the final report; status and exit code follow from the outcome"""
        refresh = refresh or RefreshOutcome(status="not_run")

        if error is not None:
            status = "failed"
            if isinstance(error, ETLException):
                exit_code = error.exit_code
                error_info = error.to_dict()
            else:
                exit_code = ExitCode.UNEXPECTED
                error_info = {"error_type": type(error).__name__, "message": str(error)}
        elif refresh.status == "failed":
            status = "partial"
            exit_code = ExitCode.PARTIAL_SUCCESS
            error_info = {"error_type": "RefreshError", "message": refresh.error}
        else:
            status = "completed"
            exit_code = ExitCode.SUCCESS
            error_info = None

        return RunReport(
            run_id=self.run_id,
            mode=self.mode,
            input=self.input_descriptor,
            dry_run=self.dry_run,
            status=status,
            exit_code=exit_code,
            counts=self.counts.model_copy(deep=True),
            chunks=self.chunks,
            stage_durations_seconds={k: round(v, 3) for k, v in self.durations.items()},
            started_at=self.started_at,
            finished_at=datetime.now(timezone.utc),
            watermark=watermark.model_copy() if watermark else None,
            refresh=refresh,
            error=error_info,
        )

    def emit(self, report: RunReport) -> Optional[Path]:
        """Log the summary and, outside dry runs, write ``<runs_dir>/<run_id>.json``"""
        counts = report.counts
        log = logger.error if report.status == "failed" else logger.info
        log(
            f"Run {report.run_id} {report.status} (exit {report.exit_code}): "
            f"extracted={counts.extracted} accepted={counts.accepted} rejected={counts.rejected} "
            f"duplicated={counts.duplicated} inserted={counts.inserted} "
            f"skipped_existing={counts.skipped_existing} "
            f"filtered_by_watermark={counts.filtered_by_watermark} chunks={report.chunks}"
        )

        if report.dry_run or not self.runs_dir:
            return None

        path = Path(self.runs_dir) / f"{report.run_id}.json"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            # Logged above; a write failure leaves the run outcome unchanged
            logger.warning(f"Could not write run report to {path}: {e}")
            return None
        return path
