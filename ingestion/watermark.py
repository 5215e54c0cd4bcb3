"""
Watermark tracking: run lifecycle rows, progress markers and resume points
"""

from datetime import datetime, timezone
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import StaleRunError, WatermarkError
from models.base import RunMode, RunStatus
from models.watermark import ETLWatermark
from schemas.report import RunCounts
from schemas.service_request import ServiceRequestRecord
from schemas.watermark import Watermark
import logging

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Backends without timezone support hand back naive UTC values"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_watermark(row: ETLWatermark) -> Watermark:
    watermark = Watermark.model_validate(row)
    watermark.last_created_at = as_utc(watermark.last_created_at)
    watermark.started_at = as_utc(watermark.started_at)
    watermark.completed_at = as_utc(watermark.completed_at)
    return watermark


class WatermarkTracker:
    """
    Sole owner of the watermark for one run.

    State machine: ``running`` -> ``completed`` | ``failed``.

    Responsibilities:
    - Write the ``running`` row before any chunk is processed
    - Advance progress markers in memory after every loaded chunk
    - Persist markers and counts once, when the run completes
    - On failure persist counts and error, but no markers, so the last
      completed run stays the resume point
    - Report crashed runs (stale ``running`` rows); resolving them is an
      explicit operator action, never automatic
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session
        self.current: Optional[Watermark] = None
        self.resume_point: Optional[Watermark] = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_resume_point(self) -> Optional[Watermark]:
        """Most recent completed run; the incremental extraction boundary"""
        row = await self._fetch_one(
            select(ETLWatermark)
            .where(ETLWatermark.status == RunStatus.COMPLETED)
            .order_by(ETLWatermark.completed_at.desc(), ETLWatermark.id.desc())
            .limit(1),
            operation="read_resume_point"
        )
        self.resume_point = to_watermark(row) if row else None
        return self.resume_point

    async def get_last_run(self) -> Optional[Watermark]:
        """Most recently started run, whatever its status"""
        row = await self._fetch_one(
            select(ETLWatermark).order_by(ETLWatermark.started_at.desc(), ETLWatermark.id.desc()).limit(1),
            operation="read_last_run"
        )
        return to_watermark(row) if row else None

    async def list_runs(self, limit: int = 20) -> List[Watermark]:
        try:
            result = await self.db.execute(
                select(ETLWatermark).order_by(ETLWatermark.started_at.desc(), ETLWatermark.id.desc()).limit(limit)
            )
            return [to_watermark(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise WatermarkError("Failed to list runs", context={"operation": "list"}, original_exception=e)

    async def find_stale_runs(self) -> List[Watermark]:
        """Runs still marked running (crashed or in progress elsewhere)"""
        try:
            result = await self.db.execute(
                select(ETLWatermark).where(ETLWatermark.status == RunStatus.RUNNING)
            )
            return [to_watermark(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise WatermarkError(
                "Failed to read running watermarks",
                context={"operation": "find_stale"},
                original_exception=e
            )

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def start_run(self, run_id: UUID, mode: RunMode, input_path: Optional[str] = None) -> Watermark:
        """
        Claim the run by writing its ``running`` row.

        Raises:
            StaleRunError: If another row is still ``running``
            WatermarkError: If the row cannot be written
        """
        stale = await self.find_stale_runs()
        if stale:
            raise StaleRunError(
                "A previous run is still marked running; resolve it before starting a new run",
                context={
                    "stale_run_ids": ", ".join(str(w.run_id) for w in stale),
                    "resolve_with": "runs resolve <run_id>",
                }
            )

        started_at = datetime.now(timezone.utc)
        row = ETLWatermark(
            run_id=run_id,
            run_mode=mode,
            input_path=input_path,
            status=RunStatus.RUNNING,
            started_at=started_at,
        )
        try:
            self.db.add(row)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise WatermarkError(
                "Failed to write running watermark",
                context={"run_id": run_id, "operation": "start"},
                original_exception=e
            )

        self.current = self.new_watermark(run_id, mode, input_path, started_at)
        logger.info(f"Run {run_id} started ({mode.value})")
        return self.current

    def new_watermark(
        self,
        run_id: UUID,
        mode: RunMode,
        input_path: Optional[str] = None,
        started_at: Optional[datetime] = None,
    ) -> Watermark:
        """
        In-memory watermark for a run.

        Incremental runs start from the resume point's markers, so a run that
        loads nothing keeps the previous boundary instead of resetting it.
        """
        watermark = Watermark(
            run_id=run_id,
            run_mode=mode,
            input_path=input_path,
            started_at=started_at or datetime.now(timezone.utc),
        )
        if mode == RunMode.INCREMENTAL and self.resume_point is not None:
            watermark.last_created_at = self.resume_point.last_created_at
            watermark.last_unique_key = self.resume_point.last_unique_key
        self.current = watermark
        return watermark

    def advance(self, records: Sequence[ServiceRequestRecord]) -> None:
        """Move progress markers to the chunk's maximum (created_at, unique_key)"""
        if self.current is None or not records:
            return

        chunk_max = max(records, key=lambda r: r.progress_key)
        current = self.current
        if current.last_created_at is None or chunk_max.progress_key > (
            current.last_created_at, current.last_unique_key or 0
        ):
            current.last_created_at = chunk_max.created_at
            current.last_unique_key = chunk_max.unique_key
            current.version += 1

    def apply_counts(self, counts: RunCounts) -> None:
        if self.current is None:
            return
        self.current.rows_processed = counts.extracted
        self.current.rows_inserted = counts.inserted
        self.current.rows_duplicated = counts.duplicated
        self.current.rows_rejected = counts.rejected
        self.current.rows_skipped = counts.skipped_existing

    async def complete_run(self, counts: RunCounts) -> Watermark:
        """Persist markers and counts; the run becomes the new resume point"""
        self.apply_counts(counts)
        current = self._require_current()
        completed_at = datetime.now(timezone.utc)

        await self._persist(
            status=RunStatus.COMPLETED,
            completed_at=completed_at,
            last_created_at=current.last_created_at,
            last_unique_key=current.last_unique_key,
            rows_processed=current.rows_processed,
            rows_inserted=current.rows_inserted,
            rows_duplicated=current.rows_duplicated,
            rows_rejected=current.rows_rejected,
            rows_skipped=current.rows_skipped,
        )
        current.status = RunStatus.COMPLETED
        current.completed_at = completed_at
        logger.info(
            f"Run {current.run_id} completed; watermark at created_at={current.last_created_at}, "
            f"unique_key={current.last_unique_key}"
        )
        return current

    async def fail_run(self, counts: RunCounts, error_message: str) -> Watermark:
        """Persist failure with counts so far; markers are left unwritten"""
        self.apply_counts(counts)
        current = self._require_current()
        completed_at = datetime.now(timezone.utc)

        await self._persist(
            status=RunStatus.FAILED,
            completed_at=completed_at,
            error_message=error_message[:2000],
            rows_processed=current.rows_processed,
            rows_inserted=current.rows_inserted,
            rows_duplicated=current.rows_duplicated,
            rows_rejected=current.rows_rejected,
            rows_skipped=current.rows_skipped,
        )
        current.status = RunStatus.FAILED
        current.completed_at = completed_at
        current.error_message = error_message
        logger.warning(f"Run {current.run_id} marked failed: {error_message}")
        return current

    async def resolve_stale_run(self, run_id: UUID, note: str = "resolved by operator") -> Watermark:
        """
        Operator transition for a crashed run: ``running`` -> ``failed``.

        Chunks the crashed run committed stay in the store; the next
        incremental run restarts from the last completed watermark and the
        loader's conflict handling skips the rows already written.
        """
        row = await self._fetch_one(
            select(ETLWatermark).where(ETLWatermark.run_id == run_id),
            operation="resolve"
        )
        if row is None:
            raise WatermarkError("Unknown run", context={"run_id": run_id, "operation": "resolve"})
        if row.status != RunStatus.RUNNING:
            raise WatermarkError(
                "Run is not in running status",
                context={"run_id": run_id, "status": row.status.value, "operation": "resolve"}
            )

        try:
            row.status = RunStatus.FAILED
            row.completed_at = datetime.now(timezone.utc)
            row.error_message = note
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise WatermarkError(
                "Failed to resolve stale run",
                context={"run_id": run_id, "operation": "resolve"},
                original_exception=e
            )

        logger.warning(f"Stale run {run_id} marked failed ({note})")
        return to_watermark(row)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_current(self) -> Watermark:
        if self.current is None:
            raise WatermarkError("No run has been started", context={"operation": "update"})
        return self.current

    async def _persist(self, **values) -> None:
        current = self._require_current()
        try:
            await self.db.execute(
                update(ETLWatermark).where(ETLWatermark.run_id == current.run_id).values(**values)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise WatermarkError(
                "Failed to persist watermark",
                context={"run_id": current.run_id, "status": values.get("status")},
                original_exception=e
            )

    async def _fetch_one(self, statement, operation: str) -> Optional[ETLWatermark]:
        try:
            result = await self.db.execute(statement)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise WatermarkError(
                "Failed to read watermark",
                context={"operation": operation},
                original_exception=e
            )
