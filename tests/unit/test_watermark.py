"""
Unit tests for watermark tracking and run locking
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy import select

from core.exceptions import ConcurrentRunError, StaleRunError, WatermarkError
from ingestion.run_lock import RunLock
from ingestion.watermark import WatermarkTracker, as_utc
from models.base import RunMode, RunStatus
from models.watermark import ETLWatermark
from schemas.report import RunCounts
from schemas.service_request import ServiceRequestRecord
from schemas.watermark import Watermark

T0 = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


def record(key, created_at):
    return ServiceRequestRecord(unique_key=key, created_at=created_at, complaint_type="Noise")


class TestWatermarkOrdering:
    """Test the (created_at, unique_key) boundary"""

    def make(self, created_at=T0, unique_key=20):
        return Watermark(run_id=uuid4(), run_mode=RunMode.FULL, last_created_at=created_at, last_unique_key=unique_key)

    def test_later_timestamp_is_after(self):
        assert self.make().is_after(T0 + timedelta(seconds=1), 1)

    def test_earlier_timestamp_is_not_after(self):
        assert not self.make().is_after(T0 - timedelta(seconds=1), 999)

    def test_tie_broken_by_key(self):
        watermark = self.make()
        assert watermark.is_after(T0, 21)
        assert not watermark.is_after(T0, 20)
        assert not watermark.is_after(T0, 19)

    def test_empty_watermark_admits_everything(self):
        assert self.make(created_at=None, unique_key=None).is_after(T0, 1)

    def test_as_utc_handles_naive(self):
        assert as_utc(datetime(2025, 1, 15, 10)) == T0


class TestWatermarkTracker:
    """Test run lifecycle against the database"""

    @pytest.mark.asyncio
    async def test_start_writes_running_row(self, db_session):
        tracker = WatermarkTracker(db_session)
        run_id = uuid4()

        await tracker.start_run(run_id, RunMode.FULL, "input.csv")

        row = (await db_session.execute(select(ETLWatermark))).scalar_one()
        assert row.run_id == run_id
        assert row.status == RunStatus.RUNNING
        assert row.input_path == "input.csv"

    @pytest.mark.asyncio
    async def test_advance_tracks_maximum(self, db_session):
        tracker = WatermarkTracker(db_session)
        await tracker.start_run(uuid4(), RunMode.FULL)

        tracker.advance([record(5, T0), record(3, T0 + timedelta(hours=1)), record(9, T0)])
        tracker.advance([record(1, T0)])  # behind the marker; no change

        assert tracker.current.last_created_at == T0 + timedelta(hours=1)
        assert tracker.current.last_unique_key == 3
        assert tracker.current.version == 1

    @pytest.mark.asyncio
    async def test_complete_persists_markers_and_counts(self, db_session):
        tracker = WatermarkTracker(db_session)
        await tracker.start_run(uuid4(), RunMode.FULL)
        tracker.advance([record(7, T0)])

        await tracker.complete_run(RunCounts(extracted=10, inserted=6, duplicated=1, rejected=2, skipped_existing=1))

        resume = await WatermarkTracker(db_session).get_resume_point()
        assert resume.status == RunStatus.COMPLETED
        assert resume.last_created_at == T0
        assert resume.last_unique_key == 7
        assert resume.rows_processed == 10
        assert resume.rows_inserted == 6
        assert resume.rows_skipped == 1
        assert resume.completed_at is not None

    @pytest.mark.asyncio
    async def test_failed_run_keeps_previous_resume_point(self, db_session):
        first = WatermarkTracker(db_session)
        await first.start_run(uuid4(), RunMode.FULL)
        first.advance([record(7, T0)])
        await first.complete_run(RunCounts())

        second = WatermarkTracker(db_session)
        await second.start_run(uuid4(), RunMode.FULL)
        second.advance([record(99, T0 + timedelta(days=1))])
        await second.fail_run(RunCounts(extracted=5), "load failed")

        resume = await WatermarkTracker(db_session).get_resume_point()
        assert resume.run_id == first.current.run_id
        assert resume.last_unique_key == 7

        failed = await WatermarkTracker(db_session).get_last_run()
        assert failed.status == RunStatus.FAILED
        assert failed.error_message == "load failed"
        assert failed.last_created_at is None
        assert failed.rows_processed == 5

    @pytest.mark.asyncio
    async def test_incremental_without_progress_carries_markers(self, db_session):
        first = WatermarkTracker(db_session)
        await first.start_run(uuid4(), RunMode.FULL)
        first.advance([record(7, T0)])
        await first.complete_run(RunCounts())

        second = WatermarkTracker(db_session)
        await second.get_resume_point()
        await second.start_run(uuid4(), RunMode.INCREMENTAL)
        await second.complete_run(RunCounts())

        resume = await WatermarkTracker(db_session).get_resume_point()
        assert resume.run_id == second.current.run_id
        assert resume.last_created_at == T0
        assert resume.last_unique_key == 7

    @pytest.mark.asyncio
    async def test_stale_running_row_blocks_new_run(self, db_session):
        crashed = WatermarkTracker(db_session)
        crashed_id = uuid4()
        await crashed.start_run(crashed_id, RunMode.FULL)

        with pytest.raises(StaleRunError) as exc_info:
            await WatermarkTracker(db_session).start_run(uuid4(), RunMode.FULL)

        assert str(crashed_id) in exc_info.value.context["stale_run_ids"]

    @pytest.mark.asyncio
    async def test_resolve_stale_run(self, db_session):
        crashed_id = uuid4()
        await WatermarkTracker(db_session).start_run(crashed_id, RunMode.FULL)

        resolved = await WatermarkTracker(db_session).resolve_stale_run(crashed_id)

        assert resolved.status == RunStatus.FAILED
        assert await WatermarkTracker(db_session).find_stale_runs() == []
        # A new run can start again
        await WatermarkTracker(db_session).start_run(uuid4(), RunMode.INCREMENTAL)

    @pytest.mark.asyncio
    async def test_resolve_rejects_unknown_or_finished_runs(self, db_session):
        tracker = WatermarkTracker(db_session)
        with pytest.raises(WatermarkError):
            await tracker.resolve_stale_run(uuid4())

        run_id = uuid4()
        await tracker.start_run(run_id, RunMode.FULL)
        await tracker.complete_run(RunCounts())
        with pytest.raises(WatermarkError):
            await WatermarkTracker(db_session).resolve_stale_run(run_id)

    @pytest.mark.asyncio
    async def test_list_runs_newest_first(self, db_session):
        ids = []
        for _ in range(3):
            tracker = WatermarkTracker(db_session)
            run_id = uuid4()
            ids.append(run_id)
            await tracker.start_run(run_id, RunMode.FULL)
            await tracker.complete_run(RunCounts())

        runs = await WatermarkTracker(db_session).list_runs(limit=2)

        assert [r.run_id for r in runs] == [ids[2], ids[1]]

    @pytest.mark.asyncio
    async def test_no_resume_point_initially(self, db_session):
        assert await WatermarkTracker(db_session).get_resume_point() is None

    @pytest.mark.asyncio
    async def test_complete_without_start(self, db_session):
        with pytest.raises(WatermarkError):
            await WatermarkTracker(db_session).complete_run(RunCounts())


class TestRunLock:
    """Test advisory-lock based mutual exclusion"""

    def make_engine(self, dialect="postgresql", acquired=True):
        conn = AsyncMock()
        result = MagicMock()
        result.scalar.return_value = acquired
        conn.execute = AsyncMock(return_value=result)
        engine = MagicMock()
        engine.dialect.name = dialect
        engine.connect = AsyncMock(return_value=conn)
        return engine, conn

    @pytest.mark.asyncio
    async def test_acquire_and_release(self):
        engine, conn = self.make_engine()

        async with RunLock(engine, key=42) as lock:
            assert lock.acquired

        statements = [str(c.args[0]) for c in conn.execute.call_args_list]
        assert "pg_try_advisory_lock" in statements[0]
        assert "pg_advisory_unlock" in statements[1]
        conn.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_held_elsewhere_raises(self):
        engine, conn = self.make_engine(acquired=False)

        with pytest.raises(ConcurrentRunError):
            async with RunLock(engine, key=42):
                pass

        conn.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_noop_on_other_dialects(self):
        engine, _ = self.make_engine(dialect="sqlite")

        async with RunLock(engine) as lock:
            assert not lock.acquired

        engine.connect.assert_not_called()
