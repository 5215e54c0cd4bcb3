# ============================================================================
# File: tests/integration/test_etl_failure_recovery.py
# ============================================================================

import pytest
from unittest.mock import AsyncMock, patch
from uuid import uuid4
from sqlalchemy import select

from core.exceptions import DatabaseConnectionError, ExitCode, StaleRunError
from ingestion.loaders.postgres_loader import PostgresLoader
from ingestion.views import ViewRefresher
from ingestion.watermark import WatermarkTracker
from models.base import RunMode, RunStatus
from models.service_request import ServiceRequest
from models.watermark import ETLWatermark
from schemas.report import RefreshOutcome
from tests.helpers import make_row


def ten_rows():
    return [make_row(500000 + i, created=f"2025-04-01 {i:02d}:00:00") for i in range(1, 11)]


async def count_rows(session_maker):
    async with session_maker() as session:
        result = await session.execute(select(ServiceRequest.unique_key))
        return len(result.scalars().all())


@pytest.mark.asyncio
async def test_etl_failure_recovery_resume(runner, session_maker, write_csv):
    """
    Failure Recovery Test:
    1. Load fails on the third chunk
    2. Earlier chunks stay committed, watermark is marked failed without markers
    3. Re-run
    4. No duplicate rows; rows from the failed run are counted as already present
    """
    path = write_csv(ten_rows())

    # -------------------------------------------------------
    # STEP 1: Force Loader Failure on the Third Chunk
    # -------------------------------------------------------
    original = PostgresLoader.load

    async def failing_load(self, records, chunk_index=0):
        if chunk_index == 2:
            raise DatabaseConnectionError(
                "Database unreachable after 2 attempts",
                context={"chunk_index": chunk_index}
            )
        return await original(self, records, chunk_index=chunk_index)

    with patch.object(PostgresLoader, "load", new=failing_load):
        with pytest.raises(DatabaseConnectionError):
            await runner.run(path, mode=RunMode.FULL, chunk_size=3)

    # -------------------------------------------------------
    # STEP 2: Validate FAILURE State
    # -------------------------------------------------------
    assert await count_rows(session_maker) == 6

    async with session_maker() as session:
        [failed] = (await session.execute(select(ETLWatermark))).scalars().all()
    assert failed.status == RunStatus.FAILED
    assert failed.last_created_at is None
    assert failed.last_unique_key is None
    assert failed.rows_inserted == 6
    assert "unreachable" in failed.error_message

    assert runner.last_report.status == "failed"
    assert runner.last_report.exit_code == ExitCode.LOAD_FAILURE

    # -------------------------------------------------------
    # STEP 3: Re-run (incremental falls back to the whole file)
    # -------------------------------------------------------
    report = await runner.run(path, mode=RunMode.INCREMENTAL, chunk_size=3)

    # -------------------------------------------------------
    # STEP 4: Validate Recovery
    # -------------------------------------------------------
    assert report.status == "completed"
    assert report.counts.inserted == 4
    assert report.counts.skipped_existing == 6
    assert await count_rows(session_maker) == 10
    assert report.watermark.last_unique_key == 500010


@pytest.mark.asyncio
async def test_crashed_run_blocks_until_resolved(runner, session_maker, write_csv):
    """A leftover running row refuses new runs until an operator resolves it"""
    crashed_id = uuid4()
    async with session_maker() as session:
        await WatermarkTracker(session).start_run(crashed_id, RunMode.FULL, "input.csv")

    path = write_csv(ten_rows())
    with pytest.raises(StaleRunError):
        await runner.run(path, mode=RunMode.INCREMENTAL)

    assert runner.last_report.exit_code == ExitCode.WATERMARK_FAILURE
    assert await count_rows(session_maker) == 0

    # The stale row is untouched by the refused run
    async with session_maker() as session:
        rows = (await session.execute(select(ETLWatermark))).scalars().all()
    assert [r.status for r in rows] == [RunStatus.RUNNING]

    async with session_maker() as session:
        await WatermarkTracker(session).resolve_stale_run(crashed_id)

    report = await runner.run(path, mode=RunMode.INCREMENTAL)
    assert report.status == "completed"
    assert report.counts.inserted == 10


@pytest.mark.asyncio
async def test_refresh_failure_is_partial(runner, session_maker, write_csv):
    """Refresh failure leaves loaded data and the completed watermark in place"""
    failed_refresh = RefreshOutcome(
        status="failed",
        concurrently=True,
        views=["mv_complaints_by_day_borough", "mv_complaints_by_type_month"],
        failed_views=["mv_complaints_by_type_month"],
        error="canceling statement due to lock timeout",
    )

    with patch.object(ViewRefresher, "refresh", new=AsyncMock(return_value=failed_refresh)):
        report = await runner.run(write_csv(ten_rows()), mode=RunMode.FULL)

    assert report.status == "partial"
    assert report.exit_code == ExitCode.PARTIAL_SUCCESS
    assert report.counts.inserted == 10
    assert report.watermark.status == RunStatus.COMPLETED

    async with session_maker() as session:
        [row] = (await session.execute(select(ETLWatermark))).scalars().all()
    assert row.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_no_refresh_flag(session_maker, test_engine, write_csv, tmp_path):
    from ingestion.runner import ETLRunner

    runner = ETLRunner(
        test_engine,
        session_maker=session_maker,
        refresh_views=False,
        runs_dir=str(tmp_path / "runs"),
        bad_rows_dir=None,
    )
    with patch.object(ViewRefresher, "refresh", new=AsyncMock()) as mock_refresh:
        report = await runner.run(write_csv(ten_rows()), mode=RunMode.FULL)

    mock_refresh.assert_not_called()
    assert report.refresh.status == "not_run"
    assert not (tmp_path / "bad_rows").exists()


@pytest.mark.asyncio
async def test_unwritable_quarantine_does_not_fail_run(session_maker, test_engine, write_csv, tmp_path):
    from ingestion.runner import ETLRunner

    blocker = tmp_path / "blocker"
    blocker.write_text("")
    runner = ETLRunner(
        test_engine,
        session_maker=session_maker,
        runs_dir=str(tmp_path / "runs"),
        bad_rows_dir=str(blocker / "bad_rows"),
    )
    rows = [make_row(600001), make_row(600002, borough="NEW JERSEY"), make_row(600003)]

    report = await runner.run(write_csv(rows), mode=RunMode.FULL, chunk_size=1)

    assert report.status == "completed"
    assert report.counts.inserted == 2
    assert report.counts.rejected == 1
    assert await count_rows(session_maker) == 2
