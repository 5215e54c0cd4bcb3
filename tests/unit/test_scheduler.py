import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock
from core.exceptions import DatabaseConnectionError, StaleRunError
from ingestion.scheduler import ETLScheduler
from models.base import RunMode


def make_scheduler(runner):
    return ETLScheduler("311.csv", interval_minutes=60, engine=MagicMock(), runner=runner)


@pytest.mark.asyncio
async def test_scheduler_initialization():
    scheduler = make_scheduler(MagicMock())
    assert scheduler.scheduler is not None
    assert scheduler.interval_minutes == 60


@pytest.mark.asyncio
async def test_scheduler_job_runs_incremental():
    runner = MagicMock()
    runner.run = AsyncMock(return_value=MagicMock(status="completed"))
    scheduler = make_scheduler(runner)

    report = await scheduler.run_etl_job()

    runner.run.assert_awaited_once_with("311.csv", mode=RunMode.INCREMENTAL)
    assert report.status == "completed"


@pytest.mark.asyncio
async def test_scheduler_job_survives_failures():
    runner = MagicMock()
    runner.run = AsyncMock(side_effect=DatabaseConnectionError("down"))
    runner.last_report = MagicMock(status="failed")
    scheduler = make_scheduler(runner)

    assert await scheduler.run_etl_job() is None
    assert scheduler.last_report.status == "failed"


@pytest.mark.asyncio
async def test_scheduler_skips_when_stale_run_pending():
    runner = MagicMock()
    runner.run = AsyncMock(side_effect=StaleRunError("previous run still running"))
    scheduler = make_scheduler(runner)

    assert await scheduler.run_etl_job() is None


@pytest.mark.asyncio
async def test_scheduler_serve_until_stopped():
    runner = MagicMock()
    runner.run = AsyncMock(return_value=MagicMock(status="completed"))
    scheduler = make_scheduler(runner)
    stop_event = asyncio.Event()
    stop_event.set()

    await scheduler.serve(stop_event)

    runner.run.assert_awaited_once()
    runner.request_stop.assert_called_once()
    assert not scheduler.scheduler.running
