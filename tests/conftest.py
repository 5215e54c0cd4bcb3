"""
Pytest configuration and fixtures
"""

import csv
from pathlib import Path
from typing import AsyncGenerator, Callable, List, Optional, Sequence

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from ingestion.runner import ETLRunner
from models.base import Base
import models.service_request  # noqa: F401
import models.watermark  # noqa: F401

from tests.helpers import CSV_HEADER, make_row


@pytest.fixture
def write_csv(tmp_path) -> Callable[..., Path]:
    """Write rows (lists of cells, or raw text lines) to a CSV under tmp_path"""

    def _write(rows: Sequence, name: str = "input.csv", header: Optional[List[str]] = None) -> Path:
        path = tmp_path / name
        with path.open("w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(header or CSV_HEADER)
            for row in rows:
                if isinstance(row, str):
                    f.write(row + "\r\n")
                else:
                    writer.writerow(row)
        return path

    return _write


@pytest.fixture
def scenario_rows() -> List[List[str]]:
    """Two valid rows and one with a borough outside NYC"""
    return [
        make_row(100001, "2025-01-15 09:30:00", "2025-01-15 11:00:00", "Noise", "Loud Music",
                 "MANHATTAN", "40.7580", "-73.9855"),
        make_row(100002, "2025-01-15 10:00:00", "", "Street Condition", "Pothole",
                 "BROOKLYN", "40.6782", "-73.9442"),
        make_row(100003, "2025-01-15 10:15:00", "", "Noise", "Loud Music",
                 "NEW JERSEY", "40.7357", "-74.1724"),
    ]


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create test database engine (file-backed SQLite per test)"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'etl_test.db'}",
        echo=False,
        poolclass=NullPool,  # Disable connection pooling for tests
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine) -> async_sessionmaker:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def runner(test_engine, session_maker, tmp_path) -> ETLRunner:
    """Runner wired to the test database with fast retries"""
    return ETLRunner(
        test_engine,
        session_maker=session_maker,
        workers=2,
        max_retries=2,
        retry_delay=0,
        runs_dir=str(tmp_path / "runs"),
        bad_rows_dir=str(tmp_path / "bad_rows"),
    )
