"""
Unit tests for the insert-or-ignore loader
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError

from core.exceptions import ConstraintViolationError, DatabaseConnectionError, DatabaseError
from ingestion.loaders.postgres_loader import STATEMENT_BATCH_SIZE, PostgresLoader, is_transient
from schemas.service_request import ServiceRequestRecord


def make_records(count, start=1):
    return [
        ServiceRequestRecord(
            unique_key=start + i,
            created_at=datetime(2025, 1, 15, 9, 30, tzinfo=timezone.utc),
            complaint_type="Noise",
        )
        for i in range(count)
    ]


def returning(keys):
    """Result object whose scalars() lists the inserted keys"""
    result = MagicMock()
    result.scalars.return_value.all.return_value = list(keys)
    return result


def mock_session():
    session = AsyncMock()
    session.execute = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    return session


def operational_error():
    return OperationalError("INSERT", {}, ConnectionRefusedError("connection refused"))


class TestPostgresLoader:
    """Test loader counting, transactions and retries"""

    @pytest.mark.asyncio
    async def test_load_counts_inserted_and_skipped(self):
        """Keys absent from RETURNING were already stored"""
        session = mock_session()
        session.execute.return_value = returning([1, 3])

        loader = PostgresLoader(session, dialect_name="postgresql")
        result = await loader.load(make_records(3))

        assert result.inserted == 2
        assert result.skipped == 1
        session.execute.assert_called_once()
        session.commit.assert_called_once()

    @pytest.mark.asyncio
    async def test_load_empty_list(self):
        session = mock_session()
        loader = PostgresLoader(session, dialect_name="postgresql")

        result = await loader.load([])

        assert result.inserted == 0
        session.execute.assert_not_called()
        session.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_sub_batches_share_one_transaction(self):
        session = mock_session()
        session.execute.side_effect = [
            returning(range(STATEMENT_BATCH_SIZE)),
            returning(range(STATEMENT_BATCH_SIZE)),
            returning([1]),
        ]

        loader = PostgresLoader(session, dialect_name="postgresql")
        result = await loader.load(make_records(STATEMENT_BATCH_SIZE * 2 + 1))

        assert result.inserted == STATEMENT_BATCH_SIZE * 2 + 1
        assert session.execute.call_count == 3
        session.commit.assert_called_once()

    def test_statement_uses_on_conflict_do_nothing(self):
        loader = PostgresLoader(mock_session(), dialect_name="postgresql")
        stmt = loader.build_statement([make_records(1)[0].to_row()])
        sql = str(stmt.compile(dialect=postgresql.dialect()))

        assert "ON CONFLICT (unique_key) DO NOTHING" in sql
        assert "RETURNING service_requests.unique_key" in sql

    def test_unsupported_dialect(self):
        with pytest.raises(DatabaseError):
            PostgresLoader(mock_session(), dialect_name="mysql")

    @pytest.mark.asyncio
    async def test_retries_connection_errors_with_backoff(self):
        session = mock_session()
        session.execute.side_effect = [operational_error(), operational_error(), returning([1])]

        loader = PostgresLoader(session, max_retries=3, retry_delay=0.5, dialect_name="postgresql")
        with patch("ingestion.loaders.postgres_loader.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            result = await loader.load(make_records(1))

        assert result.inserted == 1
        assert [c.args[0] for c in mock_sleep.call_args_list] == [0.5, 1.0]
        # Each failed attempt is rolled back before the retry
        assert session.rollback.call_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        session = mock_session()
        session.execute.side_effect = operational_error()

        loader = PostgresLoader(session, max_retries=3, retry_delay=0, dialect_name="postgresql")
        with patch("ingestion.loaders.postgres_loader.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(DatabaseConnectionError) as exc_info:
                await loader.load(make_records(2), chunk_index=4)

        assert session.execute.call_count == 3
        assert exc_info.value.context["chunk_index"] == 4
        session.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_integrity_error_is_not_retried(self):
        session = mock_session()
        session.execute.side_effect = IntegrityError("INSERT", {}, Exception("check constraint"))

        loader = PostgresLoader(session, dialect_name="postgresql")
        with pytest.raises(ConstraintViolationError):
            await loader.load(make_records(1))

        session.execute.assert_called_once()
        session.rollback.assert_called_once()

    @pytest.mark.asyncio
    async def test_other_database_errors_are_fatal(self):
        session = mock_session()
        session.execute.side_effect = ProgrammingError("INSERT", {}, Exception("syntax"))

        loader = PostgresLoader(session, dialect_name="postgresql")
        with pytest.raises(DatabaseError) as exc_info:
            await loader.load(make_records(1))

        assert not isinstance(exc_info.value, DatabaseConnectionError)
        session.execute.assert_called_once()

    def test_is_transient(self):
        assert is_transient(operational_error())
        assert is_transient(ConnectionResetError())
        assert not is_transient(IntegrityError("INSERT", {}, Exception("dup")))
        assert not is_transient(ValueError("nope"))
