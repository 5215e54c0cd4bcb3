"""
Load accepted service requests with insert-or-ignore semantics (idempotency)
"""

import asyncio
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from pydantic import BaseModel
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import ConstraintViolationError, DatabaseConnectionError, DatabaseError
from models.service_request import ServiceRequest
from schemas.service_request import ServiceRequestRecord
import logging

logger = logging.getLogger(__name__)

# Rows per INSERT statement; keeps bind parameters under driver limits
STATEMENT_BATCH_SIZE = 1000

_INSERT_BUILDERS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class LoadResult(BaseModel):
    inserted: int = 0
    skipped: int = 0


def is_transient(error: BaseException) -> bool:
    """Connectivity problems worth retrying; everything else is fatal"""
    if isinstance(error, IntegrityError):
        return False
    if isinstance(error, (OperationalError, InterfaceError)):
        return True
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    return isinstance(error, (ConnectionError, TimeoutError))


class PostgresLoader:
    """
    Load a chunk of records into service_requests.

    Ensures:
    - INSERT ... ON CONFLICT (unique_key) DO NOTHING, so rows stored by an
      earlier run are skipped instead of failing or double counting
    - One transaction per chunk: every row of the chunk commits or none does
    - Connectivity failures are retried with exponential backoff; the chunk
      is rolled back before each retry, so a retry replays the whole chunk
    """

    def __init__(
        self,
        db_session: AsyncSession,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        dialect_name: Optional[str] = None,
    ):
        self.db = db_session
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.dialect_name = dialect_name or db_session.bind.dialect.name

        if self.dialect_name not in _INSERT_BUILDERS:
            raise DatabaseError(
                f"Unsupported database dialect: {self.dialect_name}",
                context={"dialect": self.dialect_name}
            )

    def build_statement(self, rows: List[dict]):
        stmt = _INSERT_BUILDERS[self.dialect_name](ServiceRequest).values(rows)
        return stmt.on_conflict_do_nothing(index_elements=["unique_key"]).returning(
            ServiceRequest.unique_key
        )

    async def load(self, records: Sequence[ServiceRequestRecord], chunk_index: int = 0) -> LoadResult:
        """
        Write one chunk with retry on connectivity failures.

        Args:
            records: Accepted, deduplicated records of one chunk
            chunk_index: Position of the chunk in the run (for error context)

        Returns:
            LoadResult with rows actually inserted vs. already present

        Raises:
            DatabaseConnectionError: Connectivity failures after max retries
            ConstraintViolationError: Constraint other than the key conflict
            DatabaseError: Any other database failure
        """
        if not records:
            return LoadResult()

        for attempt in range(self.max_retries):
            try:
                return await self._load_once(records)

            except SQLAlchemyError as e:
                if not is_transient(e):
                    raise self._fatal_error(e, records, chunk_index)

                if attempt < self.max_retries - 1:
                    delay = self.retry_delay * (2 ** attempt)  # Exponential backoff
                    logger.warning(
                        f"Connection error loading chunk {chunk_index}. "
                        f"Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})"
                    )
                    await asyncio.sleep(delay)
                    continue

                raise DatabaseConnectionError(
                    f"Database unreachable after {self.max_retries} attempts",
                    context={
                        "operation": "INSERT",
                        "table_name": ServiceRequest.__tablename__,
                        "chunk_index": chunk_index,
                        "retry_count": attempt + 1,
                    },
                    original_exception=e,
                    max_retries=self.max_retries,
                    retry_delay=self.retry_delay
                )

            except (ConnectionError, TimeoutError) as e:
                if attempt < self.max_retries - 1:
                    delay = self.retry_delay * (2 ** attempt)
                    logger.warning(f"Network error loading chunk {chunk_index}. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue

                raise DatabaseConnectionError(
                    f"Database unreachable after {self.max_retries} attempts",
                    context={"chunk_index": chunk_index, "retry_count": attempt + 1},
                    original_exception=e,
                    max_retries=self.max_retries,
                    retry_delay=self.retry_delay
                )

    async def _load_once(self, records: Sequence[ServiceRequestRecord]) -> LoadResult:
        ingested_at = datetime.now(timezone.utc)
        inserted = 0

        try:
            for start in range(0, len(records), STATEMENT_BATCH_SIZE):
                batch = records[start:start + STATEMENT_BATCH_SIZE]
                rows = [dict(r.to_row(), ingested_at=ingested_at) for r in batch]
                result = await self.db.execute(self.build_statement(rows))
                inserted += len(result.scalars().all())

            await self.db.commit()
        except (Exception, asyncio.CancelledError):
            await self.db.rollback()
            raise

        skipped = len(records) - inserted
        logger.info(f"Loaded chunk: {inserted} inserted, {skipped} already present")
        return LoadResult(inserted=inserted, skipped=skipped)

    def _fatal_error(self, error: SQLAlchemyError, records, chunk_index: int) -> DatabaseError:
        context = {
            "operation": "INSERT",
            "table_name": ServiceRequest.__tablename__,
            "chunk_index": chunk_index,
            "records_to_load": len(records),
        }
        if isinstance(error, IntegrityError):
            return ConstraintViolationError(
                "Constraint violation while loading chunk",
                context=context,
                original_exception=error
            )
        return DatabaseError("Database error while loading chunk", context=context, original_exception=error)
