"""
Run-level mutual exclusion using a PostgreSQL session advisory lock
"""

from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from core.config import settings
from core.exceptions import ConcurrentRunError, WatermarkError
import logging

logger = logging.getLogger(__name__)


class RunLock:
    """
    At most one pipeline run per database.

    The lock lives on a dedicated connection held for the whole run, so it is
    released when the run ends or when the process dies and the connection
    drops. Backends without advisory locks rely on the ``running`` watermark
    check alone.

    Usage:
        async with RunLock(engine):
            ...
    """

    def __init__(self, engine: AsyncEngine, key: Optional[int] = None):
        self.engine = engine
        self.key = settings.ETL_LOCK_KEY if key is None else key
        self._conn: Optional[AsyncConnection] = None
        self.acquired = False

    @property
    def supported(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    async def acquire(self) -> None:
        """
        Raises:
            ConcurrentRunError: If another process holds the lock
            WatermarkError: If the lock cannot be queried
        """
        if not self.supported:
            logger.debug(f"Advisory locks unavailable on {self.engine.dialect.name}; skipping run lock")
            return

        try:
            self._conn = await self.engine.connect()
            result = await self._conn.execute(
                text("SELECT pg_try_advisory_lock(:key)"), {"key": self.key}
            )
            acquired = bool(result.scalar())
            # Session-level lock survives the commit; don't idle in a transaction
            await self._conn.commit()
        except SQLAlchemyError as e:
            await self._close()
            raise WatermarkError(
                "Failed to acquire run lock",
                context={"lock_key": self.key, "operation": "lock"},
                original_exception=e
            )

        if not acquired:
            await self._close()
            raise ConcurrentRunError(
                "Another pipeline run is in progress",
                context={"lock_key": self.key}
            )

        self.acquired = True
        logger.info(f"Run lock {self.key} acquired")

    async def release(self) -> None:
        if self._conn is None:
            return
        try:
            if self.acquired:
                await self._conn.execute(
                    text("SELECT pg_advisory_unlock(:key)"), {"key": self.key}
                )
                await self._conn.commit()
                logger.info(f"Run lock {self.key} released")
        except SQLAlchemyError as e:
            # Closing the connection releases the lock anyway
            logger.warning(f"Explicit unlock failed, closing lock connection: {e}")
        finally:
            self.acquired = False
            await self._close()

    async def _close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "RunLock":
        await self.acquire()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.release()
