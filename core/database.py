"""
Database engine/session management with SQLAlchemy async
"""

from typing import Optional
from sqlalchemy import select, func, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from core.config import settings
from models.base import Base
from models.service_request import ServiceRequest
from models.views import MATERIALIZED_VIEWS
import models.watermark  # noqa: F401
import logging

logger = logging.getLogger(__name__)


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create the async engine for the configured database"""
    url = database_url or settings.DATABASE_URL
    kwargs = {"echo": False, "future": True}
    if url.startswith("postgresql"):
        kwargs["pool_size"] = settings.DB_MAX_CONNECTIONS
        kwargs["pool_pre_ping"] = True
    return create_async_engine(url, **kwargs)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    """Create session factory bound to ``engine``"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


async def init_schema(engine: AsyncEngine) -> None:
    """
    Create tables, indexes and (on PostgreSQL) materialized views.

    Safe to run repeatedly: every statement is IF NOT EXISTS.
    """
    async with engine.begin() as conn:
        logger.info("Creating tables...")
        await conn.run_sync(Base.metadata.create_all)

        if engine.dialect.name == "postgresql":
            for view in MATERIALIZED_VIEWS:
                logger.info(f"Creating materialized view {view.name}")
                await conn.execute(text(view.create_sql))
                await conn.execute(text(view.unique_index_sql))
        else:
            logger.warning(
                f"Dialect {engine.dialect.name} has no materialized views; "
                f"derived views were not created"
            )

    logger.info("Schema initialized successfully.")


async def health_check(engine: AsyncEngine) -> bool:
    """Return True when the database answers a trivial query"""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")
        return False


async def count_service_requests(session: AsyncSession) -> int:
    """Total rows currently stored in service_requests"""
    result = await session.execute(select(func.count()).select_from(ServiceRequest))
    return int(result.scalar_one())
