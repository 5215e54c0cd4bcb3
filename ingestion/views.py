"""
Refresh of the derived materialized views after a load
"""

from typing import Iterable, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import RefreshError
from models.views import MATERIALIZED_VIEWS, MaterializedView
from schemas.report import RefreshOutcome
import logging

logger = logging.getLogger(__name__)


def refresh_statement(view: MaterializedView, concurrently: bool) -> str:
    keyword = "CONCURRENTLY " if concurrently else ""
    return f"REFRESH MATERIALIZED VIEW {keyword}{view.name}"


class ViewRefresher:
    """
    Recompute every derived view from service_requests.

    Concurrent refresh keeps the views readable while they rebuild (needs the
    unique index each view carries); blocking refresh locks readers out but
    is faster. Every view is attempted even when an earlier one fails.
    Refresh failures never undo committed loads.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        views: Optional[Iterable[MaterializedView]] = None,
        dialect_name: Optional[str] = None,
    ):
        self.db = db_session
        self.views = list(views) if views is not None else list(MATERIALIZED_VIEWS)
        self.dialect_name = dialect_name or db_session.bind.dialect.name

    async def refresh(self, concurrently: bool = True, raise_on_failure: bool = False) -> RefreshOutcome:
        """
        Refresh all views, each in its own transaction.

        Args:
            concurrently: Use REFRESH ... CONCURRENTLY
            raise_on_failure: Raise RefreshError instead of returning a failed outcome

        Returns:
            RefreshOutcome with status refreshed, skipped or failed
        """
        names = [view.name for view in self.views]

        if self.dialect_name != "postgresql":
            logger.warning(f"Dialect {self.dialect_name} has no materialized views; refresh skipped")
            return RefreshOutcome(status="skipped", concurrently=concurrently, views=names)

        failed = []
        last_error: Optional[SQLAlchemyError] = None
        for view in self.views:
            mode = "concurrently" if concurrently else "blocking"
            logger.info(f"Refreshing {view.name} ({mode})")
            try:
                await self.db.execute(text(refresh_statement(view, concurrently)))
                await self.db.commit()
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.error(f"Refresh of {view.name} failed: {e}")
                failed.append(view.name)
                last_error = e

        if not failed:
            logger.info(f"Refreshed {len(names)} views")
            return RefreshOutcome(status="refreshed", concurrently=concurrently, views=names)

        outcome = RefreshOutcome(
            status="failed",
            concurrently=concurrently,
            views=names,
            failed_views=failed,
            error=str(last_error),
        )
        if raise_on_failure:
            raise RefreshError(
                "Materialized view refresh failed",
                context={"failed_views": ", ".join(failed), "concurrently": concurrently},
                original_exception=last_error
            )
        return outcome
