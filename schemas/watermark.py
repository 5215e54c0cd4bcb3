"""
In-memory watermark record shared (read-only) with the pipeline stages
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from models.base import RunMode, RunStatus


class Watermark(BaseModel):
    """
    Snapshot of one run's row in etl_watermarks.

    Only WatermarkTracker mutates instances; ``version`` increases every time
    the progress markers advance so readers can tell snapshots apart.
    """

    model_config = ConfigDict(from_attributes=True)

    run_id: UUID
    run_mode: RunMode
    status: RunStatus = RunStatus.RUNNING
    input_path: Optional[str] = None

    last_created_at: Optional[datetime] = None
    last_unique_key: Optional[int] = None

    rows_processed: int = 0
    rows_inserted: int = 0
    rows_duplicated: int = 0
    rows_rejected: int = 0
    rows_skipped: int = 0

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    version: int = 0

    def is_after(self, created_at: datetime, unique_key: Optional[int]) -> bool:
        """
        True when (created_at, unique_key) lies strictly past this watermark.

        A watermark without a timestamp admits everything. At the boundary
        timestamp the key breaks the tie; an unknown key at the boundary is
        admitted so the decoder can reject it.
        """
        if self.last_created_at is None:
            return True
        if created_at != self.last_created_at:
            return created_at > self.last_created_at
        if self.last_unique_key is None:
            return False
        if unique_key is None:
            return True
        return unique_key > self.last_unique_key
