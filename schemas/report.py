"""
Pydantic schemas for run counts and the machine-readable run report
"""

from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from models.base import RunMode
from schemas.watermark import Watermark


class RunCounts(BaseModel):
    """Row counts accumulated over a run"""

    extracted: int = 0
    accepted: int = 0
    rejected: int = 0
    duplicated: int = 0
    inserted: int = 0
    skipped_existing: int = 0
    filtered_by_watermark: int = 0
    rejected_by_reason: Dict[str, int] = Field(default_factory=dict)

    def merge(self, other: "RunCounts") -> None:
        self.extracted += other.extracted
        self.accepted += other.accepted
        self.rejected += other.rejected
        self.duplicated += other.duplicated
        self.inserted += other.inserted
        self.skipped_existing += other.skipped_existing
        self.filtered_by_watermark += other.filtered_by_watermark
        for reason, count in other.rejected_by_reason.items():
            self.rejected_by_reason[reason] = self.rejected_by_reason.get(reason, 0) + count


class RefreshOutcome(BaseModel):
    """Result of refreshing the derived views"""

    status: str  # "refreshed", "skipped", "failed", "not_run"
    concurrently: bool = False
    views: List[str] = Field(default_factory=list)
    failed_views: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class RunReport(BaseModel):
    """Final summary emitted once per run, whatever its outcome"""

    run_id: UUID
    mode: RunMode
    input: str
    dry_run: bool = False
    status: str  # "completed", "partial", "failed"
    exit_code: int = 0
    counts: RunCounts
    chunks: int = 0
    stage_durations_seconds: Dict[str, float] = Field(default_factory=dict)
    started_at: datetime
    finished_at: datetime
    watermark: Optional[Watermark] = None
    refresh: RefreshOutcome = Field(default_factory=lambda: RefreshOutcome(status="not_run"))
    error: Optional[Dict[str, object]] = None
