"""
Write rejected rows to a per-run JSON Lines file for later inspection
"""

from pathlib import Path
from typing import IO, Iterable, Optional
from uuid import UUID

from pydantic import BaseModel

from schemas.service_request import Rejected
import logging

logger = logging.getLogger(__name__)


class QuarantineEntry(BaseModel):
    row_number: int
    reason: str
    detail: Optional[str] = None
    values: dict


class QuarantineWriter:
    """
    Append rejected rows to ``<bad_rows_dir>/<run_id>.jsonl``.

    The file is created lazily on the first rejection, so clean runs leave
    nothing behind. A write failure disables the writer for the rest of the
    run; rejections are still counted in the run report.
    """

    def __init__(self, bad_rows_dir: str, run_id: UUID):
        self.path = Path(bad_rows_dir) / f"{run_id}.jsonl"
        self.written = 0
        self.disabled = False
        self._handle: Optional[IO[str]] = None

    def write(self, rejected: Iterable[Rejected]) -> int:
        if self.disabled:
            return 0
        count = 0
        try:
            for rejection in rejected:
                if self._handle is None:
                    self.path.parent.mkdir(parents=True, exist_ok=True)
                    self._handle = self.path.open("a", encoding="utf-8")
                entry = QuarantineEntry(
                    row_number=rejection.row.row_number,
                    reason=rejection.reason.value,
                    detail=rejection.detail,
                    values={k: v if isinstance(v, str) else None for k, v in rejection.row.values.items()},
                )
                self._handle.write(entry.model_dump_json() + "\n")
                count += 1
        except OSError as e:
            logger.warning(f"Could not write rejected rows to {self.path}: {e}; quarantine disabled for this run")
            self.disabled = True
            self._close_handle()
        self.written += count
        return count

    def close(self) -> None:
        if self._handle is not None:
            self._close_handle()
            logger.info(f"Quarantined {self.written} rows to {self.path}")

    def _close_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            handle.close()
        except OSError as e:
            logger.warning(f"Could not close {self.path}: {e}")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
