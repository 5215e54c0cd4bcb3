"""
Decode + validate a chunk on a bounded worker pool, then deduplicate
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from core.exceptions import TransformationError
from ingestion.transformers.decoder import RecordDecoder
from ingestion.transformers.deduplicator import Deduplicator
from ingestion.transformers.validator import ServiceRequestValidator
from schemas.service_request import Accepted, RawRow, Rejected, ServiceRequestRecord
import logging

logger = logging.getLogger(__name__)


class PartialResult(BaseModel):
    """What one worker produced for its slice of a chunk"""

    accepted: List[ServiceRequestRecord] = Field(default_factory=list)
    rejected: List[Rejected] = Field(default_factory=list)


class ChunkResult(BaseModel):
    """Merged outcome for one chunk, after deduplication"""

    rows: int = 0
    accepted: List[ServiceRequestRecord] = Field(default_factory=list)
    rejected: List[Rejected] = Field(default_factory=list)
    duplicated: int = 0

    def rejected_by_reason(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for rejection in self.rejected:
            counts[rejection.reason.value] = counts.get(rejection.reason.value, 0) + 1
        return counts


class ChunkProcessor:
    """
    Partition a chunk of raw rows into accepted and rejected records.

    Decode and validation are stateless per row, so the chunk is split into
    one contiguous slice per worker. Each worker returns its own
    PartialResult; the chunk owner merges them in slice order (no shared
    counters) and only then runs the run-scoped Deduplicator, sequentially,
    so first-seen-wins is decided by source order.
    """

    def __init__(
        self,
        deduplicator: Deduplicator,
        workers: int = 4,
        decoder: Optional[RecordDecoder] = None,
        validator: Optional[ServiceRequestValidator] = None,
    ):
        self.deduplicator = deduplicator
        self.workers = max(1, workers)
        self.decoder = decoder or RecordDecoder()
        self.validator = validator or ServiceRequestValidator()
        self._executor: Optional[ThreadPoolExecutor] = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def process_slice(self, rows: Sequence[RawRow]) -> PartialResult:
        partial = PartialResult()
        for row in rows:
            decoded = self.decoder.decode(row)
            if isinstance(decoded, Rejected):
                partial.rejected.append(decoded)
                continue
            outcome = self.validator.validate(decoded, row)
            if isinstance(outcome, Accepted):
                partial.accepted.append(outcome.record)
            else:
                partial.rejected.append(outcome)
        return partial

    async def process(self, chunk: Sequence[RawRow]) -> ChunkResult:
        slices = self._split(chunk)

        if len(slices) <= 1:
            partials = [self.process_slice(s) for s in slices]
        else:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.workers, thread_name_prefix="chunk-worker"
                )
            loop = asyncio.get_running_loop()
            try:
                partials = await asyncio.gather(*[
                    loop.run_in_executor(self._executor, self.process_slice, s) for s in slices
                ])
            except Exception as e:
                raise TransformationError(
                    "Worker failed while decoding/validating chunk",
                    context={"rows": len(chunk), "workers": self.workers},
                    original_exception=e
                )

        result = ChunkResult(rows=len(chunk))
        candidates: List[ServiceRequestRecord] = []
        for partial in partials:
            candidates.extend(partial.accepted)
            result.rejected.extend(partial.rejected)

        result.accepted, result.duplicated = self.deduplicator.filter(candidates)

        logger.debug(
            f"Chunk processed: {result.rows} rows, {len(result.accepted)} accepted, "
            f"{len(result.rejected)} rejected, {result.duplicated} duplicates"
        )
        return result

    def _split(self, chunk: Sequence[RawRow]) -> List[Sequence[RawRow]]:
        if not chunk:
            return []
        size = -(-len(chunk) // self.workers)
        return [chunk[i:i + size] for i in range(0, len(chunk), size)]
