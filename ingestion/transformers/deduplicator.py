"""
Run-scoped duplicate detection by unique_key
"""

from typing import Iterable, List, Set, Tuple

from schemas.service_request import ServiceRequestRecord
import logging

logger = logging.getLogger(__name__)


class Deduplicator:
    """
    Remember every unique_key accepted during the current run.

    First-seen wins: a later record with a key already in the set is dropped.
    Only guards duplicates inside one run; keys stored by earlier runs are
    handled by the loader's ON CONFLICT DO NOTHING. The set lives and dies
    with the run and is never persisted.
    """

    def __init__(self):
        self._seen: Set[int] = set()

    def is_duplicate(self, key: int) -> bool:
        """Record ``key`` and report whether it had been seen already"""
        if key in self._seen:
            return True
        self._seen.add(key)
        return False

    def filter(self, records: Iterable[ServiceRequestRecord]) -> Tuple[List[ServiceRequestRecord], int]:
        """Return (unique records in input order, number of duplicates dropped)"""
        unique: List[ServiceRequestRecord] = []
        duplicates = 0
        for record in records:
            if self.is_duplicate(record.unique_key):
                duplicates += 1
                logger.debug(f"Duplicate unique_key={record.unique_key} dropped")
                continue
            unique.append(record)
        return unique, duplicates

    @property
    def unique_count(self) -> int:
        return len(self._seen)

    def clear(self) -> None:
        self._seen.clear()
        logger.debug("Deduplicator cleared")
