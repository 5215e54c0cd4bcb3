"""
Streaming CSV extractor for service-request files with incremental filtering
"""

import pandas as pd
from collections import deque
from typing import Deque, Iterator, List, Optional
from pathlib import Path

from core.exceptions import CSVExtractionError, DecodeError, ExtractionConfigError
from ingestion.transformers.decoder import parse_key, parse_timestamp
from models.base import RunMode
from schemas.service_request import RawRow
from schemas.watermark import Watermark
import logging

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = (
    "unique_key",
    "created_date",
    "closed_date",
    "complaint_type",
    "descriptor",
    "borough",
    "latitude",
    "longitude",
)

DEFAULT_CHUNK_SIZE = 100_000

# Catches a single surplus field; rows with more surplus go through on_bad_lines
OVERFLOW_COLUMN = "__overflow__"

# Overflow value of a line passed back in place by on_bad_lines
BAD_LINE_MARKER = "\x00bad_line\x00"

_READ_ERRORS = (OSError, UnicodeDecodeError, ValueError, pd.errors.ParserError, pd.errors.EmptyDataError)


def normalize_column(name: str) -> str:
    """``" Unique Key"`` -> ``"unique_key"``"""
    return str(name).strip().lower().replace(" ", "_")


class ServiceRequestCSVExtractor:
    """
    Read a delimited file as a lazy sequence of chunks of raw rows.

    Supports:
    - Bounded memory: only one chunk of rows is materialized at a time
    - Header normalization (``Created Date`` -> ``created_date``)
    - Incremental mode: rows at or before the resume watermark are skipped
    - Malformed rows are handed on as RawRow objects, never dropped

    The chunk sequence can be iterated only once.
    """

    def __init__(
        self,
        file_path: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        mode: RunMode = RunMode.FULL,
        watermark: Optional[Watermark] = None,
        delimiter: str = ",",
        encoding: str = "utf-8",
    ):
        if chunk_size is None or chunk_size < 1:
            raise ExtractionConfigError(
                "Chunk size must be a positive integer",
                context={"chunk_size": chunk_size}
            )
        self.file_path = Path(file_path)
        self.chunk_size = chunk_size
        self.mode = RunMode(mode)
        self.watermark = watermark if self.mode == RunMode.INCREMENTAL else None
        self.delimiter = delimiter
        self.encoding = encoding

        self.columns: Optional[List[str]] = None
        self.rows_read = 0
        self.rows_filtered = 0
        self._consumed = False
        self._header_pending = True
        self._bad_line_widths: Deque[int] = deque()

    @property
    def descriptor(self) -> str:
        return str(self.file_path)

    def read_header(self) -> List[str]:
        """
        Read and check the header row.

        Raises:
            CSVExtractionError: If the file cannot be opened or parsed
            ExtractionConfigError: If required columns are missing
        """
        try:
            header = pd.read_csv(
                self.file_path,
                nrows=0,
                sep=self.delimiter,
                encoding=self.encoding,
            )
        except _READ_ERRORS as e:
            raise CSVExtractionError(
                "Cannot open input file",
                context={"file_path": self.descriptor},
                original_exception=e
            )

        columns = [normalize_column(c) for c in header.columns]
        missing = [c for c in REQUIRED_COLUMNS if c not in columns]
        if missing:
            raise ExtractionConfigError(
                "Input header is missing required columns",
                context={"file_path": self.descriptor, "missing_columns": ", ".join(missing)}
            )
        if len(set(columns)) != len(columns):
            raise ExtractionConfigError(
                "Input header has duplicate columns after normalization",
                context={"file_path": self.descriptor, "columns": ", ".join(columns)}
            )

        self.columns = columns
        logger.info(f"Header of {self.file_path} has {len(columns)} columns")
        return columns

    def iter_chunks(self) -> Iterator[List[RawRow]]:
        """
        Yield chunks of RawRow in file order.

        Chunks hold at most ``chunk_size`` rows; rows with too many fields keep
        their place and row number. In incremental mode chunks can shrink (or
        be skipped entirely) after filtering.

        Raises:
            CSVExtractionError: On open failures and mid-stream read errors
        """
        if self._consumed:
            raise CSVExtractionError(
                "Chunk sequence was already consumed",
                context={"file_path": self.descriptor}
            )
        self._consumed = True

        if self.columns is None:
            self.read_header()

        if self.watermark is not None:
            logger.info(
                f"Incremental extraction after created_at={self.watermark.last_created_at}, "
                f"unique_key={self.watermark.last_unique_key}"
            )

        logger.info(f"Streaming {self.file_path} in chunks of {self.chunk_size}")

        # The header line is read as data (and dropped) so the parser never
        # infers an index column from a first row with surplus fields
        try:
            reader = pd.read_csv(
                self.file_path,
                sep=self.delimiter,
                encoding=self.encoding,
                header=None,
                names=self.columns + [OVERFLOW_COLUMN],
                dtype=str,
                keep_default_na=False,
                na_values=[],
                chunksize=self.chunk_size,
                engine="python",
                on_bad_lines=self._collect_bad_line,
            )
        except _READ_ERRORS as e:
            raise CSVExtractionError(
                "Cannot open input file",
                context={"file_path": self.descriptor},
                original_exception=e
            )

        with reader:
            while True:
                size = self.chunk_size + 1 if self._header_pending else self.chunk_size
                try:
                    frame = reader.get_chunk(size)
                except StopIteration:
                    break
                except _READ_ERRORS as e:
                    raise CSVExtractionError(
                        "Read error while streaming input file",
                        context={"file_path": self.descriptor, "rows_read": self.rows_read},
                        original_exception=e
                    )

                chunk = self._to_rows(frame)
                if chunk:
                    yield chunk

        logger.info(
            f"Finished reading {self.file_path}: {self.rows_read} rows read, "
            f"{self.rows_filtered} skipped by watermark"
        )

    def _to_rows(self, frame: pd.DataFrame) -> List[RawRow]:
        records = frame.to_dict(orient="records")
        if self._header_pending:
            records = records[1:]
            self._header_pending = False

        rows: List[RawRow] = []
        for values in records:
            self.rows_read += 1
            overflow = values.pop(OVERFLOW_COLUMN, None)
            if isinstance(overflow, str):
                if overflow == BAD_LINE_MARKER:
                    width = self._bad_line_widths.popleft()
                else:
                    width = len(self.columns) + 1
                rows.append(RawRow(
                    row_number=self.rows_read,
                    values=values,
                    layout_error=f"expected {len(self.columns)} fields, saw {width}"
                ))
                continue
            if not self._passes_watermark(values):
                self.rows_filtered += 1
                continue
            rows.append(RawRow(row_number=self.rows_read, values=values))

        return rows

    def _collect_bad_line(self, fields: List[str]) -> List[str]:
        # The returned list replaces the line in place, so it keeps its row number
        self._bad_line_widths.append(len(fields))
        return fields[:len(self.columns)] + [BAD_LINE_MARKER]

    def _passes_watermark(self, values) -> bool:
        if self.watermark is None:
            return True
        try:
            created_at = parse_timestamp(values.get("created_date"))
            unique_key = parse_key(values.get("unique_key"))
        except DecodeError:
            return True
        if created_at is None:
            return True
        return self.watermark.is_after(created_at, unique_key)
