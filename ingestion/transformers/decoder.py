"""
Decode raw CSV rows into typed service-request candidates
"""

from datetime import datetime, timezone
from typing import Any, Optional, Union

from core.exceptions import DecodeError
from schemas.service_request import RawRow, Rejected, RejectReason, ServiceRequestCandidate

# Naive formats seen in 311 exports; all are interpreted as UTC
DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%m/%d/%Y %I:%M:%S %p",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
)

ABSENT_BOROUGH_VALUES = {"", "UNSPECIFIED"}

# unique_key is stored as BIGINT
KEY_MIN = -(2 ** 63)
KEY_MAX = 2 ** 63 - 1


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp cell into an aware UTC datetime.

    Empty cells are absent (None). Raises DecodeError for text that matches
    none of the recognized encodings.
    """
    text = _clean(value)
    if text is None:
        return None

    for fmt in DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue

    # ISO-8601 with an explicit offset or trailing Z
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        raise DecodeError(f"Unrecognized timestamp: {text!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_key(value: Any) -> Optional[int]:
    """Parse unique_key; accepts integral floats such as ``"100001.0"``"""
    text = _clean(value)
    if text is None:
        return None
    try:
        key = int(text)
    except ValueError:
        try:
            number = float(text)
        except ValueError:
            raise DecodeError(f"Invalid unique_key: {text!r}")
        if not number.is_integer():
            raise DecodeError(f"Invalid unique_key: {text!r}")
        key = int(number)
    if not KEY_MIN <= key <= KEY_MAX:
        raise DecodeError(f"unique_key out of range: {text!r}")
    return key


def parse_coordinate(value: Any) -> Optional[float]:
    text = _clean(value)
    if text is None:
        return None
    try:
        number = float(text)
    except ValueError:
        raise DecodeError(f"Invalid coordinate: {text!r}")
    if number != number or number in (float("inf"), float("-inf")):
        raise DecodeError(f"Invalid coordinate: {text!r}")
    return number


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class RecordDecoder:
    """
    Convert one RawRow into a ServiceRequestCandidate or a decode rejection.

    Pure and stateless: safe to call from several worker threads at once.
    """

    FIELDS = (
        "unique_key", "created_date", "closed_date", "complaint_type",
        "descriptor", "borough", "latitude", "longitude",
    )

    def decode(self, row: RawRow) -> Union[ServiceRequestCandidate, Rejected]:
        if row.layout_error:
            return Rejected(row=row, reason=RejectReason.COLUMN_COUNT_MISMATCH, detail=row.layout_error)

        # Short rows are padded with non-string placeholders by the reader
        short = [name for name in self.FIELDS if not isinstance(row.values.get(name), str)]
        if short:
            return Rejected(
                row=row,
                reason=RejectReason.COLUMN_COUNT_MISMATCH,
                detail=f"row is missing fields: {', '.join(short)}"
            )

        values = row.values
        try:
            unique_key = parse_key(values["unique_key"])
        except DecodeError as e:
            return Rejected(row=row, reason=RejectReason.INVALID_UNIQUE_KEY, detail=e.message)

        try:
            created_at = parse_timestamp(values["created_date"])
        except DecodeError as e:
            return Rejected(row=row, reason=RejectReason.INVALID_CREATED_AT, detail=e.message)

        try:
            closed_at = parse_timestamp(values["closed_date"])
        except DecodeError as e:
            return Rejected(row=row, reason=RejectReason.INVALID_CLOSED_AT, detail=e.message)

        try:
            latitude = parse_coordinate(values["latitude"])
            longitude = parse_coordinate(values["longitude"])
        except DecodeError as e:
            return Rejected(row=row, reason=RejectReason.INVALID_COORDINATE, detail=e.message)

        borough = (_clean(values["borough"]) or "").upper()

        return ServiceRequestCandidate(
            row_number=row.row_number,
            unique_key=unique_key,
            created_at=created_at,
            closed_at=closed_at,
            complaint_type=_clean(values["complaint_type"]),
            descriptor=_clean(values["descriptor"]),
            borough=None if borough in ABSENT_BOROUGH_VALUES else borough,
            latitude=latitude,
            longitude=longitude,
        )
