"""
Pydantic schemas for service-request rows as they move through the pipeline
"""

import enum
from datetime import datetime
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from models.base import Borough


class RejectReason(str, enum.Enum):
    """Closed set of row-level rejection reasons"""

    # Decode (type coercion / layout)
    COLUMN_COUNT_MISMATCH = "column_count_mismatch"
    INVALID_UNIQUE_KEY = "invalid_unique_key"
    INVALID_CREATED_AT = "invalid_created_at"
    INVALID_CLOSED_AT = "invalid_closed_at"
    INVALID_COORDINATE = "invalid_coordinate"

    # Validation (business rules)
    MISSING_REQUIRED_FIELD = "missing_required_field"
    NON_POSITIVE_UNIQUE_KEY = "non_positive_unique_key"
    INVALID_BOROUGH = "invalid_borough"
    UNPAIRED_COORDINATES = "unpaired_coordinates"
    COORDINATES_OUT_OF_BOUNDS = "coordinates_out_of_bounds"
    CLOSED_BEFORE_CREATED = "closed_before_created"


class RawRow(BaseModel):
    """
    One row as read from the input file.

    ``values`` maps normalized column names to the cell text. Cells missing
    from a short row are not strings; ``layout_error`` is set for rows with
    more fields than the header.
    """

    row_number: int
    values: Dict[str, Any]
    layout_error: Optional[str] = None


class ServiceRequestCandidate(BaseModel):
    """Decoded, typed row that has not been validated yet"""

    row_number: int
    unique_key: Optional[int] = None
    created_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    complaint_type: Optional[str] = None
    descriptor: Optional[str] = None
    borough: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class ServiceRequestRecord(BaseModel):
    """
    Accepted record ready for loading.

    Only the validator builds these, so every instance satisfies the
    borough, coordinate and date-order invariants.
    """

    model_config = ConfigDict(frozen=True)

    unique_key: int = Field(..., gt=0)
    created_at: datetime
    closed_at: Optional[datetime] = None
    complaint_type: str = Field(..., min_length=1)
    descriptor: Optional[str] = None
    borough: Optional[Borough] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def progress_key(self):
        """Ordering used for watermark progress markers"""
        return (self.created_at, self.unique_key)

    def to_row(self) -> Dict[str, Any]:
        """Column mapping for the service_requests insert"""
        return {
            "unique_key": self.unique_key,
            "created_at": self.created_at,
            "closed_at": self.closed_at,
            "complaint_type": self.complaint_type,
            "descriptor": self.descriptor,
            "borough": self.borough.value if self.borough else None,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


class Accepted(BaseModel):
    outcome: Literal["accepted"] = "accepted"
    row_number: int
    record: ServiceRequestRecord


class Rejected(BaseModel):
    outcome: Literal["rejected"] = "rejected"
    row: RawRow
    reason: RejectReason
    detail: str = ""

    model_config = ConfigDict(use_enum_values=False)


ValidationOutcome = Union[Accepted, Rejected]
