"""
Business-rule validation for decoded service-request candidates
"""

from typing import List, Optional, Tuple

from models.base import Borough
from schemas.service_request import (
    Accepted, RawRow, Rejected, RejectReason, ServiceRequestCandidate, ServiceRequestRecord,
)

# NYC bounding box, inclusive on every edge
LATITUDE_BOUNDS = (40.4, 41.2)
LONGITUDE_BOUNDS = (-74.3, -73.4)

BOROUGHS = {b.value for b in Borough}

Violation = Tuple[RejectReason, str]


class ServiceRequestValidator:
    """
    Apply the acceptance rules to a candidate, in order:

    1. required fields (unique_key present and positive, created_at,
       non-empty complaint_type)
    2. borough whitelist, when a borough is present
    3. coordinates paired and inside the bounding box, when present
    4. closed_at not earlier than created_at

    Only the first violation is reported by ``validate``; ``evaluate_all``
    returns every violation for diagnostics. No side effects.
    """

    def validate(self, candidate: ServiceRequestCandidate, row: RawRow):
        for rule in self._rules():
            violation = rule(candidate)
            if violation:
                reason, detail = violation
                return Rejected(row=row, reason=reason, detail=detail)

        return Accepted(
            row_number=candidate.row_number,
            record=ServiceRequestRecord(
                unique_key=candidate.unique_key,
                created_at=candidate.created_at,
                closed_at=candidate.closed_at,
                complaint_type=candidate.complaint_type,
                descriptor=candidate.descriptor,
                borough=Borough(candidate.borough) if candidate.borough else None,
                latitude=candidate.latitude,
                longitude=candidate.longitude,
            )
        )

    def evaluate_all(self, candidate: ServiceRequestCandidate) -> List[Violation]:
        return [v for v in (rule(candidate) for rule in self._rules()) if v]

    def _rules(self):
        return (
            self.check_required_fields,
            self.check_borough,
            self.check_coordinates,
            self.check_date_order,
        )

    @staticmethod
    def check_required_fields(candidate: ServiceRequestCandidate) -> Optional[Violation]:
        if candidate.unique_key is None:
            return RejectReason.MISSING_REQUIRED_FIELD, "unique_key is required"
        if candidate.unique_key <= 0:
            return RejectReason.NON_POSITIVE_UNIQUE_KEY, f"unique_key must be positive, got {candidate.unique_key}"
        if candidate.created_at is None:
            return RejectReason.MISSING_REQUIRED_FIELD, "created_date is required"
        if not candidate.complaint_type or not candidate.complaint_type.strip():
            return RejectReason.MISSING_REQUIRED_FIELD, "complaint_type cannot be empty"
        return None

    @staticmethod
    def check_borough(candidate: ServiceRequestCandidate) -> Optional[Violation]:
        if candidate.borough is not None and candidate.borough not in BOROUGHS:
            return RejectReason.INVALID_BOROUGH, f"unknown borough {candidate.borough!r}"
        return None

    @staticmethod
    def check_coordinates(candidate: ServiceRequestCandidate) -> Optional[Violation]:
        lat, lon = candidate.latitude, candidate.longitude
        if lat is None and lon is None:
            return None
        if lat is None or lon is None:
            return RejectReason.UNPAIRED_COORDINATES, f"latitude={lat}, longitude={lon}"
        if not (LATITUDE_BOUNDS[0] <= lat <= LATITUDE_BOUNDS[1]) or \
                not (LONGITUDE_BOUNDS[0] <= lon <= LONGITUDE_BOUNDS[1]):
            return RejectReason.COORDINATES_OUT_OF_BOUNDS, f"coordinates out of NYC bounds: ({lat}, {lon})"
        return None

    @staticmethod
    def check_date_order(candidate: ServiceRequestCandidate) -> Optional[Violation]:
        if candidate.closed_at is not None and candidate.created_at is not None \
                and candidate.closed_at < candidate.created_at:
            return (
                RejectReason.CLOSED_BEFORE_CREATED,
                f"closed_at {candidate.closed_at.isoformat()} precedes created_at {candidate.created_at.isoformat()}"
            )
        return None
