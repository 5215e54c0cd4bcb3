"""
Pydantic schemas for data validation and serialization.

This package defines the typed records exchanged between pipeline stages:

Schemas:
    service_request: Raw rows, decoded candidates, accepted records and
        validation outcomes with their rejection reasons
    watermark: In-memory snapshot of a run's watermark row
    report: Run counts, refresh outcome and the final run report

Usage:
    from schemas.service_request import RawRow, ServiceRequestRecord, RejectReason
    from schemas.watermark import Watermark
    from schemas.report import RunReport, RunCounts
"""

__all__ = [
    "service_request",
    "watermark",
    "report",
]
