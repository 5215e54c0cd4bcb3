from sqlalchemy import (
    Column, BigInteger, String, Text, DateTime, Float, Index, CheckConstraint, func
)
from models.base import Base, Borough

_BOROUGH_LIST = ", ".join(f"'{b.value}'" for b in Borough)


class ServiceRequest(Base):
    """
    Primary fact table: one row per 311 service request.

    Design:
    - unique_key is the natural key from the source and the conflict target
      for idempotent loads (INSERT ... ON CONFLICT DO NOTHING)
    - ingested_at records when the row was first written
    - Check constraints mirror the validator so bad rows cannot slip in
      through another writer
    """
    __tablename__ = "service_requests"

    unique_key = Column(BigInteger, primary_key=True, autoincrement=False)

    created_at = Column(DateTime(timezone=True), nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    complaint_type = Column(Text, nullable=False)
    descriptor = Column(Text, nullable=True)
    borough = Column(String(20), nullable=True)

    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    ingested_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint("unique_key > 0", name="ck_service_requests_unique_key_positive"),
        CheckConstraint(
            f"borough IS NULL OR borough IN ({_BOROUGH_LIST})",
            name="ck_service_requests_borough"
        ),
        CheckConstraint(
            "closed_at IS NULL OR closed_at >= created_at",
            name="ck_service_requests_closed_after_created"
        ),
        CheckConstraint(
            "(latitude IS NULL) = (longitude IS NULL)",
            name="ck_service_requests_coordinates_paired"
        ),
        Index("idx_service_requests_created_at", "created_at"),
        Index("idx_service_requests_borough", "borough"),
        Index("idx_service_requests_complaint_type", "complaint_type"),
        Index("idx_service_requests_ingested_at", "ingested_at"),
    )
