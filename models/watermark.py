from sqlalchemy import Column, Integer, BigInteger, Enum, DateTime, Text, Index, Uuid, func
from models.base import Base, RunMode, RunStatus, enum_values


class ETLWatermark(Base):
    """
    Tracks one ETL run per row.

    Purpose:
    - Resume incremental loads from the last completed run
    - Detect crashed runs (rows left in ``running``)
    - Audit trail of counts and outcomes (rows are never deleted)

    Design:
    - last_created_at / last_unique_key are written only when a run completes
    - failed runs keep their counts and error message but no progress markers
    """
    __tablename__ = "etl_watermarks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Uuid, unique=True, nullable=False)

    run_mode = Column(
        Enum(RunMode, native_enum=False, values_callable=enum_values, length=20),
        nullable=False
    )
    input_path = Column(Text, nullable=True)

    # Progress markers
    last_created_at = Column(DateTime(timezone=True), nullable=True)
    last_unique_key = Column(BigInteger, nullable=True)

    # Statistics
    rows_processed = Column(BigInteger, nullable=False, default=0)
    rows_inserted = Column(BigInteger, nullable=False, default=0)
    rows_duplicated = Column(BigInteger, nullable=False, default=0)
    rows_rejected = Column(BigInteger, nullable=False, default=0)
    rows_skipped = Column(BigInteger, nullable=False, default=0)

    # Lifecycle
    started_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(
        Enum(RunStatus, native_enum=False, values_callable=enum_values, length=20),
        nullable=False,
        default=RunStatus.RUNNING
    )
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_etl_watermarks_status_completed", "status", "completed_at"),
        Index("idx_etl_watermarks_started_at", "started_at"),
    )
