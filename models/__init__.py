"""
SQLAlchemy ORM models for database tables.

This package defines the fixed schema contract of the pipeline:

Models:
    base: Base declarative class and shared enums (RunMode, RunStatus, Borough)
    service_request: Primary fact table keyed on unique_key
    watermark: One row per ETL run (progress markers, counts, status)
    views: Materialized view DDL for derived aggregates

Database Schema:
    Tables are created with ``Base.metadata.create_all``; the materialized
    views are PostgreSQL-only and created from raw DDL by ``db init``.

Usage:
    from models.service_request import ServiceRequest
    from models.watermark import ETLWatermark
    from models.base import RunMode, RunStatus, Borough
"""

__all__ = [
    "base",
    "service_request",
    "watermark",
    "views",
]
