"""
Core utilities and configuration for the service-request ETL system.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Engine/session factories, schema initialization, health checks
    exceptions: Custom exception hierarchy and process exit codes
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import create_engine, create_session_maker
    from core.exceptions import ExtractionError, LoadError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    engine = create_engine()
    async with create_session_maker(engine)() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "config",
    "database",
    "exceptions",
    "logging",
]
