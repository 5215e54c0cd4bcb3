"""
ETL pipeline components for NYC 311 service-request ingestion.

Modules:
    runner: Orchestrator for the chunked extract, transform, load loop
    watermark: Run lifecycle rows and incremental resume points
    run_lock: Run-level mutual exclusion (PostgreSQL advisory lock)
    views: Materialized view refresh
    reporter: Stage timings, counts and the final run report
    quarantine: JSON Lines output for rejected rows
    scheduler: APScheduler integration for periodic incremental runs
    cli: Command line entry point (``civic311``)

Subpackages:
    extractors: Streaming CSV extractor
    transformers: Decoder, validator, deduplicator and chunk processor
    loaders: Insert-or-ignore loader with per-chunk transactions

Architecture:
    Chunks flow strictly in source order:

    1. Extract - Read the next chunk of raw rows (pandas, bounded memory)
    2. Transform - Decode and validate on a worker pool, then deduplicate
    3. Load - INSERT ... ON CONFLICT DO NOTHING, one transaction per chunk

    The watermark advances in memory after each committed chunk and is
    persisted once, when the run completes.

Usage:
    from core.database import create_engine
    from ingestion.runner import ETLRunner

    runner = ETLRunner(create_engine())
    report = await runner.run("311.csv", mode="incremental")
    print(report.counts.inserted)
"""

__all__ = [
    "cli",
    "quarantine",
    "reporter",
    "run_lock",
    "runner",
    "scheduler",
    "views",
    "watermark",
]
