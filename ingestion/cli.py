"""
Command line for the service-request pipeline.

Usage:
    civic311 run --mode full|incremental --input <path> [options]
    civic311 db init
    civic311 db refresh [--concurrently]
    civic311 db health
    civic311 report last-run
    civic311 runs list [--limit N]
    civic311 runs resolve <run_id>
    civic311 schedule --input <path> [--interval-minutes N]

Run reports and query results are printed to stdout as JSON; logs go to
stderr. The process exit code follows core.exceptions.ExitCode.
"""

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from core.config import settings
from core.database import count_service_requests, create_engine, create_session_maker, health_check, init_schema
from core.exceptions import DatabaseError, ETLException, ExitCode
from core.logging import setup_logging
from ingestion.runner import ETLRunner
from ingestion.scheduler import ETLScheduler
from ingestion.views import ViewRefresher
from ingestion.watermark import WatermarkTracker
from models.base import RunMode
import logging

logger = logging.getLogger(__name__)


def emit_json(payload) -> None:
    if hasattr(payload, "model_dump_json"):
        print(payload.model_dump_json(indent=2))
    else:
        print(json.dumps(payload, indent=2, default=str))


def install_signal_handlers(callback: Callable[[], None]) -> None:
    """Route SIGINT/SIGTERM to ``callback`` instead of raising KeyboardInterrupt"""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, callback)
        except (NotImplementedError, RuntimeError):
            # Event loops on Windows have no signal handler support
            logger.debug(f"Cannot install handler for {sig.name}")


# ============================================================================
# Commands
# ============================================================================

async def run_command(args) -> int:
    engine = create_engine(args.database_url)
    runner = ETLRunner(
        engine,
        workers=args.workers,
        refresh_views=not args.no_refresh,
        refresh_concurrently=not args.blocking_refresh,
    )
    install_signal_handlers(runner.request_stop)

    try:
        report = await runner.run(
            args.input,
            mode=RunMode(args.mode),
            chunk_size=args.chunk_size,
            dry_run=args.dry_run,
        )
        emit_json(report)
        return report.exit_code
    except ETLException as e:
        if runner.last_report is not None:
            emit_json(runner.last_report)
        else:
            emit_json({"status": "failed", "error": e.to_dict()})
        return e.exit_code
    finally:
        await engine.dispose()


async def db_init_command(args) -> int:
    engine = create_engine(args.database_url)
    try:
        await init_schema(engine)
        emit_json({"status": "initialized"})
        return ExitCode.SUCCESS
    except SQLAlchemyError as e:
        error = DatabaseError("Schema initialization failed", context={"operation": "CREATE"}, original_exception=e)
        logger.error(str(error))
        emit_json({"status": "failed", "error": error.to_dict()})
        return error.exit_code
    finally:
        await engine.dispose()


async def db_refresh_command(args) -> int:
    engine = create_engine(args.database_url)
    try:
        async with create_session_maker(engine)() as session:
            outcome = await ViewRefresher(session).refresh(
                concurrently=args.concurrently, raise_on_failure=True
            )
        emit_json(outcome)
        return ExitCode.SUCCESS
    except ETLException as e:
        emit_json({"status": "failed", "error": e.to_dict()})
        return e.exit_code
    finally:
        await engine.dispose()


async def db_health_command(args) -> int:
    engine = create_engine(args.database_url)
    try:
        healthy = await health_check(engine)
        emit_json({"database": "ok" if healthy else "unreachable"})
        return ExitCode.SUCCESS if healthy else ExitCode.UNEXPECTED
    finally:
        await engine.dispose()


async def report_last_run_command(args) -> int:
    engine = create_engine(args.database_url)
    try:
        async with create_session_maker(engine)() as session:
            last_run = await WatermarkTracker(session).get_last_run()
            total = await count_service_requests(session)

        payload = {
            "last_run": last_run.model_dump(mode="json") if last_run else None,
            "service_requests": total,
            "report": None,
        }
        if last_run is not None and settings.ETL_RUNS_DIR:
            report_path = Path(settings.ETL_RUNS_DIR) / f"{last_run.run_id}.json"
            if report_path.exists():
                payload["report"] = json.loads(report_path.read_text(encoding="utf-8"))

        emit_json(payload)
        return ExitCode.SUCCESS
    except ETLException as e:
        emit_json({"status": "failed", "error": e.to_dict()})
        return e.exit_code
    except SQLAlchemyError as e:
        error = DatabaseError("Failed to read run history", context={"operation": "SELECT"}, original_exception=e)
        emit_json({"status": "failed", "error": error.to_dict()})
        return error.exit_code
    finally:
        await engine.dispose()


async def runs_list_command(args) -> int:
    engine = create_engine(args.database_url)
    try:
        async with create_session_maker(engine)() as session:
            runs = await WatermarkTracker(session).list_runs(limit=args.limit)
        emit_json([run.model_dump(mode="json") for run in runs])
        return ExitCode.SUCCESS
    except ETLException as e:
        emit_json({"status": "failed", "error": e.to_dict()})
        return e.exit_code
    finally:
        await engine.dispose()


async def runs_resolve_command(args) -> int:
    engine = create_engine(args.database_url)
    try:
        async with create_session_maker(engine)() as session:
            resolved = await WatermarkTracker(session).resolve_stale_run(args.run_id)
        emit_json(resolved)
        return ExitCode.SUCCESS
    except ETLException as e:
        emit_json({"status": "failed", "error": e.to_dict()})
        return e.exit_code
    finally:
        await engine.dispose()


async def schedule_command(args) -> int:
    engine = create_engine(args.database_url)
    scheduler = ETLScheduler(args.input, interval_minutes=args.interval_minutes, engine=engine)
    stop_event = asyncio.Event()

    def request_stop():
        scheduler.runner.request_stop()
        stop_event.set()

    install_signal_handlers(request_stop)
    try:
        await scheduler.serve(stop_event)
        return ExitCode.SUCCESS
    finally:
        await engine.dispose()


# ============================================================================
# Parser
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="civic311",
        description="NYC 311 service-request ETL",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy async URL (default: DATABASE_URL setting)"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (default: LOG_LEVEL setting)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run
    run_parser = subparsers.add_parser("run", help="Run the pipeline over an input file")
    run_parser.add_argument(
        "--mode",
        choices=[m.value for m in RunMode],
        default=settings.ETL_MODE,
        help=f"Run mode (default: {settings.ETL_MODE})"
    )
    run_parser.add_argument(
        "--input",
        default=settings.ETL_INPUT_PATH,
        help="Input CSV path (default: ETL_INPUT_PATH setting)"
    )
    run_parser.add_argument(
        "--chunk-size",
        type=int,
        default=None,
        help=f"Rows per chunk (default: {settings.ETL_CHUNK_SIZE})"
    )
    run_parser.add_argument("--dry-run", action="store_true", help="Process the file without writing anything")
    run_parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help=f"Decode/validate workers per chunk (default: {settings.ETL_WORKERS})"
    )
    run_parser.add_argument("--no-refresh", action="store_true", help="Skip the view refresh after loading")
    run_parser.add_argument(
        "--blocking-refresh",
        action="store_true",
        help="Refresh views without CONCURRENTLY"
    )
    run_parser.set_defaults(handler=run_command)

    # db
    db_parser = subparsers.add_parser("db", help="Database administration")
    db_sub = db_parser.add_subparsers(dest="db_command", required=True)

    init_parser = db_sub.add_parser("init", help="Create tables, indexes and materialized views")
    init_parser.set_defaults(handler=db_init_command)

    refresh_parser = db_sub.add_parser("refresh", help="Refresh materialized views")
    refresh_parser.add_argument(
        "--concurrently",
        action="store_true",
        help="Use REFRESH MATERIALIZED VIEW CONCURRENTLY"
    )
    refresh_parser.set_defaults(handler=db_refresh_command)

    health_parser = db_sub.add_parser("health", help="Check database connectivity")
    health_parser.set_defaults(handler=db_health_command)

    # report
    report_parser = subparsers.add_parser("report", help="Run reports")
    report_sub = report_parser.add_subparsers(dest="report_command", required=True)
    last_run_parser = report_sub.add_parser("last-run", help="Show the most recent run")
    last_run_parser.set_defaults(handler=report_last_run_command)

    # runs
    runs_parser = subparsers.add_parser("runs", help="Run history and stale-run resolution")
    runs_sub = runs_parser.add_subparsers(dest="runs_command", required=True)
    list_parser = runs_sub.add_parser("list", help="List recent runs")
    list_parser.add_argument("--limit", type=int, default=20, help="Runs to show (default: 20)")
    list_parser.set_defaults(handler=runs_list_command)
    resolve_parser = runs_sub.add_parser("resolve", help="Mark a crashed run as failed")
    resolve_parser.add_argument("run_id", type=UUID, help="Run ID still marked running")
    resolve_parser.set_defaults(handler=runs_resolve_command)

    # schedule
    schedule_parser = subparsers.add_parser("schedule", help="Periodic incremental runs with view refresh")
    schedule_parser.add_argument(
        "--input",
        default=settings.ETL_INPUT_PATH,
        help="Input CSV path (default: ETL_INPUT_PATH setting)"
    )
    schedule_parser.add_argument(
        "--interval-minutes",
        type=int,
        default=settings.SCHEDULE_INTERVAL_MINUTES,
        help=f"Minutes between runs (default: {settings.SCHEDULE_INTERVAL_MINUTES})"
    )
    schedule_parser.set_defaults(handler=schedule_command)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point; returns the process exit code"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command in ("run", "schedule") and not args.input:
        parser.error("--input is required (or set ETL_INPUT_PATH)")

    setup_logging(args.log_level)

    try:
        return asyncio.run(args.handler(args))
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return ExitCode.INTERRUPTED
    except Exception:
        logger.exception("Unexpected error")
        return ExitCode.UNEXPECTED


if __name__ == "__main__":
    sys.exit(main())
