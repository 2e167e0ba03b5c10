import argparse
import asyncio
import json
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy.orm import sessionmaker

from . import __version__
from .archive import Lz4CliExpander
from .config import Settings
from .database import create_db_engine, ensure_connected, get_session_factory, init_database, session_scope
from .env import load_env
from .errors import ConfigError, ObjectStoreUnavailable, StoreUnavailable
from .ingest import ingest_file
from .logger import StructuredLogger, get_logger, reset_logger
from .objectstore import AwsCliGateway
from .orchestrate import BackfillOrchestrator, DayOrchestrator
from .query import get_twap, list_twaps
from .storage import WatermarkStore


def open_store(settings: Settings) -> sessionmaker:
    """Connect, create missing tables and return a session factory.

    Raises:
        StoreUnavailable: If the database cannot be reached
    """
    engine = create_db_engine(settings.database_url, pool_size=settings.pool_size)
    ensure_connected(engine)
    init_database(engine)
    return get_session_factory(engine)


def build_day_orchestrator(settings: Settings, logger: StructuredLogger) -> DayOrchestrator:
    return DayOrchestrator(
        settings=settings,
        gateway=AwsCliGateway(settings.aws_bin),
        expander=Lz4CliExpander(settings.unlz4_bin),
        session_factory=open_store(settings),
        logger=logger,
    )


def _parse_day(value: Optional[str]) -> date:
    if not value:
        return datetime.now(timezone.utc).date() - timedelta(days=1)
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise SystemExit(f"Invalid date: {value} (expected YYYY-MM-DD)")


def _parse_time(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise SystemExit(f"Invalid {name}: {value}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def cmd_init_db(args: argparse.Namespace, settings: Settings, logger: StructuredLogger) -> None:
    open_store(settings)
    logger.info("Tables created", database=settings.database_url.split("@")[-1])


def cmd_ingest_file(args: argparse.Namespace, settings: Settings, logger: StructuredLogger) -> None:
    input_path = Path(args.input)
    if not input_path.exists():
        raise SystemExit(f"Input file not found: {input_path}")
    source_key = args.key or input_path.name
    session_factory = open_store(settings)
    watermarks = WatermarkStore(session_factory)
    if watermarks.has_ingested(source_key) and not args.force:
        print(f"Already ingested: {source_key}")
        return
    result = ingest_file(input_path, source_key, session_factory, settings.chunk_size)
    watermarks.mark_ingested(source_key)
    print(f"Lines: {result.lines_seen} (skipped {result.lines_skipped})")
    print(f"Inserted: {result.rows_inserted}")


def cmd_run_day(args: argparse.Namespace, settings: Settings, logger: StructuredLogger) -> None:
    day = _parse_day(args.date)
    orchestrator = build_day_orchestrator(settings, logger)
    result = asyncio.run(orchestrator.run(day))
    if result.error:
        logger.warning(f"{result.day}: ERROR - {result.error}")
    else:
        logger.info(
            f"Inserted {result.rows_inserted} fills for {result.day}",
            files_ingested=result.files_ingested,
            files_skipped=result.files_skipped,
            files_failed=result.files_failed,
        )
    logger.log_metrics_summary()


def cmd_backfill(args: argparse.Namespace, settings: Settings, logger: StructuredLogger) -> None:
    days = args.days if args.days is not None else settings.backfill_days
    backfill = BackfillOrchestrator(build_day_orchestrator(settings, logger), logger)
    asyncio.run(backfill.run(days))
    logger.log_metrics_summary()


def cmd_twaps(args: argparse.Namespace, settings: Settings, logger: StructuredLogger) -> None:
    start = _parse_time(args.start, "start")
    end = _parse_time(args.end, "end")
    with session_scope(open_store(settings)) as session:
        out = list_twaps(
            session,
            wallet=args.wallet,
            asset=args.asset,
            start=start,
            end=end,
            include_ungrouped=args.include_ungrouped,
        )
    print(json.dumps(out, indent=2))


def cmd_twap(args: argparse.Namespace, settings: Settings, logger: StructuredLogger) -> None:
    with session_scope(open_store(settings)) as session:
        out = get_twap(session, args.twap_id)
    if out is None:
        raise SystemExit(f"TWAP not found: {args.twap_id}")
    print(json.dumps(out, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="twapfills", description="Ingest perpetual-exchange fills and group them into TWAPs")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--db", help="Database URL (or set DATABASE_URL)")
    parser.add_argument("--concurrency", type=int, help="Workers per day (or set INGEST_CONCURRENCY)")
    parser.add_argument("--max-objects", type=int, help="Cap on objects per day, 0 = all (or set MAX_BLOCKS)")
    parser.add_argument("--chunk-size", type=int, help="Rows per insert (or set BULK_INSERT_CHUNK_SIZE)")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR (or set LOG_LEVEL)")

    subparsers = parser.add_subparsers(dest="command")
    ini = subparsers.add_parser("init-db", help="Create the fills and ingested_files tables")
    ini.set_defaults(func=cmd_init_db)

    ing = subparsers.add_parser("ingest-file", help="Ingest one local newline-delimited JSON file")
    ing.add_argument("--input", required=True, help="Path to the decompressed file")
    ing.add_argument("--key", help="Source key for dedup and watermark (default: file name)")
    ing.add_argument("--force", action="store_true", help="Ingest even if the watermark exists")
    ing.set_defaults(func=cmd_ingest_file)

    day = subparsers.add_parser("run-day", help="Ingest every object of one day")
    day.add_argument("--date", help="Day as YYYY-MM-DD (default: yesterday, UTC)")
    day.set_defaults(func=cmd_run_day)

    bf = subparsers.add_parser("backfill", help="Ingest the trailing N days, newest first")
    bf.add_argument("--days", type=int, help="Number of days (or set BACKFILL_DAYS)")
    bf.set_defaults(func=cmd_backfill)

    tw = subparsers.add_parser("twaps", help="List fills grouped by twap id")
    tw.add_argument("--wallet", help="Filter by wallet address")
    tw.add_argument("--asset", help="Filter by asset")
    tw.add_argument("--start", help="ISO-8601 lower bound on fill time")
    tw.add_argument("--end", help="ISO-8601 upper bound on fill time")
    tw.add_argument("--include-ungrouped", action="store_true", help="Include fills without a twap id")
    tw.set_defaults(func=cmd_twaps)

    one = subparsers.add_parser("twap", help="Show one twap with a size-weighted average price")
    one.add_argument("twap_id", help="TWAP id")
    one.set_defaults(func=cmd_twap)
    return parser


def main(argv=None):
    load_env()
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return

    if not hasattr(args, "func"):
        parser.print_help()
        return

    try:
        settings = Settings.from_env().with_overrides(
            database_url=args.db,
            concurrency=args.concurrency,
            max_objects=args.max_objects,
            chunk_size=args.chunk_size,
            log_level=args.log_level.upper() if args.log_level else None,
        )
    except ConfigError as e:
        raise SystemExit(f"Configuration error: {e}")

    reset_logger()
    logger = get_logger(level=settings.log_level, log_dir=settings.log_dir)
    try:
        args.func(args, settings, logger)
    except (StoreUnavailable, ObjectStoreUnavailable) as e:
        logger.critical("Run aborted", error=str(e), error_type=type(e).__name__)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
