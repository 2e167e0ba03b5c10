"""
Day and backfill orchestration.

A day resolves to one of two upstream directory conventions, its object
list is shared by a fixed pool of workers through a claim cursor, and each
object goes watermark check -> download -> expand -> ingest -> watermark.
Failures stay inside the smallest unit that can absorb them: a failed
object stays unwatermarked and is retried on the next run, a failed day is
recorded and the backfill moves on.
"""

import asyncio
import shutil
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import sessionmaker

from .archive import ArchiveExpander, expanded_path
from .config import Settings
from .errors import ArchiveError, ObjectStoreUnavailable, PersistenceError, StoreUnavailable
from .ingest import IngestResult, ingest_file
from .logger import StructuredLogger, get_logger
from .objectstore import ObjectStoreGateway
from .storage import WatermarkStore


@dataclass
class DayResult:
    day: str
    rows_inserted: int = 0
    files_skipped: int = 0
    files_ingested: int = 0
    files_failed: int = 0
    error: Optional[str] = None


@dataclass
class BackfillSummary:
    days_processed: int = 0
    rows_inserted: int = 0
    files_skipped: int = 0
    error_days: List[Tuple[str, str]] = field(default_factory=list)
    results: List[DayResult] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.error_days)


class ClaimCursor:
    """
    Hands out list positions to workers, each position exactly once.

    ``claims`` records (worker_id, index) in claim order.
    """

    def __init__(self, items: Sequence[str]):
        self.items = list(items)
        self.claims: List[Tuple[int, int]] = []
        self._next = 0
        self._lock = threading.Lock()

    def claim(self, worker_id: int) -> Optional[Tuple[int, str]]:
        with self._lock:
            if self._next >= len(self.items):
                return None
            index = self._next
            self._next += 1
            self.claims.append((worker_id, index))
        return index, self.items[index]


def is_store_outage(error: BaseException) -> bool:
    """True if the error means the persistent store stopped answering."""
    if isinstance(error, PersistenceError):
        error = error.__cause__
    if isinstance(error, OperationalError):
        return True
    return isinstance(error, DBAPIError) and error.connection_invalidated


def day_prefixes(prefix: str, day: date) -> List[str]:
    """Candidate day directories: compact form first, then ISO form."""
    prefix = prefix.rstrip("/")
    return [f"{prefix}/{day:%Y%m%d}/", f"{prefix}/{day.isoformat()}/"]


def source_key_for(day: date, name: str) -> str:
    """Watermark/dedup key of an object, the same under either directory form."""
    return f"hourly/{day:%Y%m%d}/{name}"


class DayOrchestrator:
    def __init__(
        self,
        settings: Settings,
        gateway: ObjectStoreGateway,
        expander: ArchiveExpander,
        session_factory: sessionmaker,
        logger: Optional[StructuredLogger] = None,
    ):
        self.settings = settings
        self.gateway = gateway
        self.expander = expander
        self.session_factory = session_factory
        self.watermarks = WatermarkStore(session_factory)
        self.logger = logger or get_logger()

    async def resolve_prefix(self, day: date) -> Optional[str]:
        for candidate in day_prefixes(self.settings.s3_prefix, day):
            if await asyncio.to_thread(self.gateway.probe_any, candidate, self.settings.request_payer):
                return candidate
        return None

    async def run(self, day: date) -> DayResult:
        """
        Ingest every object of one day.

        Returns:
            DayResult with counts; ``error`` is set when the day has no data
            or could not be listed

        Raises:
            ObjectStoreUnavailable: If the object store cannot be reached
            StoreUnavailable: If the persistent store stops answering
        """
        result = DayResult(day=day.isoformat())
        try:
            prefix = await self.resolve_prefix(day)
            if prefix is None:
                result.error = "No data found"
                return result

            names = await asyncio.to_thread(self.gateway.list, prefix, self.settings.request_payer)
            if self.settings.max_objects > 0:
                names = names[: self.settings.max_objects]
            if not names:
                result.error = "No files found"
                return result

            self.logger.info(
                f"Processing {len(names)} objects for {result.day}",
                prefix=prefix,
                workers=max(1, self.settings.concurrency),
            )
            await self._run_pool(day, prefix, names, result)
            if result.files_failed == len(names):
                result.error = f"All {len(names)} files failed"
        except (ObjectStoreUnavailable, StoreUnavailable):
            raise
        except Exception as e:
            self.logger.error(f"Day {result.day} failed", error=str(e), error_type=type(e).__name__)
            result.error = str(e)
        return result

    async def _run_pool(self, day: date, prefix: str, names: List[str], result: DayResult) -> None:
        scratch_root = self.settings.scratch_root
        if scratch_root is not None:
            Path(scratch_root).mkdir(parents=True, exist_ok=True)
        scratch = Path(tempfile.mkdtemp(prefix=f"twapfills-{day:%Y%m%d}-", dir=scratch_root))
        cursor = ClaimCursor(names)
        tasks = [
            asyncio.create_task(self._worker(worker_id, day, prefix, cursor, scratch, result))
            for worker_id in range(max(1, self.settings.concurrency))
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    async def _worker(
        self,
        worker_id: int,
        day: date,
        prefix: str,
        cursor: ClaimCursor,
        scratch: Path,
        result: DayResult,
    ) -> None:
        label = day.isoformat()
        while True:
            claimed = cursor.claim(worker_id)
            if claimed is None:
                return
            index, name = claimed
            source_key = source_key_for(day, name)
            key = f"{prefix}{name}"
            self.logger.record_file_attempt(label)
            try:
                if await asyncio.to_thread(self.watermarks.has_ingested, source_key):
                    result.files_skipped += 1
                    self.logger.record_file_skipped(label)
                    continue
                ingested = await self._process_object(key, name, source_key, scratch / f"{index:06d}")
            except (ObjectStoreUnavailable, StoreUnavailable):
                raise
            except Exception as e:
                if is_store_outage(e):
                    raise StoreUnavailable(f"Store unreachable while processing {key}: {e}") from e
                result.files_failed += 1
                self.logger.record_file_failure(label, type(e).__name__)
                self.logger.error(f"Failed file {key}", error=str(e), error_type=type(e).__name__)
                continue
            result.files_ingested += 1
            result.rows_inserted += ingested.rows_inserted
            self.logger.record_file_ingested(label, ingested.rows_inserted, ingested.lines_skipped)

    async def _process_object(self, key: str, name: str, source_key: str, workdir: Path) -> IngestResult:
        local_path = workdir / name
        try:
            await asyncio.to_thread(self.gateway.fetch, key, local_path, self.settings.request_payer)
            await asyncio.to_thread(self.expander.expand, workdir)
            target = expanded_path(local_path)
            if not target.is_file():
                raise ArchiveError(f"Expanded file missing for {key}: {target.name}")
            ingested = await asyncio.to_thread(
                ingest_file,
                target,
                source_key,
                self.session_factory,
                self.settings.chunk_size,
            )
            # Only after every chunk of the file is committed.
            await asyncio.to_thread(self.watermarks.mark_ingested, source_key)
        finally:
            await asyncio.to_thread(shutil.rmtree, workdir, True)
        self.logger.debug(
            f"Ingested {source_key}",
            lines=ingested.lines_seen,
            inserted=ingested.rows_inserted,
            skipped_lines=ingested.lines_skipped,
        )
        return ingested


class BackfillOrchestrator:
    """Runs a DayOrchestrator over a trailing window of days, newest first."""

    def __init__(self, day_orchestrator: DayOrchestrator, logger: Optional[StructuredLogger] = None):
        self.day_orchestrator = day_orchestrator
        self.logger = logger or day_orchestrator.logger

    async def run(self, days: int, today: Optional[date] = None) -> BackfillSummary:
        """
        Process the ``days`` days before ``today`` (UTC), one day at a time.

        Raises:
            ObjectStoreUnavailable: If the object store cannot be reached
            StoreUnavailable: If the persistent store stops answering
        """
        if today is None:
            today = datetime.now(timezone.utc).date()
        summary = BackfillSummary()
        self.logger.info(f"Starting backfill for last {days} days")

        for i in range(1, days + 1):
            day = today - timedelta(days=i)
            try:
                day_result = await self.day_orchestrator.run(day)
            except (ObjectStoreUnavailable, StoreUnavailable):
                raise
            except Exception as e:
                day_result = DayResult(day=day.isoformat(), error=str(e))

            summary.days_processed += 1
            summary.results.append(day_result)
            summary.rows_inserted += day_result.rows_inserted
            summary.files_skipped += day_result.files_skipped
            if day_result.error:
                summary.error_days.append((day_result.day, day_result.error))
                self.logger.warning(f"[{i}/{days}] {day_result.day}: ERROR - {day_result.error}")
            else:
                self.logger.info(
                    f"[{i}/{days}] {day_result.day}: Inserted {day_result.rows_inserted} fills, "
                    f"Skipped {day_result.files_skipped} files"
                )

        self.log_summary(summary)
        return summary

    def log_summary(self, summary: BackfillSummary) -> None:
        self.logger.info("=== Backfill Summary ===")
        self.logger.info(f"Days processed: {summary.days_processed}")
        self.logger.info(f"Total fills inserted: {summary.rows_inserted}")
        self.logger.info(f"Total files skipped (already ingested): {summary.files_skipped}")
        self.logger.info(f"Days with errors: {summary.error_count}")
        if summary.error_days:
            self.logger.info("Days with errors:")
            for day, message in summary.error_days:
                self.logger.info(f"  {day}: {message}")
