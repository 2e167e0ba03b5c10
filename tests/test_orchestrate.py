"""
Tests for day and backfill orchestration.
"""

import asyncio
import threading
from collections import Counter
from datetime import date

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

import twapfills.orchestrate as orchestrate_module
from twapfills.archive import InMemoryExpander
from twapfills.database import Fill, session_scope
from twapfills.errors import ArchiveError, ObjectStoreUnavailable, PersistenceError, StoreUnavailable
from twapfills.objectstore import InMemoryGateway
from twapfills.orchestrate import (
    BackfillOrchestrator,
    ClaimCursor,
    DayOrchestrator,
    day_prefixes,
    source_key_for,
)
from twapfills.storage import WatermarkStore

from sample_data import S3_PREFIX, block_line, day_objects, fill_line

DAY = date(2025, 1, 1)


def three_files():
    return {
        "0.lz4": [fill_line("0xa", 1, 1), fill_line("0xb", 2, 1)],
        "1.lz4": [block_line(10, [["0xc", {"coin": "BTC", "px": "3", "sz": "1"}]])],
        "2.lz4": ["not json", fill_line("0xd", 4, 1)],
    }


def count_fills(session_factory) -> int:
    with session_scope(session_factory) as session:
        return session.execute(select(func.count()).select_from(Fill)).scalar_one()


class TestHelpers:
    """Test prefix and source key helpers."""

    def test_day_prefixes_compact_first(self):
        assert day_prefixes("s3://b/p/", DAY) == ["s3://b/p/20250101/", "s3://b/p/2025-01-01/"]

    def test_source_key_is_independent_of_prefix_form(self):
        assert source_key_for(DAY, "7.lz4") == "hourly/20250101/7.lz4"


class TestClaimCursor:
    """Test exclusive claiming of list positions."""

    def test_sequential_claims(self):
        cursor = ClaimCursor(["a", "b"])
        assert cursor.claim(0) == (0, "a")
        assert cursor.claim(1) == (1, "b")
        assert cursor.claim(0) is None
        assert cursor.claims == [(0, 0), (1, 1)]

    def test_async_workers_claim_each_item_once(self):
        items = [f"{i}.lz4" for i in range(50)]
        cursor = ClaimCursor(items)
        processed = []

        async def worker(worker_id):
            while True:
                claimed = cursor.claim(worker_id)
                if claimed is None:
                    return
                await asyncio.sleep(0)
                processed.append(claimed[1])

        async def run():
            await asyncio.gather(*(worker(n) for n in range(7)))

        asyncio.run(run())

        assert sorted(processed) == sorted(items)
        indices = [index for _, index in cursor.claims]
        assert sorted(indices) == list(range(50))
        assert len({worker for worker, _ in cursor.claims}) > 1

    def test_thread_workers_claim_each_item_once(self):
        cursor = ClaimCursor([str(i) for i in range(2000)])

        def worker(worker_id):
            while cursor.claim(worker_id) is not None:
                pass

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        counts = Counter(index for _, index in cursor.claims)
        assert len(counts) == 2000
        assert set(counts.values()) == {1}


class TestDayOrchestrator:
    """Test one day's ingestion."""

    def make(self, settings, session_factory, expander, objects, **kwargs):
        gateway = InMemoryGateway(objects, **kwargs)
        return DayOrchestrator(settings, gateway, expander, session_factory), gateway

    def test_ingests_every_object(self, settings, session_factory, expander):
        orchestrator, gateway = self.make(settings, session_factory, expander, day_objects(DAY, three_files()))

        result = asyncio.run(orchestrator.run(DAY))

        assert result.error is None
        assert result.day == "2025-01-01"
        assert result.files_ingested == 3
        assert result.files_failed == 0
        assert result.rows_inserted == 4
        assert count_fills(session_factory) == 4
        assert sorted(Counter(gateway.fetched).values()) == [1, 1, 1]
        watermarks = WatermarkStore(session_factory)
        assert all(watermarks.has_ingested(f"hourly/20250101/{n}.lz4") for n in range(3))

    def test_second_run_skips_watermarked_files(self, settings, session_factory, expander):
        orchestrator, gateway = self.make(settings, session_factory, expander, day_objects(DAY, three_files()))

        asyncio.run(orchestrator.run(DAY))
        gateway.fetched.clear()
        again = asyncio.run(orchestrator.run(DAY))

        assert again.files_skipped == 3
        assert again.rows_inserted == 0
        assert gateway.fetched == []
        assert count_fills(session_factory) == 4

    def test_iso_directory_fallback(self, settings, session_factory, expander):
        orchestrator, gateway = self.make(settings, session_factory, expander, day_objects(DAY, three_files(), iso=True))

        result = asyncio.run(orchestrator.run(DAY))

        assert result.files_ingested == 3
        assert gateway.probed == [f"{S3_PREFIX}/20250101/", f"{S3_PREFIX}/2025-01-01/"]
        assert WatermarkStore(session_factory).has_ingested("hourly/20250101/0.lz4")

    def test_no_data_is_day_error(self, settings, session_factory, expander):
        orchestrator, _ = self.make(settings, session_factory, expander, {})

        result = asyncio.run(orchestrator.run(DAY))

        assert result.error == "No data found"
        assert result.rows_inserted == 0

    def test_failed_object_stays_retryable(self, settings, session_factory, expander):
        objects = day_objects(DAY, three_files())
        bad_key = f"{S3_PREFIX}/20250101/1.lz4"
        orchestrator, gateway = self.make(settings, session_factory, expander, objects, fail_keys={bad_key})

        result = asyncio.run(orchestrator.run(DAY))

        assert result.error is None
        assert result.files_ingested == 2
        assert result.files_failed == 1
        assert not WatermarkStore(session_factory).has_ingested("hourly/20250101/1.lz4")

        gateway.fail_keys.clear()
        retry = asyncio.run(orchestrator.run(DAY))

        assert retry.files_skipped == 2
        assert retry.files_ingested == 1
        assert retry.rows_inserted == 1
        assert WatermarkStore(session_factory).has_ingested("hourly/20250101/1.lz4")

    def test_failures_are_counted_in_metrics(self, settings, session_factory, expander, quiet_logger):
        bad_key = f"{S3_PREFIX}/20250101/0.lz4"
        orchestrator, _ = self.make(settings, session_factory, expander, day_objects(DAY, three_files()), fail_keys={bad_key})

        asyncio.run(orchestrator.run(DAY))

        metrics = quiet_logger.get_metrics()
        assert metrics["files_failed"] == 1
        assert metrics["errors_by_type"] == {"ObjectStoreError": 1}
        assert metrics["days"]["2025-01-01"]["ingested"] == 2

    def test_max_objects_truncates(self, settings, session_factory, expander):
        limited = settings.with_overrides(max_objects=2)
        orchestrator, gateway = self.make(limited, session_factory, expander, day_objects(DAY, three_files()))

        result = asyncio.run(orchestrator.run(DAY))

        assert result.files_ingested == 2
        assert len(gateway.fetched) == 2

    def test_many_objects_each_fetched_once(self, settings, session_factory, expander):
        files = {f"{i}.lz4": [fill_line(f"0x{i}", 1, 1)] for i in range(25)}
        wide = settings.with_overrides(concurrency=6)
        orchestrator, gateway = self.make(wide, session_factory, expander, day_objects(DAY, files))

        result = asyncio.run(orchestrator.run(DAY))

        assert result.files_ingested == 25
        assert result.rows_inserted == 25
        assert sorted(gateway.fetched) == sorted(day_objects(DAY, files))

    def test_scratch_is_cleaned_up(self, settings, session_factory, expander):
        orchestrator, _ = self.make(settings, session_factory, expander, day_objects(DAY, three_files()))

        asyncio.run(orchestrator.run(DAY))

        assert list(settings.scratch_root.iterdir()) == []

    def test_unavailable_object_store_propagates(self, settings, session_factory, expander):
        class DownGateway(InMemoryGateway):
            def probe_any(self, prefix, payer):
                raise ObjectStoreUnavailable("aws not installed")

        orchestrator = DayOrchestrator(settings, DownGateway({}), expander, session_factory)

        with pytest.raises(ObjectStoreUnavailable):
            asyncio.run(orchestrator.run(DAY))

    def test_unreachable_watermark_store_is_fatal(self, settings, session_factory, expander, monkeypatch):
        def refuse(self, source_key):
            raise OperationalError("select s3_key", {}, Exception("connection refused"))

        monkeypatch.setattr(WatermarkStore, "has_ingested", refuse)
        orchestrator, _ = self.make(settings, session_factory, expander, day_objects(DAY, three_files()))

        with pytest.raises(StoreUnavailable, match="connection refused"):
            asyncio.run(orchestrator.run(DAY))

    def test_persistence_error_from_lost_connection_is_fatal(self, settings, session_factory, expander, monkeypatch):
        def lost_connection(path, source_key, *args):
            try:
                raise OperationalError("insert into fills", {}, Exception("server closed the connection"))
            except OperationalError as e:
                raise PersistenceError("Chunk insert failed", source_key=source_key) from e

        monkeypatch.setattr(orchestrate_module, "ingest_file", lost_connection)
        orchestrator, _ = self.make(settings, session_factory, expander, day_objects(DAY, three_files()))

        with pytest.raises(StoreUnavailable):
            asyncio.run(orchestrator.run(DAY))
        assert not WatermarkStore(session_factory).has_ingested("hourly/20250101/0.lz4")

    def test_expansion_failure_stays_retryable(self, settings, session_factory):
        class CorruptFrame(InMemoryExpander):
            def __init__(self):
                super().__init__()
                self.broken = {"1.lz4"}

            def expand(self, directory):
                if any(p.name in self.broken for p in directory.iterdir()):
                    raise ArchiveError("corrupted frame")
                super().expand(directory)

        expander = CorruptFrame()
        orchestrator, _ = self.make(settings, session_factory, expander, day_objects(DAY, three_files()))

        result = asyncio.run(orchestrator.run(DAY))

        assert result.error is None
        assert result.files_ingested == 2
        assert result.files_failed == 1
        assert not WatermarkStore(session_factory).has_ingested("hourly/20250101/1.lz4")

        expander.broken.clear()
        retry = asyncio.run(orchestrator.run(DAY))

        assert retry.files_ingested == 1
        assert retry.rows_inserted == 1
        assert WatermarkStore(session_factory).has_ingested("hourly/20250101/1.lz4")

    def test_rejected_chunk_stays_retryable(self, settings, session_factory, expander, monkeypatch):
        real_ingest = orchestrate_module.ingest_file
        rejected = {"hourly/20250101/2.lz4"}

        def rejecting_ingest(path, source_key, *args):
            if source_key in rejected:
                try:
                    raise IntegrityError("insert into fills", {}, Exception("NOT NULL constraint failed"))
                except IntegrityError as e:
                    raise PersistenceError("Chunk insert failed", source_key=source_key) from e
            return real_ingest(path, source_key, *args)

        monkeypatch.setattr(orchestrate_module, "ingest_file", rejecting_ingest)
        orchestrator, _ = self.make(settings, session_factory, expander, day_objects(DAY, three_files()))

        result = asyncio.run(orchestrator.run(DAY))

        assert result.files_ingested == 2
        assert result.files_failed == 1
        assert not WatermarkStore(session_factory).has_ingested("hourly/20250101/2.lz4")

        rejected.clear()
        retry = asyncio.run(orchestrator.run(DAY))

        assert retry.files_ingested == 1
        assert WatermarkStore(session_factory).has_ingested("hourly/20250101/2.lz4")

    def test_missing_expanded_file_is_not_watermarked(self, settings, session_factory):
        class MisnamingExpander(InMemoryExpander):
            def expand(self, directory):
                for path in directory.iterdir():
                    path.rename(path.with_name(path.name + ".out"))

        orchestrator, _ = self.make(settings, session_factory, MisnamingExpander(), day_objects(DAY, three_files()))

        result = asyncio.run(orchestrator.run(DAY))

        assert result.files_failed == 3
        assert result.error == "All 3 files failed"
        assert not WatermarkStore(session_factory).has_ingested("hourly/20250101/0.lz4")


class TestBackfillOrchestrator:
    """Test the trailing-window backfill."""

    def test_missing_day_does_not_stop_neighbours(self, settings, session_factory, expander):
        today = date(2025, 1, 10)
        objects = {}
        objects.update(day_objects(date(2025, 1, 9), {"0.lz4": [fill_line("0xa", 1, 1)]}))
        objects.update(day_objects(date(2025, 1, 7), {"0.lz4": [fill_line("0xb", 1, 1), fill_line("0xc", 1, 1)]}))
        day_orchestrator = DayOrchestrator(settings, InMemoryGateway(objects), expander, session_factory)

        summary = asyncio.run(BackfillOrchestrator(day_orchestrator).run(3, today=today))

        assert [r.day for r in summary.results] == ["2025-01-09", "2025-01-08", "2025-01-07"]
        assert summary.days_processed == 3
        assert summary.rows_inserted == 3
        assert summary.error_count == 1
        assert summary.error_days == [("2025-01-08", "No data found")]
        assert summary.results[0].error is None
        assert summary.results[2].error is None

    def test_day_exception_is_recorded(self, settings, session_factory, expander):
        class ExplodingDay(DayOrchestrator):
            async def run(self, day):
                if day == date(2025, 1, 8):
                    raise RuntimeError("listing exploded")
                return await super().run(day)

        objects = day_objects(date(2025, 1, 9), {"0.lz4": [fill_line("0xa", 1, 1)]})
        day_orchestrator = ExplodingDay(settings, InMemoryGateway(objects), expander, session_factory)

        summary = asyncio.run(BackfillOrchestrator(day_orchestrator).run(2, today=date(2025, 1, 10)))

        assert summary.rows_inserted == 1
        assert summary.error_days == [("2025-01-08", "listing exploded")]

    def test_store_outage_stops_the_backfill(self, settings, session_factory, expander, monkeypatch):
        def refuse(self, source_key):
            raise OperationalError("select s3_key", {}, Exception("connection refused"))

        monkeypatch.setattr(WatermarkStore, "has_ingested", refuse)
        objects = day_objects(date(2025, 1, 9), three_files())
        day_orchestrator = DayOrchestrator(settings, InMemoryGateway(objects), expander, session_factory)

        with pytest.raises(StoreUnavailable):
            asyncio.run(BackfillOrchestrator(day_orchestrator).run(1, today=date(2025, 1, 10)))

    def test_skipped_files_are_totalled(self, settings, session_factory, expander):
        objects = day_objects(date(2025, 1, 9), three_files())
        day_orchestrator = DayOrchestrator(settings, InMemoryGateway(objects), expander, session_factory)
        backfill = BackfillOrchestrator(day_orchestrator)

        asyncio.run(backfill.run(1, today=date(2025, 1, 10)))
        summary = asyncio.run(backfill.run(1, today=date(2025, 1, 10)))

        assert summary.files_skipped == 3
        assert summary.rows_inserted == 0
