"""
Integration tests for the partition pipeline.

These run the whole pipeline against a real SQLite live store and either
the in-memory or the filesystem sink.

Tests cover:
- End-to-end archive, reconcile and cleanup
- Analyse-only runs
- Bootstrap failures
- Permanent write failures
- Metadata commit failures
- Late records for a day that was already archived
"""

import asyncio
import gzip
import json
import sqlite3
from datetime import datetime, timezone

import pytest

from dbpartition.partition.committer import CommitStatus
from dbpartition.partition.pipeline import PartitionPipeline, PipelineOutcome
from dbpartition.partition.retry import RetryState
from dbpartition.partition.selector import to_epoch_ms
from dbpartition.sink.filesystem import FilesystemSink
from dbpartition.sink.memory import InMemorySink
from dbpartition.store.base import StoreQueryError
from dbpartition.store.buffer_store import BufferStore
from dbpartition.store.metadata_store import MetadataStore
from dbpartition.store.records import BufferRecord

CHAN_PATH = "t1/s1/%23chan/01-02-2024/t1-s1-%23chan-01-02-2024.jsonl.gz"
STATUS_PATH = "t1/s1/@status/01-02-2024/t1-s1-@status-01-02-2024.jsonl.gz"
NICK_PATH = "t2/s1/nick/03-02-2024/t2-s1-nick-03-02-2024.jsonl.gz"


def ms(*args) -> int:
    return to_epoch_ms(datetime(*args, tzinfo=timezone.utc))


RECORDS = [
    BufferRecord("t1", "s1", "#chan", False, ms(2024, 2, 1, 9), {"message": "one"}),
    BufferRecord("t1", "s1", "#chan", False, ms(2024, 2, 1, 17), {"message": "two"}),
    BufferRecord("t1", "s1", None, True, ms(2024, 2, 1, 11), {"message": "connected"}),
    BufferRecord("t2", "s1", "nick", False, ms(2024, 2, 3, 8), {"message": "hey"}),
    BufferRecord("t1", "s1", "#chan", False, ms(2024, 3, 5), {"message": "recent"}),
]


class FailingMetadataStore(MetadataStore):
    """Metadata store that exists but rejects inserts."""

    async def insert_many(self, records):
        raise StoreQueryError("database is locked")


class TestPartitionPipeline:
    """End-to-end tests for PartitionPipeline."""

    @pytest.fixture
    def seeded(self, store):
        asyncio.run(store.insert_records(RECORDS))
        return store

    def _pipeline(self, store, metadata_store, sink, fixed_clock, sleeps, **kwargs):
        return PartitionPipeline(
            store=store,
            metadata_store=metadata_store,
            sink=sink,
            clock=fixed_clock,
            sleep=sleeps,
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_archives_and_reconciles(self, seeded, db_path, sink, fixed_clock, sleeps):
        metadata_store = MetadataStore(db_path)
        pipeline = self._pipeline(seeded, metadata_store, sink, fixed_clock, sleeps)

        result = await pipeline.run()

        assert result.outcome == PipelineOutcome.COMPLETED
        assert result.exit_code == 0
        assert result.analysis.total == 5
        assert result.analysis.eligible == 4
        assert result.groups == 3
        assert set(sink.blobs) == {CHAN_PATH, STATUS_PATH, NICK_PATH}

        lines = gzip.decompress(sink.blobs[CHAN_PATH]).decode("utf-8").splitlines()
        assert [json.loads(line)["payload"]["message"] for line in lines] == ["one", "two"]

        stored = await metadata_store.list_records()
        assert {r.relative_path for r in stored} == {CHAN_PATH, STATUS_PATH, NICK_PATH}
        assert all(r.base_location == "memory://archive" for r in stored)

        # Deleting originals is off by default
        assert result.cleanup.matched == 4
        assert result.cleanup.deleted == 0
        assert await seeded.count() == 5

    @pytest.mark.asyncio
    async def test_deletes_archived_originals(self, seeded, metadata_store, sink, fixed_clock, sleeps):
        pipeline = self._pipeline(
            seeded, metadata_store, sink, fixed_clock, sleeps, delete_originals=True
        )

        result = await pipeline.run()

        assert result.outcome == PipelineOutcome.COMPLETED
        assert result.cleanup.deleted == 4
        assert await seeded.count() == 1

    @pytest.mark.asyncio
    async def test_second_run_finds_nothing(self, seeded, metadata_store, sink, fixed_clock, sleeps):
        first = self._pipeline(seeded, metadata_store, sink, fixed_clock, sleeps, delete_originals=True)
        await first.run()

        second = self._pipeline(seeded, metadata_store, sink, fixed_clock, sleeps, delete_originals=True)
        result = await second.run()

        assert result.outcome == PipelineOutcome.COMPLETED
        assert result.analysis.eligible == 0
        assert result.groups == 0
        assert result.commit.status == CommitStatus.EMPTY

    @pytest.mark.asyncio
    async def test_analyse_only_writes_nothing(self, seeded, metadata_store, sink, fixed_clock, sleeps):
        pipeline = self._pipeline(seeded, metadata_store, sink, fixed_clock, sleeps, analyse_only=True)

        result = await pipeline.run()

        assert result.outcome == PipelineOutcome.ANALYSED
        assert result.exit_code == 0
        assert result.analysis.eligible == 4
        assert result.analysis.percentage == 80.0
        assert sink.blobs == {}
        assert sink.write_attempts == []
        assert await metadata_store.list_records() == []

    @pytest.mark.asyncio
    async def test_missing_collection(self, tmp_path, sink, fixed_clock, sleeps):
        db_path = str(tmp_path / "empty.db")
        store = BufferStore(db_path)
        sqlite3.connect(db_path).close()
        pipeline = self._pipeline(store, MetadataStore(db_path), sink, fixed_clock, sleeps)

        result = await pipeline.run()

        assert result.outcome == PipelineOutcome.STORE_UNAVAILABLE
        assert result.exit_code == 3
        assert "doesn't exist" in result.error
        assert sink.write_attempts == []

    @pytest.mark.asyncio
    async def test_database_file_is_not_sqlite(self, tmp_path, sink, fixed_clock, sleeps):
        path = tmp_path / "garbage.db"
        path.write_bytes(b"this is not a sqlite database")
        db_path = str(path)
        pipeline = self._pipeline(BufferStore(db_path), MetadataStore(db_path), sink, fixed_clock, sleeps)

        result = await pipeline.run()

        assert result.outcome == PipelineOutcome.STORE_UNAVAILABLE
        assert result.exit_code == 3
        assert sink.write_attempts == []
        assert path.read_bytes() == b"this is not a sqlite database"

    @pytest.mark.asyncio
    async def test_unavailable_archive(self, seeded, metadata_store, fixed_clock, sleeps):
        sink = InMemorySink(available=False)
        pipeline = self._pipeline(seeded, metadata_store, sink, fixed_clock, sleeps)

        result = await pipeline.run()

        assert result.outcome == PipelineOutcome.ARCHIVE_UNAVAILABLE
        assert result.exit_code == 4
        assert result.analysis is None

    @pytest.mark.asyncio
    async def test_permanent_failure_keeps_group(self, seeded, metadata_store, sink, fixed_clock, sleeps):
        """A group that can't be written is neither recorded nor deleted."""
        sink.fail_writes(CHAN_PATH)
        pipeline = self._pipeline(
            seeded,
            metadata_store,
            sink,
            fixed_clock,
            sleeps,
            delete_originals=True,
            max_attempts=3,
            backoff_seconds=2,
        )

        result = await pipeline.run()

        assert result.outcome == PipelineOutcome.INCOMPLETE
        assert result.exit_code == 6
        assert result.retry.state == RetryState.PERMANENT_FAILURE
        assert sink.attempts_for(CHAN_PATH) == 3
        assert sleeps.calls == [1] * 4

        stored = await metadata_store.list_records()
        assert CHAN_PATH not in {r.relative_path for r in stored}
        assert len(stored) == 2

        # Status and nick groups are gone, #chan records of 01-02 stay
        assert result.cleanup.deleted == 2
        remaining = [r async for r in seeded.stream(result.analysis.query)]
        assert [r.payload["message"] for r in remaining] == ["one", "two"]

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self, seeded, metadata_store, sink, fixed_clock, sleeps):
        sink.fail_writes(STATUS_PATH, times=2)
        pipeline = self._pipeline(seeded, metadata_store, sink, fixed_clock, sleeps, backoff_seconds=1)

        result = await pipeline.run()

        assert result.outcome == PipelineOutcome.COMPLETED
        assert result.retry.attempts == 3
        assert STATUS_PATH in sink.blobs

    @pytest.mark.asyncio
    async def test_metadata_failure_still_cleans_up(self, seeded, db_path, sink, fixed_clock, sleeps):
        """A spilled commit is not fatal and cleanup still runs."""
        pipeline = self._pipeline(
            seeded,
            FailingMetadataStore(db_path),
            sink,
            fixed_clock,
            sleeps,
            delete_originals=True,
        )

        result = await pipeline.run()

        assert result.outcome == PipelineOutcome.COMPLETED
        assert result.commit.status == CommitStatus.SPILLED
        [document] = [json.loads(data) for data in sink.recovery_files.values()]
        assert {r["relative_path"] for r in document["records"]} == {CHAN_PATH, STATUS_PATH, NICK_PATH}
        assert result.cleanup.deleted == 4

    @pytest.mark.asyncio
    async def test_lost_metadata_blocks_deletion(self, seeded, db_path, sink, fixed_clock, sleeps):
        sink.fail_recovery = True
        pipeline = self._pipeline(
            seeded,
            FailingMetadataStore(db_path),
            sink,
            fixed_clock,
            sleeps,
            delete_originals=True,
        )

        result = await pipeline.run()

        assert result.commit.status == CommitStatus.LOST
        assert result.cleanup.deleted == 0
        assert await seeded.count() == 5

    @pytest.mark.asyncio
    async def test_filesystem_archive(self, seeded, metadata_store, tmp_path, fixed_clock, sleeps):
        archive = tmp_path / "archive"
        archive.mkdir()
        sink = FilesystemSink(str(archive), recovery_dir=str(tmp_path / "recovery"))
        pipeline = self._pipeline(seeded, metadata_store, sink, fixed_clock, sleeps)

        result = await pipeline.run()

        assert result.outcome == PipelineOutcome.COMPLETED
        chan = archive / "t1" / "s1" / "%23chan" / "01-02-2024" / "t1-s1-%23chan-01-02-2024.jsonl.gz"
        assert chan.is_file()
        assert len(gzip.decompress(chan.read_bytes()).splitlines()) == 2

        stored = await metadata_store.list_records()
        assert all(r.base_location == str(archive.resolve()) for r in stored)

    @pytest.mark.asyncio
    async def test_progress_reports_each_phase(self, seeded, metadata_store, sink, fixed_clock, sleeps):
        events = []
        pipeline = PartitionPipeline(
            store=seeded,
            metadata_store=metadata_store,
            sink=sink,
            clock=fixed_clock,
            sleep=sleeps,
            on_progress=events.append,
        )

        await pipeline.run()

        finals = [e.phase for e in events if e.percent == 100]
        assert finals == ["grouping", "writing (attempt 1/5)"]


class TestLateRecords:
    """Runs that archive a day whose originals were already deleted."""

    LATE = BufferRecord("t1", "s1", "#chan", False, ms(2024, 2, 1, 20), {"message": "late"})
    CHAN_V1 = "t1/s1/%23chan/01-02-2024/t1-s1-%23chan-01-02-2024.1.jsonl.gz"

    @pytest.fixture
    def seeded(self, store):
        asyncio.run(store.insert_records(RECORDS))
        return store

    def _pipeline(self, store, metadata_store, sink, fixed_clock, sleeps, **kwargs):
        return PartitionPipeline(
            store=store,
            metadata_store=metadata_store,
            sink=sink,
            clock=fixed_clock,
            sleep=sleeps,
            **kwargs,
        )

    def _messages(self, data: bytes) -> list[str]:
        lines = gzip.decompress(data).decode("utf-8").splitlines()
        return [json.loads(line)["payload"]["message"] for line in lines]

    @pytest.mark.asyncio
    async def test_late_record_keeps_first_archive(self, seeded, metadata_store, tmp_path, fixed_clock, sleeps):
        """A late record for an archived and deleted day lands in a new file."""
        archive = tmp_path / "archive"
        archive.mkdir()
        sink = FilesystemSink(str(archive), recovery_dir=str(tmp_path / "recovery"))
        first = await self._pipeline(
            seeded, metadata_store, sink, fixed_clock, sleeps, delete_originals=True
        ).run()
        assert first.cleanup.deleted == 4

        await seeded.insert_records([self.LATE])
        result = await self._pipeline(
            seeded, metadata_store, sink, fixed_clock, sleeps, delete_originals=True
        ).run()

        assert result.outcome == PipelineOutcome.COMPLETED
        assert result.groups == 1
        assert self._messages((archive / CHAN_PATH).read_bytes()) == ["one", "two"]
        assert self._messages((archive / self.CHAN_V1).read_bytes()) == ["late"]

        stored = await metadata_store.list_records()
        chan = sorted(r.relative_path for r in stored if r.target == "#chan")
        assert chan == [CHAN_PATH, self.CHAN_V1]
        assert len(stored) == 4

        assert result.cleanup.deleted == 1
        assert await seeded.count() == 1

    @pytest.mark.asyncio
    async def test_rerun_without_deletion_is_idempotent(self, seeded, metadata_store, sink, fixed_clock, sleeps):
        """Re-archiving unchanged records confirms the existing files."""
        await self._pipeline(seeded, metadata_store, sink, fixed_clock, sleeps).run()
        blobs = dict(sink.blobs)

        result = await self._pipeline(seeded, metadata_store, sink, fixed_clock, sleeps).run()

        assert result.outcome == PipelineOutcome.COMPLETED
        assert result.commit.status == CommitStatus.OK
        assert sink.blobs == blobs
        assert sink.recovery_files == {}
        assert len(await metadata_store.list_records()) == 3
