"""
Unit tests for cleanup of archived originals.

Tests cover:
- Report-only default
- Deletion when enabled
- Refusal when reconciliation records were lost
"""

import asyncio
from datetime import datetime, timezone

import pytest

from dbpartition.partition.cleanup import CleanupCoordinator
from dbpartition.partition.committer import CommitResult, CommitStatus
from dbpartition.partition.grouper import GroupingKey
from dbpartition.partition.selector import to_epoch_ms
from dbpartition.partition.writer import build_delete_filter
from dbpartition.store.records import BufferRecord, DeleteQuery

OK = CommitResult(status=CommitStatus.OK, count=1)


def ms(*args) -> int:
    return to_epoch_ms(datetime(*args, tzinfo=timezone.utc))


class TestCleanupCoordinator:
    """Tests for CleanupCoordinator."""

    @pytest.fixture
    def delete_query(self):
        query = DeleteQuery()
        query.add(build_delete_filter(GroupingKey("t1", "s1", "#chan", "01-02-2024")))
        return query

    @pytest.fixture
    def seeded(self, store):
        asyncio.run(
            store.insert_records(
                [
                    BufferRecord("t1", "s1", "#chan", False, ms(2024, 2, 1, 8)),
                    BufferRecord("t1", "s1", "#chan", False, ms(2024, 2, 1, 9)),
                    BufferRecord("t1", "s1", "#other", False, ms(2024, 2, 1, 9)),
                ]
            )
        )
        return store

    @pytest.mark.asyncio
    async def test_reports_without_deleting_by_default(self, seeded, delete_query):
        result = await CleanupCoordinator(seeded).run(delete_query, OK)

        assert result.matched == 2
        assert result.deleted == 0
        assert result.skipped_reason == "deletion disabled"
        assert await seeded.count() == 3

    @pytest.mark.asyncio
    async def test_deletes_when_enabled(self, seeded, delete_query):
        result = await CleanupCoordinator(seeded, delete_originals=True).run(delete_query, OK)

        assert result.matched == 2
        assert result.deleted == 2
        assert result.skipped_reason is None
        assert await seeded.count() == 1

    @pytest.mark.asyncio
    async def test_deletes_after_spill(self, seeded, delete_query):
        """Spilled records are still persisted, so deletion goes ahead."""
        spilled = CommitResult(status=CommitStatus.SPILLED, count=1)

        result = await CleanupCoordinator(seeded, delete_originals=True).run(delete_query, spilled)

        assert result.deleted == 2

    @pytest.mark.asyncio
    async def test_refuses_when_records_lost(self, seeded, delete_query):
        lost = CommitResult(status=CommitStatus.LOST, count=1, error="disk full")

        result = await CleanupCoordinator(seeded, delete_originals=True).run(delete_query, lost)

        assert result.deleted == 0
        assert result.skipped_reason == "metadata not recorded"
        assert await seeded.count() == 3

    @pytest.mark.asyncio
    async def test_empty_query(self, seeded):
        empty = CommitResult(status=CommitStatus.EMPTY, count=0)

        result = await CleanupCoordinator(seeded, delete_originals=True).run(DeleteQuery(), empty)

        assert result.matched == 0
        assert result.skipped_reason == "no archived groups"
        assert await seeded.count() == 3
