"""
Unit tests for the write retry controller.

Tests cover:
- Success on the first attempt
- Recovery after transient failures
- Permanent failure after exactly max_attempts
- Backoff countdown
- Delete query built only from confirmed writes
"""

from datetime import datetime, timezone

import pytest

from dbpartition.partition.grouper import GroupIndex, GroupingKey
from dbpartition.partition.retry import RetryController, RetryOutcome, RetryState
from dbpartition.partition.selector import to_epoch_ms
from dbpartition.partition.writer import ArchiveWriter, build_delete_filter
from dbpartition.store.records import BufferRecord

CHAN = GroupingKey("t1", "s1", "#chan", "01-02-2024")
OTHER = GroupingKey("t1", "s1", "#other", "01-02-2024")
CHAN_PATH = "t1/s1/%23chan/01-02-2024/t1-s1-%23chan-01-02-2024.jsonl.gz"
OTHER_PATH = "t1/s1/%23other/01-02-2024/t1-s1-%23other-01-02-2024.jsonl.gz"


def ms(*args) -> int:
    return to_epoch_ms(datetime(*args, tzinfo=timezone.utc))


class TestRetryController:
    """Tests for RetryController."""

    @pytest.fixture
    def blobs(self, sink, fixed_clock):
        index = GroupIndex()
        index.add(BufferRecord("t1", "s1", "#chan", False, ms(2024, 2, 1, 9)))
        index.add(BufferRecord("t1", "s1", "#other", False, ms(2024, 2, 1, 10)))
        return ArchiveWriter(sink, clock=fixed_clock).prepare(index)

    def _controller(self, sink, fixed_clock, sleeps, max_attempts=5, backoff_seconds=5):
        writer = ArchiveWriter(sink, clock=fixed_clock)
        return RetryController(
            writer, max_attempts=max_attempts, backoff_seconds=backoff_seconds, sleep=sleeps
        )

    @pytest.mark.asyncio
    async def test_all_succeed_first_attempt(self, sink, fixed_clock, sleeps, blobs):
        outcome = await self._controller(sink, fixed_clock, sleeps).run(blobs)

        assert outcome.state == RetryState.DONE
        assert outcome.attempts == 1
        assert outcome.all_succeeded
        assert outcome.transitions == [RetryState.WRITING, RetryState.EVALUATING, RetryState.DONE]
        assert sleeps.calls == []

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, sink, fixed_clock, sleeps, blobs):
        """A blob failing twice is written on the third attempt."""
        sink.fail_writes(CHAN_PATH, times=2)

        outcome = await self._controller(sink, fixed_clock, sleeps).run(blobs)

        assert outcome.state == RetryState.DONE
        assert outcome.attempts == 3
        assert sink.attempts_for(CHAN_PATH) == 3
        assert sink.attempts_for(OTHER_PATH) == 1
        assert len(outcome.succeeded) == 2
        assert build_delete_filter(CHAN) in outcome.delete_query()

    @pytest.mark.asyncio
    async def test_backoff_waits_one_second_per_tick(self, sink, fixed_clock, sleeps, blobs):
        sink.fail_writes(CHAN_PATH, times=2)

        await self._controller(sink, fixed_clock, sleeps, backoff_seconds=5).run(blobs)

        assert sleeps.calls == [1] * 10

    @pytest.mark.asyncio
    async def test_permanent_failure_after_max_attempts(self, sink, fixed_clock, sleeps, blobs):
        """An always failing blob is tried exactly max_attempts times."""
        sink.fail_writes(CHAN_PATH)

        outcome = await self._controller(sink, fixed_clock, sleeps, max_attempts=5).run(blobs)

        assert outcome.state == RetryState.PERMANENT_FAILURE
        assert outcome.attempts == 5
        assert sink.attempts_for(CHAN_PATH) == 5
        assert [f.blob.key for f in outcome.failed] == [CHAN]
        assert len(sleeps.calls) == 4 * 5
        assert outcome.transitions[-1] == RetryState.PERMANENT_FAILURE

    @pytest.mark.asyncio
    async def test_failed_group_not_in_delete_query(self, sink, fixed_clock, sleeps, blobs):
        """Only confirmed groups are ever offered for deletion."""
        sink.fail_writes(CHAN_PATH)

        outcome = await self._controller(sink, fixed_clock, sleeps, max_attempts=2).run(blobs)
        query = outcome.delete_query()

        assert build_delete_filter(CHAN) not in query
        assert build_delete_filter(OTHER) in query
        assert len(query) == 1
        assert [r.relative_path for r in outcome.reconciliation_records] == [OTHER_PATH]

    @pytest.mark.asyncio
    async def test_single_attempt_never_sleeps(self, sink, fixed_clock, sleeps, blobs):
        sink.fail_writes(CHAN_PATH)

        outcome = await self._controller(sink, fixed_clock, sleeps, max_attempts=1).run(blobs)

        assert outcome.state == RetryState.PERMANENT_FAILURE
        assert outcome.attempts == 1
        assert sleeps.calls == []

    @pytest.mark.asyncio
    async def test_zero_backoff(self, sink, fixed_clock, sleeps, blobs):
        sink.fail_writes(CHAN_PATH, times=1)

        outcome = await self._controller(sink, fixed_clock, sleeps, backoff_seconds=0).run(blobs)

        assert outcome.state == RetryState.DONE
        assert sleeps.calls == []

    @pytest.mark.asyncio
    async def test_empty_blob_list(self, sink, fixed_clock, sleeps):
        outcome = await self._controller(sink, fixed_clock, sleeps).run([])

        assert outcome.state == RetryState.DONE
        assert len(outcome.delete_query()) == 0

    @pytest.mark.asyncio
    async def test_abandon_during_backoff(self, sink, fixed_clock, blobs):
        """Abandoning cuts the backoff short and ends in permanent failure."""
        sink.fail_writes(CHAN_PATH)
        calls = []
        controller = None

        async def sleep(seconds):
            calls.append(seconds)
            controller.abandon()

        controller = self._controller(sink, fixed_clock, sleep, max_attempts=5)
        outcome = await controller.run(blobs)

        assert outcome.state == RetryState.PERMANENT_FAILURE
        assert outcome.attempts == 1
        assert calls == [1]
        assert sink.attempts_for(CHAN_PATH) == 1
        assert build_delete_filter(OTHER) in outcome.delete_query()

    @pytest.mark.asyncio
    async def test_abandon_before_run(self, sink, fixed_clock, sleeps, blobs):
        """An abandoned controller still makes its first write pass."""
        sink.fail_writes(CHAN_PATH)
        controller = self._controller(sink, fixed_clock, sleeps)
        controller.abandon()

        outcome = await controller.run(blobs)

        assert outcome.state == RetryState.PERMANENT_FAILURE
        assert len(outcome.succeeded) == 1
        assert sleeps.calls == []

    def test_rejects_zero_attempts(self, sink, fixed_clock, sleeps):
        with pytest.raises(ValueError):
            self._controller(sink, fixed_clock, sleeps, max_attempts=0)


class TestRetryOutcome:
    """Tests for RetryOutcome."""

    def test_delete_query_requires_terminal_state(self):
        outcome = RetryOutcome(state=RetryState.BACKOFF, attempts=1)
        with pytest.raises(RuntimeError):
            outcome.delete_query()
