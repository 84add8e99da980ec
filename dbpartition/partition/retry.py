"""
Bounded retry of archive writes.

The controller drives the archive writer through a small state machine:

    WRITING -> EVALUATING -> DONE
                          -> BACKOFF -> WRITING (failed subset only)
                          -> PERMANENT_FAILURE

Attempts are counted from 1. After attempt N the controller stops with
PERMANENT_FAILURE when N has reached max_attempts, so an always failing
blob is tried exactly max_attempts times.

abandon() stops further attempts: the current write pass finishes, a pending
backoff is cut short, and any blob still failing ends in PERMANENT_FAILURE.

Invariants:
    - Only blobs that failed the previous attempt are written again
    - The succeeded set is cumulative across attempts
    - The delete query is built only from the succeeded set, after a terminal state
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from ..store.records import DeleteQuery, ReconciliationRecord
from .writer import ArchiveBlob, ArchiveWriter, FailedBlob, WrittenBlob

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class RetryState(Enum):
    """States of the write retry state machine."""

    WRITING = "writing"
    EVALUATING = "evaluating"
    BACKOFF = "backoff"
    DONE = "done"
    PERMANENT_FAILURE = "permanent_failure"


TERMINAL_STATES = (RetryState.DONE, RetryState.PERMANENT_FAILURE)


@dataclass
class RetryOutcome:
    """Terminal result of a retry run.

    Attributes:
        state: DONE or PERMANENT_FAILURE
        attempts: Number of write attempts made
        succeeded: Every blob confirmed written, across all attempts
        failed: Blobs still failing when the controller stopped
        transitions: States visited, in order
    """

    state: RetryState
    attempts: int
    succeeded: list[WrittenBlob] = field(default_factory=list)
    failed: list[FailedBlob] = field(default_factory=list)
    transitions: list[RetryState] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return self.state == RetryState.DONE

    @property
    def reconciliation_records(self) -> list[ReconciliationRecord]:
        return [w.record for w in self.succeeded]

    def delete_query(self) -> DeleteQuery:
        """Filters for every confirmed group, and nothing else."""
        if self.state not in TERMINAL_STATES:
            raise RuntimeError("Delete query requested before retries finished")
        query = DeleteQuery()
        for written in self.succeeded:
            query.add(written.blob.delete_filter)
        return query


class RetryController:
    """Writes blobs with bounded retries and a fixed backoff.

    Example:
        >>> controller = RetryController(writer, max_attempts=5, backoff_seconds=5)
        >>> outcome = await controller.run(writer.prepare(index))
        >>> outcome.state
        <RetryState.DONE: 'done'>
    """

    def __init__(
        self,
        writer: ArchiveWriter,
        max_attempts: int = 5,
        backoff_seconds: int = 5,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the retry controller.

        Args:
            writer: Archive writer performing each write pass
            max_attempts: Write attempts before giving up on a blob
            backoff_seconds: Wait between attempts
            sleep: Awaitable sleep, replaced in tests
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.writer = writer
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep
        self._abandoned = False

    def abandon(self) -> None:
        """Give up remaining retries, e.g. on shutdown."""
        if not self._abandoned:
            logger.warning("Abandoning remaining archive write retries")
        self._abandoned = True

    async def run(self, blobs: list[ArchiveBlob]) -> RetryOutcome:
        """Write blobs until all succeed or attempts are exhausted."""
        state = RetryState.WRITING
        attempt = 1
        pending = list(blobs)
        succeeded: list[WrittenBlob] = []
        failed: list[FailedBlob] = []
        transitions = [state]

        while state not in TERMINAL_STATES:
            if state == RetryState.WRITING:
                result = await self.writer.write(
                    pending, label=f"writing (attempt {attempt}/{self.max_attempts})"
                )
                succeeded.extend(result.succeeded)
                failed = result.failed
                state = RetryState.EVALUATING

            elif state == RetryState.EVALUATING:
                if not failed:
                    state = RetryState.DONE
                elif attempt >= self.max_attempts or self._abandoned:
                    state = RetryState.PERMANENT_FAILURE
                else:
                    state = RetryState.BACKOFF

            elif state == RetryState.BACKOFF:
                logger.warning(
                    f"{len(failed)} archive files failed on attempt {attempt}/{self.max_attempts}",
                    extra={"attempt": attempt, "failed": len(failed)},
                )
                await self._countdown()
                if self._abandoned:
                    state = RetryState.PERMANENT_FAILURE
                else:
                    pending = [f.blob for f in failed]
                    attempt += 1
                    state = RetryState.WRITING

            transitions.append(state)

        outcome = RetryOutcome(
            state=state,
            attempts=attempt,
            succeeded=succeeded,
            failed=failed,
            transitions=transitions,
        )
        self._report(outcome)
        return outcome

    async def _countdown(self) -> None:
        for remaining in range(self.backoff_seconds, 0, -1):
            if self._abandoned:
                return
            logger.info(f"Retrying failed writes in {remaining}s", extra={"remaining": remaining})
            await self.sleep(1)

    def _report(self, outcome: RetryOutcome) -> None:
        if outcome.state == RetryState.DONE:
            logger.info(
                f"All {len(outcome.succeeded)} archive files written after {outcome.attempts} attempt(s)",
                extra={"attempts": outcome.attempts, "succeeded": len(outcome.succeeded)},
            )
            return

        logger.error(
            f"{len(outcome.failed)} archive files still failing after {outcome.attempts} attempts, "
            "their records will not be deleted",
            extra={"attempts": outcome.attempts, "failed": len(outcome.failed)},
        )
        for failure in outcome.failed:
            blob = failure.blob
            logger.error(
                f"Permanently failed: {blob.relative_path} ({blob.record_count} records): {failure.error}",
                extra={
                    "path": blob.relative_path,
                    "tenant_id": blob.key.tenant_id,
                    "source_id": blob.key.source_id,
                    "target": blob.key.target,
                    "day": blob.key.day,
                },
            )
