"""
Partition pipeline orchestrator.

Runs the stages of one partition run strictly in order:

    bootstrap -> analyse -> (stop if analyse-only) -> group -> write/retry
              -> commit metadata -> cleanup

Each stage returns a typed result that the next one consumes, so the
archive-before-delete ordering is visible in run() itself.

Invariants:
    - Nothing is written if bootstrap, analysis or streaming fails
    - Cleanup only sees the delete query of confirmed writes
    - Cleanup only starts after the metadata commit has returned
    - Failures after a write never remove written archive files

How to change safely:
    - New stages go between existing ones, never before the commit for anything that deletes
    - Keep PipelineOutcome exit codes stable, schedulers alert on them
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum

from ..config import PartitionConfig
from ..sink.base import BlobSink, SinkError, create_blob_sink
from ..store.base import StoreError
from ..store.buffer_store import BufferStore
from ..store.metadata_store import MetadataStore
from .cleanup import CleanupCoordinator, CleanupResult
from .committer import CommitResult, MetadataCommitter
from .grouper import StreamGrouper
from .progress import ProgressCallback
from .retry import RetryController, RetryOutcome, Sleep
from .selector import AgeAnalysis, AgeSelector, Clock, utc_now
from .writer import ArchiveWriter

logger = logging.getLogger(__name__)


class PipelineOutcome(Enum):
    """Terminal outcome of a partition run."""

    COMPLETED = "completed"
    ANALYSED = "analysed"
    CONFIG_ERROR = "config_error"
    STORE_UNAVAILABLE = "store_unavailable"
    ARCHIVE_UNAVAILABLE = "archive_unavailable"
    STREAM_FAILED = "stream_failed"
    INCOMPLETE = "incomplete"
    CLEANUP_FAILED = "cleanup_failed"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    PipelineOutcome.COMPLETED: 0,
    PipelineOutcome.ANALYSED: 0,
    PipelineOutcome.CONFIG_ERROR: 2,
    PipelineOutcome.STORE_UNAVAILABLE: 3,
    PipelineOutcome.ARCHIVE_UNAVAILABLE: 4,
    PipelineOutcome.STREAM_FAILED: 5,
    PipelineOutcome.INCOMPLETE: 6,
    PipelineOutcome.CLEANUP_FAILED: 7,
}


@dataclass
class PipelineResult:
    """Everything a partition run produced.

    Attributes:
        outcome: Terminal outcome
        analysis: Age statistics, if analysis ran
        groups: Number of archive groups built
        retry: Write outcome, if writing ran
        commit: Metadata commit result, if it ran
        cleanup: Cleanup result, if it ran
        error: Error message for failed outcomes
        duration_ms: Total run duration
    """

    outcome: PipelineOutcome
    analysis: AgeAnalysis | None = None
    groups: int = 0
    retry: RetryOutcome | None = None
    commit: CommitResult | None = None
    cleanup: CleanupResult | None = None
    error: str | None = None
    duration_ms: int = 0

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code


class PartitionPipeline:
    """Sequences one partition run.

    Example:
        >>> pipeline = PartitionPipeline.from_config(config)
        >>> result = await pipeline.run()
        >>> sys.exit(result.exit_code)
    """

    def __init__(
        self,
        store: BufferStore,
        metadata_store: MetadataStore,
        sink: BlobSink,
        retention_days: int = 28,
        analyse_only: bool = False,
        delete_originals: bool = False,
        max_attempts: int = 5,
        backoff_seconds: int = 5,
        compression: str = "gzip",
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.store = store
        self.metadata_store = metadata_store
        self.sink = sink
        self.analyse_only = analyse_only

        self.selector = AgeSelector(store, retention_days=retention_days, clock=clock)
        self.grouper = StreamGrouper(store, on_progress=on_progress)
        self.writer = ArchiveWriter(
            sink, compression=compression, clock=clock, on_progress=on_progress
        )
        self.retry = RetryController(
            self.writer,
            max_attempts=max_attempts,
            backoff_seconds=backoff_seconds,
            sleep=sleep,
        )
        self.committer = MetadataCommitter(metadata_store, sink, clock=clock)
        self.cleanup = CleanupCoordinator(store, delete_originals=delete_originals)

    @classmethod
    def from_config(
        cls,
        config: PartitionConfig,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> PartitionPipeline:
        """Build a pipeline and its collaborators from configuration."""
        store = BufferStore(
            config.store.db_path,
            collection=config.store.collection,
            busy_timeout_ms=config.store.busy_timeout_ms,
            stream_batch_size=config.store.stream_batch_size,
        )
        metadata_store = MetadataStore(
            config.store.db_path,
            collection=config.store.meta_collection,
            busy_timeout_ms=config.store.busy_timeout_ms,
        )
        return cls(
            store=store,
            metadata_store=metadata_store,
            sink=create_blob_sink(config),
            retention_days=config.retention.days,
            analyse_only=config.retention.analyse_only,
            delete_originals=config.retention.delete_originals,
            max_attempts=config.retry.max_attempts,
            backoff_seconds=config.retry.backoff_seconds,
            compression=config.archive.compression,
            clock=clock,
            sleep=sleep,
        )

    def request_shutdown(self) -> None:
        """Abandon remaining write retries; stages already running finish."""
        self.retry.abandon()

    async def run(self) -> PipelineResult:
        """Execute the run and return its terminal result."""
        start_time = time.time()
        try:
            result = await self._run()
        finally:
            await self.sink.close()
        result.duration_ms = int((time.time() - start_time) * 1000)

        logger.info(
            f"Partition run finished: {result.outcome.value}",
            extra={
                "outcome": result.outcome.value,
                "exit_code": result.exit_code,
                "duration_ms": result.duration_ms,
            },
        )
        return result

    async def _run(self) -> PipelineResult:
        failure = await self._bootstrap()
        if failure is not None:
            return failure

        try:
            analysis = await self.selector.analyse()
        except StoreError as e:
            logger.error(f"Analysis failed: {e}", exc_info=True)
            return PipelineResult(PipelineOutcome.STORE_UNAVAILABLE, error=str(e))

        if self.analyse_only:
            logger.info("Analyse only mode, stopping before any writes")
            return PipelineResult(PipelineOutcome.ANALYSED, analysis=analysis)

        try:
            index = await self.grouper.build(analysis.query, analysis.eligible)
        except StoreError as e:
            logger.error(f"Streaming records failed, nothing was archived: {e}", exc_info=True)
            return PipelineResult(PipelineOutcome.STREAM_FAILED, analysis=analysis, error=str(e))

        blobs = self.writer.prepare(index)
        groups = len(index)
        del index

        retry = await self.retry.run(blobs)
        commit = await self.committer.commit(retry.reconciliation_records)

        result = PipelineResult(
            PipelineOutcome.COMPLETED,
            analysis=analysis,
            groups=groups,
            retry=retry,
            commit=commit,
        )

        try:
            result.cleanup = await self.cleanup.run(retry.delete_query(), commit)
        except StoreError as e:
            logger.error(f"Cleanup failed, archive files are kept: {e}", exc_info=True)
            result.outcome = PipelineOutcome.CLEANUP_FAILED
            result.error = str(e)
            return result

        if not retry.all_succeeded:
            result.outcome = PipelineOutcome.INCOMPLETE
            result.error = f"{len(retry.failed)} archive files could not be written"
        return result

    async def _bootstrap(self) -> PipelineResult | None:
        """Check the live store, metadata table and archive location."""
        try:
            await self.store.check_collection()
            await self.metadata_store.ensure_collection()
        except StoreError as e:
            logger.error(f"Live store unavailable: {e}")
            return PipelineResult(PipelineOutcome.STORE_UNAVAILABLE, error=str(e))

        try:
            await self.sink.check()
        except SinkError as e:
            logger.error(f"Archive location unavailable: {e}")
            return PipelineResult(PipelineOutcome.ARCHIVE_UNAVAILABLE, error=str(e))

        return None
