"""
Partition module for db-partition - the archive-before-delete pipeline.

This module handles:
- Selecting aged records and computing archival statistics
- Grouping the ordered record stream per tenant/source/target/day
- Writing one archive file per group with bounded retries
- Committing reconciliation metadata with a local spill fallback
- Counting and optionally removing archived originals

Invariants:
    - A group is only in the delete query if its archive write was confirmed
    - Cleanup runs after the metadata commit has returned
    - Metadata failures never block archival
"""

from .cleanup import CleanupCoordinator, CleanupResult
from .committer import CommitResult, CommitStatus, MetadataCommitter
from .grouper import GroupIndex, GroupingKey, StreamGrouper
from .pipeline import PartitionPipeline, PipelineOutcome, PipelineResult
from .progress import ProgressEvent, ProgressReporter
from .retry import RetryController, RetryOutcome, RetryState
from .selector import AgeAnalysis, AgeSelector
from .writer import ArchiveBlob, ArchiveWriter, WriteResult

__all__ = [
    "AgeAnalysis",
    "AgeSelector",
    "ArchiveBlob",
    "ArchiveWriter",
    "CleanupCoordinator",
    "CleanupResult",
    "CommitResult",
    "CommitStatus",
    "GroupIndex",
    "GroupingKey",
    "MetadataCommitter",
    "PartitionPipeline",
    "PipelineOutcome",
    "PipelineResult",
    "ProgressEvent",
    "ProgressReporter",
    "RetryController",
    "RetryOutcome",
    "RetryState",
    "StreamGrouper",
    "WriteResult",
]
