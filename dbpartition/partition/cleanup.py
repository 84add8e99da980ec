"""
Cleanup of archived originals from the live store.

By default this only counts and reports the records the delete query
matches. Actual removal needs delete_originals=True and a metadata commit
that left every reconciliation record persisted somewhere.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..store.buffer_store import BufferStore
from ..store.records import DeleteQuery
from .committer import CommitResult

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    """Outcome of the cleanup step.

    Attributes:
        matched: Live records matched by the delete query
        deleted: Live records actually removed
        skipped_reason: Why removal did not happen, if it didn't
    """

    matched: int
    deleted: int = 0
    skipped_reason: str | None = None


class CleanupCoordinator:
    """Counts and optionally removes archived records."""

    def __init__(self, store: BufferStore, delete_originals: bool = False) -> None:
        self.store = store
        self.delete_originals = delete_originals

    async def run(self, delete_query: DeleteQuery, commit: CommitResult) -> CleanupResult:
        """Report and, when enabled, delete the archived originals.

        Args:
            delete_query: Filters for confirmed archive groups only
            commit: Result of the metadata commit, which must have returned first

        Raises:
            StoreError: If the live store cannot be queried
        """
        if not delete_query:
            logger.info("No archived groups, nothing to clean up")
            return CleanupResult(matched=0, skipped_reason="no archived groups")

        matched = await self.store.count_matching(delete_query)
        logger.info(
            f"{matched} archived records in {len(delete_query)} groups can be removed",
            extra={"matched": matched, "groups": len(delete_query)},
        )

        if not self.delete_originals:
            logger.info("Deleting originals is disabled, leaving live records in place")
            return CleanupResult(matched=matched, skipped_reason="deletion disabled")

        if not commit.recorded:
            logger.error("Reconciliation records were not persisted, refusing to delete originals")
            return CleanupResult(matched=matched, skipped_reason="metadata not recorded")

        deleted = await self.store.delete_matching(delete_query)
        return CleanupResult(matched=matched, deleted=deleted)
