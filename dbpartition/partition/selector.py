"""
Age selection for the partition run.

The cutoff is the start of the current UTC day minus the retention window,
so a run archives whole days only and repeated runs on the same day select
the same set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from ..store.buffer_store import BufferStore
from ..store.records import AgeQuery

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


@dataclass(frozen=True)
class AgeAnalysis:
    """Archival statistics for one run.

    Attributes:
        cutoff: Records strictly older than this are eligible
        total: Records in the live store
        eligible: Records older than the cutoff
        percentage: eligible / total * 100, 0 when the store is empty
    """

    cutoff: datetime
    total: int
    eligible: int
    percentage: float

    @property
    def query(self) -> AgeQuery:
        return AgeQuery(cutoff_ms=to_epoch_ms(self.cutoff))


class AgeSelector:
    """Computes the retention cutoff and eligible record counts."""

    def __init__(self, store: BufferStore, retention_days: int = 28, clock: Clock = utc_now) -> None:
        self.store = store
        self.retention_days = retention_days
        self.clock = clock

    def cutoff(self) -> datetime:
        now = self.clock().astimezone(timezone.utc)
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return start_of_day - timedelta(days=self.retention_days)

    def query(self) -> AgeQuery:
        return AgeQuery(cutoff_ms=to_epoch_ms(self.cutoff()))

    async def total_count(self) -> int:
        return await self.store.count()

    async def eligible_count(self, query: AgeQuery) -> int:
        return await self.store.count(query)

    async def analyse(self) -> AgeAnalysis:
        """Count total and eligible records.

        Raises:
            StoreError: If the live store cannot be queried
        """
        cutoff = self.cutoff()
        total = await self.total_count()
        eligible = await self.eligible_count(AgeQuery(cutoff_ms=to_epoch_ms(cutoff)))
        percentage = round(eligible / total * 100, 2) if total else 0.0

        logger.info(
            f"{eligible} of {total} records ({percentage}%) are older than {cutoff.isoformat()}",
            extra={
                "cutoff": cutoff.isoformat(),
                "total": total,
                "eligible": eligible,
                "percentage": percentage,
                "retention_days": self.retention_days,
            },
        )
        return AgeAnalysis(cutoff=cutoff, total=total, eligible=eligible, percentage=percentage)
