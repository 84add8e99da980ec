"""
Stream grouping for the partition run.

Folds the ordered stream of aged records into a GroupIndex keyed by
(tenant, source, target-or-status, day). The index is built in memory for
the length of one run and consumed once by the archive writer.

Invariants:
    - Every record lands in exactly one group
    - Records within a group keep the stream's ascending timestamp order
    - Status records never share a key with target records
    - A stream error discards the partial index
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from ..store.buffer_store import BufferStore
from ..store.records import AgeQuery, BufferRecord
from .progress import ProgressCallback, ProgressReporter

logger = logging.getLogger(__name__)

DAY_FORMAT = "%d-%m-%Y"


def day_of(timestamp_ms: int) -> str:
    """UTC calendar day of a timestamp, formatted DD-MM-YYYY."""
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.strftime(DAY_FORMAT)


def day_bounds(day: str) -> tuple[int, int]:
    """First and last millisecond (inclusive) of a DD-MM-YYYY UTC day."""
    start = datetime.strptime(day, DAY_FORMAT).replace(tzinfo=timezone.utc)
    start_ms = int(start.timestamp() * 1000)
    end_ms = int((start + timedelta(days=1)).timestamp() * 1000) - 1
    return start_ms, end_ms


@dataclass(frozen=True)
class GroupingKey:
    """Identifies one archive group.

    Attributes:
        tenant_id: Tenant identifier
        source_id: Source identifier
        target: Target name, None for the status group
        day: UTC day, DD-MM-YYYY
    """

    tenant_id: str
    source_id: str
    target: str | None
    day: str

    @property
    def is_status(self) -> bool:
        return self.target is None

    @classmethod
    def for_record(cls, record: BufferRecord) -> GroupingKey:
        return cls(
            tenant_id=record.tenant_id,
            source_id=record.source_id,
            target=None if record.status else (record.target or ""),
            day=day_of(record.timestamp),
        )


class GroupIndex:
    """Archive groups keyed by GroupingKey, in first-seen order."""

    def __init__(self) -> None:
        self._groups: dict[GroupingKey, list[BufferRecord]] = {}
        self.record_count = 0

    def add(self, record: BufferRecord) -> GroupingKey:
        key = GroupingKey.for_record(record)
        self._groups.setdefault(key, []).append(record)
        self.record_count += 1
        return key

    def keys(self) -> list[GroupingKey]:
        return list(self._groups)

    def items(self) -> Iterator[tuple[GroupingKey, list[BufferRecord]]]:
        return iter(self._groups.items())

    def __getitem__(self, key: GroupingKey) -> list[BufferRecord]:
        return self._groups[key]

    def __contains__(self, key: object) -> bool:
        return key in self._groups

    def __len__(self) -> int:
        return len(self._groups)

    def tenants(self) -> dict[str, dict[str, dict[str | None, list[str]]]]:
        """Nested tenant -> source -> target -> days view, for reporting."""
        tree: dict[str, dict[str, dict[str | None, list[str]]]] = {}
        for key in self._groups:
            days = tree.setdefault(key.tenant_id, {}).setdefault(key.source_id, {})
            days.setdefault(key.target, []).append(key.day)
        return tree


class StreamGrouper:
    """Builds a GroupIndex from the live store's ordered cursor."""

    def __init__(self, store: BufferStore, on_progress: ProgressCallback | None = None) -> None:
        self.store = store
        self.on_progress = on_progress

    async def build(self, query: AgeQuery, expected: int) -> GroupIndex:
        """Stream the eligible records into a new index.

        Args:
            query: Age query selecting the eligible records
            expected: Eligible count, used for progress percentages

        Returns:
            The finalized GroupIndex

        Raises:
            StoreError: If the cursor fails; no partial index is returned
        """
        index = GroupIndex()
        progress = ProgressReporter("grouping", expected, self.on_progress)

        async for record in self.store.stream(query):
            index.add(record)
            progress.advance()

        progress.finish()

        if index.record_count != expected:
            logger.warning(
                f"Streamed {index.record_count} records but {expected} were counted",
                extra={"streamed": index.record_count, "expected": expected},
            )

        logger.info(
            f"Organised {index.record_count} records into {len(index)} groups",
            extra={"records": index.record_count, "groups": len(index)},
        )
        return index
