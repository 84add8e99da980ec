"""
Record and query types shared by the live store, metadata store and pipeline.

Invariants:
    - BufferRecord is immutable once read from the live store
    - A DeleteQuery only ever holds filters for confirmed archive writes
    - ReconciliationRecord rows are never updated after creation

How to change safely:
    - New ReconciliationRecord fields must have defaults so old recovery files still load
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Iterator


@dataclass(frozen=True)
class BufferRecord:
    """A single archivable record from the live store.

    Attributes:
        tenant_id: Tenant (user) identifier
        source_id: Source (network) identifier
        target: Target name, e.g. a channel or nick
        status: True for status records, which are not tied to a target
        timestamp: Event time (Unix ms)
        payload: Opaque record body
    """

    tenant_id: str
    source_id: str
    target: str | None
    status: bool
    timestamp: int
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "tenant_id": self.tenant_id,
            "source_id": self.source_id,
            "target": self.target,
            "status": self.status,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }


@dataclass(frozen=True)
class AgeQuery:
    """Selects records strictly older than the cutoff."""

    cutoff_ms: int


@dataclass(frozen=True)
class GroupFilter:
    """Live store filter matching exactly one archived group.

    Attributes:
        tenant_id: Tenant identifier
        source_id: Source identifier
        target: Target name, None for the status group
        status: Whether the filter matches status records
        start_ms: First millisecond of the day (inclusive)
        end_ms: Last millisecond of the day (inclusive)
    """

    tenant_id: str
    source_id: str
    target: str | None
    status: bool
    start_ms: int
    end_ms: int


@dataclass
class DeleteQuery:
    """Disjunction of group filters for archived records."""

    filters: list[GroupFilter] = field(default_factory=list)

    def add(self, group_filter: GroupFilter) -> None:
        self.filters.append(group_filter)

    def __len__(self) -> int:
        return len(self.filters)

    def __iter__(self) -> Iterator[GroupFilter]:
        return iter(self.filters)

    def __contains__(self, group_filter: object) -> bool:
        return group_filter in self.filters


@dataclass(frozen=True)
class ReconciliationRecord:
    """Metadata row locating one archive file.

    Attributes:
        tenant_id: Tenant identifier
        source_id: Source identifier
        target: Target name, None for status archives
        status: Whether the archive holds status records
        day: Archived day (DD-MM-YYYY, UTC)
        written_at: When the archive write was confirmed (Unix ms)
        base_location: Archive root (directory or s3://bucket/prefix)
        relative_path: Path of the archive file below base_location
        fingerprint: sha256 of relative_path
        record_count: Number of records in the archive file
        size_bytes: Size of the archive file
        first_timestamp: Oldest archived record timestamp (Unix ms)
        last_timestamp: Newest archived record timestamp (Unix ms)
    """

    tenant_id: str
    source_id: str
    target: str | None
    status: bool
    day: str
    written_at: int
    base_location: str
    relative_path: str
    fingerprint: str
    record_count: int = 0
    size_bytes: int = 0
    first_timestamp: int | None = None
    last_timestamp: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReconciliationRecord:
        """Create from dictionary.

        Raises:
            ValueError: If required fields are missing
        """
        required = [
            "tenant_id",
            "source_id",
            "day",
            "written_at",
            "base_location",
            "relative_path",
            "fingerprint",
        ]
        missing = [f for f in required if f not in data]
        if missing:
            raise ValueError(f"Missing required fields: {missing}")

        return cls(
            tenant_id=data["tenant_id"],
            source_id=data["source_id"],
            target=data.get("target"),
            status=bool(data.get("status", False)),
            day=data["day"],
            written_at=int(data["written_at"]),
            base_location=data["base_location"],
            relative_path=data["relative_path"],
            fingerprint=data["fingerprint"],
            record_count=int(data.get("record_count", 0)),
            size_bytes=int(data.get("size_bytes", 0)),
            first_timestamp=data.get("first_timestamp"),
            last_timestamp=data.get("last_timestamp"),
        )
