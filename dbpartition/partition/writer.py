"""
Archive writer for the partition run.

Turns each group of the GroupIndex into one archive blob and writes it to
the blob sink.

Archive layout:
    <base>/<tenant>/<source>/<target|@status>/<DD-MM-YYYY>/<tenant>-<source>-<target>-<day>.jsonl.gz

An existing archive file is never replaced. When a later run archives
different records for a group that already has a file (late records for a
day whose originals were deleted), they go to the next free version:
    <tenant>-<source>-<target>-<day>.1.jsonl.gz, .2, ...
A version already holding identical bytes counts as written, so re-runs
without deletion stay idempotent.

Path segments are percent-encoded (including "@" and "#"), so the reserved
"@status" segment can never be produced by a real target name.

Each line in the archive is one record:
    {"tenant_id": ..., "source_id": ..., "target": ..., "status": ..., "timestamp": ..., "payload": {...}}

Invariants:
    - Blob paths are a pure function of the GroupingKey and version
    - A blob never overwrites a different archive file
    - The fingerprint is sha256 of the relative path, not of the payload
    - A reconciliation record is only built after the sink confirmed the write
    - Per-blob errors are collected, write() never raises for a single blob

How to change safely:
    - Changing the path layout changes fingerprints; existing metadata rows keep the old ones
    - Archive format changes require a new file extension
"""

from __future__ import annotations

import asyncio
import dataclasses
import gzip
import hashlib
import io
import json
import logging
from dataclasses import dataclass, field
from urllib.parse import quote

from ..sink.base import BlobExistsError, BlobSink, BlobWriteError
from ..store.records import BufferRecord, GroupFilter, ReconciliationRecord
from .grouper import GroupIndex, GroupingKey, day_bounds
from .progress import ProgressCallback, ProgressReporter
from .selector import Clock, to_epoch_ms, utc_now

logger = logging.getLogger(__name__)

STATUS_SEGMENT = "@status"
EMPTY_SEGMENT = "@empty"

# Versions tried per group before the write is reported as failed
MAX_ARCHIVE_VERSIONS = 1000


def path_segment(value: str) -> str:
    """Percent-encode a value for use as a single path segment."""
    if value in (".", ".."):
        return value.replace(".", "%2E")
    return quote(value, safe="") or EMPTY_SEGMENT


def target_segment(key: GroupingKey) -> str:
    return STATUS_SEGMENT if key.is_status else path_segment(key.target or "")


def build_relative_path(key: GroupingKey, compression: str = "gzip", version: int = 0) -> str:
    """Deterministic archive path for a group, relative to the sink root.

    Version 0 has no suffix; later versions hold records of the same group
    archived by later runs, e.g. ".1" before the extension.
    """
    tenant = path_segment(key.tenant_id)
    source = path_segment(key.source_id)
    target = target_segment(key)
    extension = ".jsonl.gz" if compression == "gzip" else ".jsonl"
    suffix = f".{version}" if version else ""
    filename = f"{tenant}-{source}-{target}-{key.day}{suffix}{extension}"
    return f"{tenant}/{source}/{target}/{key.day}/{filename}"


def compute_fingerprint(relative_path: str) -> str:
    """Stable identifier of an archive file, derived from its path."""
    return f"sha256:{hashlib.sha256(relative_path.encode('utf-8')).hexdigest()}"


def build_delete_filter(key: GroupingKey) -> GroupFilter:
    """Live store filter selecting exactly the records of one group."""
    start_ms, end_ms = day_bounds(key.day)
    return GroupFilter(
        tenant_id=key.tenant_id,
        source_id=key.source_id,
        target=key.target,
        status=key.is_status,
        start_ms=start_ms,
        end_ms=end_ms,
    )


@dataclass
class ArchiveBlob:
    """A serialized group ready to be written.

    Attributes:
        key: Group the blob was built from
        relative_path: Path below the sink root
        data: Serialized (and possibly compressed) records
        fingerprint: sha256 of relative_path
        delete_filter: Live store filter for the group's records
        record_count: Number of records in the blob
        first_timestamp: Oldest record timestamp (Unix ms)
        last_timestamp: Newest record timestamp (Unix ms)
        version: Archive file version, 0 for the first file of the group
    """

    key: GroupingKey
    relative_path: str
    data: bytes
    fingerprint: str
    delete_filter: GroupFilter
    record_count: int
    first_timestamp: int
    last_timestamp: int
    version: int = 0

    @property
    def directory(self) -> str:
        return self.relative_path.rsplit("/", 1)[0]


@dataclass
class WrittenBlob:
    """A blob whose write was confirmed, with its reconciliation record."""

    blob: ArchiveBlob
    record: ReconciliationRecord


@dataclass
class FailedBlob:
    """A blob whose write failed."""

    blob: ArchiveBlob
    error: str


@dataclass
class WriteResult:
    """Outcome of one write pass: a partition of the attempted blobs."""

    succeeded: list[WrittenBlob] = field(default_factory=list)
    failed: list[FailedBlob] = field(default_factory=list)


class ArchiveWriter:
    """Serializes groups and writes them to a blob sink.

    Example:
        >>> writer = ArchiveWriter(sink)
        >>> blobs = writer.prepare(index)
        >>> result = await writer.write(blobs)
        >>> [w.blob.relative_path for w in result.succeeded]
    """

    def __init__(
        self,
        sink: BlobSink,
        compression: str = "gzip",
        clock: Clock = utc_now,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Initialize the archive writer.

        Args:
            sink: Blob sink to write to
            compression: Compression algorithm ("gzip" or "none")
            clock: UTC clock used for write timestamps
            on_progress: Optional progress callback
        """
        self.sink = sink
        self.compression = compression
        self.clock = clock
        self.on_progress = on_progress

    def prepare(self, index: GroupIndex) -> list[ArchiveBlob]:
        """Build one blob per group, in group insertion order."""
        return [self.build_blob(key, records) for key, records in index.items()]

    def build_blob(self, key: GroupingKey, records: list[BufferRecord]) -> ArchiveBlob:
        relative_path = build_relative_path(key, self.compression)
        return ArchiveBlob(
            key=key,
            relative_path=relative_path,
            data=self._serialize_group(records),
            fingerprint=compute_fingerprint(relative_path),
            delete_filter=build_delete_filter(key),
            record_count=len(records),
            first_timestamp=records[0].timestamp,
            last_timestamp=records[-1].timestamp,
        )

    async def ensure_directories(self, blobs: list[ArchiveBlob]) -> None:
        """Create the directories for all blobs concurrently.

        Failures are only logged; the affected writes fail later and go
        through the normal retry path.
        """
        directories = list(dict.fromkeys(b.directory for b in blobs))
        results = await asyncio.gather(
            *(self.sink.ensure_directory(d) for d in directories),
            return_exceptions=True,
        )
        for directory, result in zip(directories, results):
            if isinstance(result, Exception):
                logger.warning(
                    f"Could not create directory {directory}: {result}",
                    extra={"directory": directory},
                )

    async def write(self, blobs: list[ArchiveBlob], label: str = "writing") -> WriteResult:
        """Write blobs one at a time in the given order.

        Args:
            blobs: Blobs to write
            label: Phase name used for progress notices

        Returns:
            WriteResult partitioning blobs into succeeded and failed
        """
        result = WriteResult()
        progress = ProgressReporter(label, sum(b.record_count for b in blobs), self.on_progress)

        await self.ensure_directories(blobs)

        for blob in blobs:
            try:
                stored = await self._store(blob)
            except Exception as e:
                logger.error(
                    f"Failed to write {blob.relative_path}: {e}",
                    extra={"path": blob.relative_path, "fingerprint": blob.fingerprint},
                )
                result.failed.append(FailedBlob(blob=blob, error=str(e)))
                continue

            result.succeeded.append(WrittenBlob(blob=stored, record=self._reconcile(stored)))
            progress.advance(stored.record_count)

        summary = None
        if result.failed:
            summary = f"{len(result.succeeded)} written, {len(result.failed)} failed"
        progress.finish(summary)

        logger.info(
            f"Wrote {len(result.succeeded)} of {len(blobs)} archive files",
            extra={"succeeded": len(result.succeeded), "failed": len(result.failed)},
        )
        return result

    async def _store(self, blob: ArchiveBlob) -> ArchiveBlob:
        """Write blob at its first free version.

        Returns:
            The blob as stored, with the relative path and fingerprint of
            the version that was written or already held identical bytes

        Raises:
            BlobWriteError: If the write failed or no free version is left
        """
        candidate = self.with_version(blob, 0)
        while True:
            try:
                await self.sink.write(candidate.relative_path, candidate.data)
                return candidate
            except BlobExistsError:
                if candidate.version + 1 >= MAX_ARCHIVE_VERSIONS:
                    raise BlobWriteError(
                        f"No free archive version left for {blob.relative_path}"
                    )
                logger.info(
                    f"{candidate.relative_path} already holds other records, trying the next version",
                    extra={"path": candidate.relative_path, "version": candidate.version + 1},
                )
                candidate = self.with_version(blob, candidate.version + 1)

    def with_version(self, blob: ArchiveBlob, version: int) -> ArchiveBlob:
        if blob.version == version:
            return blob
        relative_path = build_relative_path(blob.key, self.compression, version)
        return dataclasses.replace(
            blob,
            relative_path=relative_path,
            fingerprint=compute_fingerprint(relative_path),
            version=version,
        )

    def _reconcile(self, blob: ArchiveBlob) -> ReconciliationRecord:
        key = blob.key
        return ReconciliationRecord(
            tenant_id=key.tenant_id,
            source_id=key.source_id,
            target=key.target,
            status=key.is_status,
            day=key.day,
            written_at=to_epoch_ms(self.clock()),
            base_location=self.sink.base_location,
            relative_path=blob.relative_path,
            fingerprint=blob.fingerprint,
            record_count=blob.record_count,
            size_bytes=len(blob.data),
            first_timestamp=blob.first_timestamp,
            last_timestamp=blob.last_timestamp,
        )

    def _serialize_group(self, records: list[BufferRecord]) -> bytes:
        """Serialize records to JSONL format with optional compression."""
        lines = [json.dumps(r.to_dict(), separators=(",", ":")) + "\n" for r in records]
        content = "".join(lines).encode("utf-8")

        if self.compression == "gzip":
            buf = io.BytesIO()
            # mtime=0 keeps the bytes of a re-archived group identical
            with gzip.GzipFile(fileobj=buf, mode="wb", mtime=0) as gz:
                gz.write(content)
            return buf.getvalue()

        return content
