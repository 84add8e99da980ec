"""
Base protocol and errors for archive blob sinks.

A blob sink is the durable secondary storage archive files are written to.
All backends must provide the same guarantees so the partition pipeline can
treat them interchangeably.

Invariants:
    - write() returns only after the blob is durably stored
    - A failed write never leaves a blob visible at its final path
    - A stored blob is never replaced; writing identical bytes again is a no-op
    - ensure_directory() is idempotent
    - Recovery files are always written to local disk

How to change safely:
    - Protocol changes require updating all implementations
    - New backends must be registered in create_blob_sink()
"""

from __future__ import annotations

from abc import abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import PartitionConfig


class SinkError(Exception):
    """Base exception for blob sink operations."""

    pass


class SinkUnavailableError(SinkError):
    """The archive location is missing or not writable."""

    pass


class BlobWriteError(SinkError):
    """Writing a single blob failed."""

    pass


class BlobExistsError(BlobWriteError):
    """A different blob is already stored at the path."""

    pass


@runtime_checkable
class BlobSink(Protocol):
    """Protocol for archive blob sinks.

    Paths passed to the sink are relative to its base location and always
    use "/" as separator.

    Example:
        >>> sink = FilesystemSink("/mnt/archive")
        >>> await sink.check()
        >>> await sink.ensure_directory("t1/s1/%23chan/01-02-2024")
        >>> await sink.write("t1/s1/%23chan/01-02-2024/t1-s1-%23chan-01-02-2024.jsonl.gz", data)
    """

    @property
    @abstractmethod
    def base_location(self) -> str:
        """Root of the archive, recorded in reconciliation rows."""
        ...

    @abstractmethod
    async def check(self) -> None:
        """Verify the archive location is usable.

        Raises:
            SinkUnavailableError: If the location is missing or not writable
        """
        ...

    @abstractmethod
    async def ensure_directory(self, path: str) -> None:
        """Make sure a directory (or key prefix) exists.

        Creating an existing directory is not an error.

        Raises:
            SinkError: If the directory cannot be created
        """
        ...

    @abstractmethod
    async def write(self, path: str, data: bytes) -> None:
        """Write a blob.

        Returns only after the blob is durably stored.
        Writing the bytes already stored at path succeeds without
        touching the stored blob.

        Raises:
            BlobExistsError: If different bytes are already stored at path
            BlobWriteError: If the write failed; nothing is visible at path
        """
        ...

    @abstractmethod
    async def write_recovery_file(self, name: str, data: bytes) -> Path:
        """Write a local recovery file.

        Returns:
            Path of the written file

        Raises:
            SinkError: If the file cannot be written
        """
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...


def create_blob_sink(config: PartitionConfig) -> BlobSink:
    """Factory function to create a blob sink from configuration.

    Args:
        config: Partition configuration

    Returns:
        Appropriate BlobSink implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import ArchiveBackend
    from .filesystem import FilesystemSink

    if config.archive.backend == ArchiveBackend.FILESYSTEM:
        return FilesystemSink(config.archive.location, recovery_dir=config.archive.recovery_dir)
    elif config.archive.backend == ArchiveBackend.S3:
        from .s3 import S3Sink

        return S3Sink(config.s3, recovery_dir=config.archive.recovery_dir)
    else:
        raise ValueError(f"Unsupported archive backend: {config.archive.backend}")
