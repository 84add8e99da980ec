"""
In-memory blob sink implementation for testing.

This module provides a simple in-memory archive backend for:
- Unit tests
- Integration tests of the whole partition pipeline
- Local dry runs without touching real storage

Failures can be injected per path so retry and permanent-failure paths
can be exercised deterministically.

Invariants:
    - All data is lost on process exit
    - A failed write stores nothing
    - A stored blob is never replaced
    - Provides the same guarantees as the production backends

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the BlobSink protocol
"""

from __future__ import annotations

import logging
from pathlib import Path

from .base import BlobExistsError, BlobWriteError, SinkError, SinkUnavailableError

logger = logging.getLogger(__name__)


class InMemorySink:
    """In-memory implementation of BlobSink for testing.

    Attributes:
        blobs: Written blobs keyed by relative path
        directories: Directories created so far
        recovery_files: Written recovery files keyed by name
        write_attempts: Every path passed to write(), in call order

    Example:
        >>> sink = InMemorySink()
        >>> sink.fail_writes("t1/s1/%23chan/01-02-2024/x.jsonl.gz", times=2)
        >>> await sink.write("t1/s1/%23chan/01-02-2024/x.jsonl.gz", b"...")  # raises
    """

    def __init__(self, location: str = "memory://archive", available: bool = True) -> None:
        self.location = location
        self.available = available
        self.blobs: dict[str, bytes] = {}
        self.directories: set[str] = set()
        self.recovery_files: dict[str, bytes] = {}
        self.write_attempts: list[str] = []
        self.fail_recovery = False
        self._write_failures: dict[str, int | None] = {}
        self._directory_failures: set[str] = set()

    @property
    def base_location(self) -> str:
        return self.location

    # Testing helpers

    def fail_writes(self, path: str, times: int | None = None) -> None:
        """Make writes to path fail.

        Args:
            path: Relative blob path
            times: Number of failures before writes succeed, None for always
        """
        self._write_failures[path] = times

    def fail_directory(self, path: str) -> None:
        """Make ensure_directory(path) fail."""
        self._directory_failures.add(path)

    def attempts_for(self, path: str) -> int:
        """Number of write attempts made for path."""
        return self.write_attempts.count(path)

    # BlobSink protocol

    async def check(self) -> None:
        if not self.available:
            raise SinkUnavailableError(f"{self.location} is not available")

    async def ensure_directory(self, path: str) -> None:
        if path in self._directory_failures:
            raise SinkError(f"Cannot create directory {path}")
        self.directories.add(path)

    async def write(self, path: str, data: bytes) -> None:
        self.write_attempts.append(path)

        if path in self._write_failures:
            remaining = self._write_failures[path]
            if remaining is None:
                raise BlobWriteError(f"Injected write failure for {path}")
            if remaining > 0:
                self._write_failures[path] = remaining - 1
                raise BlobWriteError(f"Injected write failure for {path}")

        directory = path.rsplit("/", 1)[0] if "/" in path else ""
        if directory and directory not in self.directories:
            raise BlobWriteError(f"Directory {directory} does not exist")

        existing = self.blobs.get(path)
        if existing is not None:
            if existing != data:
                raise BlobExistsError(f"{path} already holds a different archive")
            return

        self.blobs[path] = bytes(data)

    async def write_recovery_file(self, name: str, data: bytes) -> Path:
        if self.fail_recovery:
            raise SinkError(f"Injected recovery write failure for {name}")
        self.recovery_files[name] = bytes(data)
        return Path(name)

    async def close(self) -> None:
        pass
