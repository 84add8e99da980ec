"""
Filesystem blob sink.

Archive files are written below a base directory that must already exist.
Writes go to a temporary file in the same directory which is fsynced and
hard-linked into place, so a half-written blob is never visible at its final
path.

Invariants:
    - The base directory is never created by the sink
    - Archive files are created once and never replaced or modified
    - Rewriting an archive file with identical bytes is a no-op
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from pathlib import Path

from .base import BlobExistsError, BlobWriteError, SinkError, SinkUnavailableError

logger = logging.getLogger(__name__)


def write_file_atomic(path: Path, data: bytes) -> None:
    """Write data to path via a temporary file and rename."""
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        raise


def write_file_exclusive(path: Path, data: bytes) -> None:
    """Write data to path unless a file already exists there.

    The data is written and fsynced to a temporary file which is then
    hard-linked to path; the link fails if path exists.

    Raises:
        BlobExistsError: If path holds different bytes
    """
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        try:
            os.link(tmp_path, path)
        except FileExistsError:
            if path.read_bytes() != data:
                raise BlobExistsError(f"{path} already holds a different archive")
    finally:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass


class FilesystemSink:
    """Blob sink writing to a local or mounted directory.

    Attributes:
        root: Base directory for archive files
        recovery_dir: Directory for metadata recovery files
    """

    def __init__(self, location: str, recovery_dir: str = ".") -> None:
        self.root = Path(location)
        self.recovery_dir = Path(recovery_dir)

    @property
    def base_location(self) -> str:
        return str(self.root.resolve())

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise SinkError(f"Path escapes archive root: {path}")
        return target

    async def check(self) -> None:
        if not self.root.is_dir():
            raise SinkUnavailableError(f"{self.root} isn't a valid base path")
        if not os.access(self.root, os.W_OK | os.X_OK):
            raise SinkUnavailableError(f"{self.root} isn't writable")
        logger.info(f"Archive location {self.root} is ready")

    async def ensure_directory(self, path: str) -> None:
        target = self._resolve(path)
        try:
            await asyncio.get_event_loop().run_in_executor(None, os.makedirs, target)
        except FileExistsError:
            if not target.is_dir():
                raise SinkError(f"{target} exists and is not a directory")
        except OSError as e:
            raise SinkError(f"Cannot create directory {target}: {e}") from e

    async def write(self, path: str, data: bytes) -> None:
        try:
            target = self._resolve(path)
            await asyncio.get_event_loop().run_in_executor(None, write_file_exclusive, target, data)
        except BlobExistsError:
            raise
        except (OSError, SinkError) as e:
            raise BlobWriteError(f"Failed to write {path}: {e}") from e

    async def write_recovery_file(self, name: str, data: bytes) -> Path:
        try:
            self.recovery_dir.mkdir(parents=True, exist_ok=True)
            target = self.recovery_dir / name
            await asyncio.get_event_loop().run_in_executor(None, write_file_atomic, target, data)
        except OSError as e:
            raise SinkError(f"Failed to write recovery file {name}: {e}") from e
        return target

    async def close(self) -> None:
        pass
