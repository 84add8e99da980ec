"""
Blob sink abstraction for db-partition archives.

This module provides a pluggable archive backend interface supporting:
- Local or mounted filesystem
- S3 and S3 compatible object storage
- In-memory (for testing)

Invariants:
    - write() returns only after durable storage is confirmed
    - Failed writes must not result in visible partial blobs

How to change safely:
    - New backends must implement the BlobSink protocol
    - Register new backends in create_blob_sink()
"""

from .base import (
    BlobSink,
    BlobExistsError,
    BlobWriteError,
    SinkError,
    SinkUnavailableError,
    create_blob_sink,
)
from .filesystem import FilesystemSink
from .memory import InMemorySink
from .s3 import S3Sink

__all__ = [
    # Protocol and errors
    "BlobSink",
    "SinkError",
    "SinkUnavailableError",
    "BlobWriteError",
    "BlobExistsError",
    # Factory
    "create_blob_sink",
    # Implementations
    "FilesystemSink",
    "InMemorySink",
    "S3Sink",
]
