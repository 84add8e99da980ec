"""
Configuration management for db-partition.

All configuration is done via environment variables; command-line flags
in main.py may override a few of them for one-off runs.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults except the live store and archive locations
    - Deleting originals is off unless explicitly enabled
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - New archive backends need an ArchiveBackend member and a sink in sink/
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class ArchiveBackend(Enum):
    """Supported archive backends."""

    FILESYSTEM = "filesystem"
    S3 = "s3"


@dataclass(frozen=True)
class StoreConfig:
    """Live store (SQLite) configuration.

    Attributes:
        db_path: Path to the SQLite database holding the records
        collection: Table holding the live records
        meta_collection: Table receiving reconciliation rows
        busy_timeout_ms: SQLite busy timeout in milliseconds
        stream_batch_size: Rows fetched per cursor read
    """

    db_path: str | None = None
    collection: str = "buffers"
    meta_collection: str = "buffersMeta"
    busy_timeout_ms: int = 5000
    stream_batch_size: int = 1000

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("PARTITION_DB_PATH"),
            collection=os.getenv("PARTITION_COLLECTION", "buffers"),
            meta_collection=os.getenv("PARTITION_META_COLLECTION", "buffersMeta"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            stream_batch_size=int(os.getenv("PARTITION_STREAM_BATCH_SIZE", "1000")),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for the object storage archive backend.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        archive_prefix: Key prefix for archive files
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = ""
    region: str = "us-east-1"
    endpoint_url: str | None = None
    archive_prefix: str = "archive"
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", ""),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            archive_prefix=os.getenv("S3_ARCHIVE_PREFIX", "archive"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class ArchiveConfig:
    """Archive sink configuration.

    Attributes:
        backend: Which archive backend to write to
        location: Base directory for the filesystem backend
        compression: Compression algorithm (gzip, none)
        recovery_dir: Local directory for metadata recovery files
    """

    backend: ArchiveBackend = ArchiveBackend.FILESYSTEM
    location: str | None = None
    compression: str = "gzip"
    recovery_dir: str = "."

    @classmethod
    def from_env(cls) -> ArchiveConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If ARCHIVE_BACKEND is not a known backend.
        """
        backend_str = os.getenv("ARCHIVE_BACKEND", "filesystem").lower()
        try:
            backend = ArchiveBackend(backend_str)
        except ValueError:
            valid = ", ".join(b.value for b in ArchiveBackend)
            raise ValueError(f"Invalid ARCHIVE_BACKEND '{backend_str}'. Must be one of: {valid}")

        return cls(
            backend=backend,
            location=os.getenv("ARCHIVE_LOCATION"),
            compression=os.getenv("ARCHIVE_COMPRESSION", "gzip"),
            recovery_dir=os.getenv("ARCHIVE_RECOVERY_DIR", "."),
        )


@dataclass(frozen=True)
class RetentionConfig:
    """Retention window and run mode.

    Attributes:
        days: Records older than this many whole days are archived
        analyse_only: Stop after computing statistics
        delete_originals: Remove archived records from the live store
    """

    days: int = 28
    analyse_only: bool = False
    delete_originals: bool = False

    @classmethod
    def from_env(cls) -> RetentionConfig:
        """Load configuration from environment variables."""
        return cls(
            days=int(os.getenv("PARTITION_RETENTION_DAYS", "28")),
            analyse_only=_env_bool("PARTITION_ANALYSE_ONLY", "false"),
            delete_originals=_env_bool("PARTITION_DELETE_ORIGINALS", "false"),
        )


@dataclass(frozen=True)
class RetryConfig:
    """Archive write retry configuration.

    Attributes:
        max_attempts: Write attempts before a group is reported as failed
        backoff_seconds: Wait between attempts
    """

    max_attempts: int = 5
    backoff_seconds: int = 5

    @classmethod
    def from_env(cls) -> RetryConfig:
        """Load configuration from environment variables."""
        return cls(
            max_attempts=int(os.getenv("ARCHIVE_MAX_ATTEMPTS", "5")),
            backoff_seconds=int(os.getenv("ARCHIVE_RETRY_BACKOFF_SECONDS", "5")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class PartitionConfig:
    """Complete partition run configuration.

    Attributes:
        store: Live store configuration
        archive: Archive sink configuration
        s3: S3 configuration (if archive backend is S3)
        retention: Retention window and run mode
        retry: Write retry configuration
        observability: Logging configuration
    """

    store: StoreConfig = field(default_factory=StoreConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    s3: S3Config = field(default_factory=S3Config)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> PartitionConfig:
        """Load complete configuration from environment variables.

        Returns:
            PartitionConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            store=StoreConfig.from_env(),
            archive=ArchiveConfig.from_env(),
            s3=S3Config.from_env(),
            retention=RetentionConfig.from_env(),
            retry=RetryConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.store.db_path:
            raise ValueError("PARTITION_DB_PATH is required")
        for name in (self.store.collection, self.store.meta_collection):
            if not name or not all(c.isalnum() or c == "_" for c in name):
                raise ValueError(f"Invalid collection name '{name}'")

        if self.archive.backend == ArchiveBackend.FILESYSTEM:
            if not self.archive.location:
                raise ValueError("ARCHIVE_LOCATION is required when ARCHIVE_BACKEND=filesystem")
        elif self.archive.backend == ArchiveBackend.S3:
            if not self.s3.bucket:
                raise ValueError("S3_BUCKET is required when ARCHIVE_BACKEND=s3")

        if self.archive.compression not in ("gzip", "none"):
            raise ValueError(
                f"Invalid ARCHIVE_COMPRESSION '{self.archive.compression}'. Must be gzip or none"
            )

        if self.retention.days < 0:
            raise ValueError("PARTITION_RETENTION_DAYS must not be negative")
        if self.retry.max_attempts < 1:
            raise ValueError("ARCHIVE_MAX_ATTEMPTS must be at least 1")
        if self.retry.backoff_seconds < 0:
            raise ValueError("ARCHIVE_RETRY_BACKOFF_SECONDS must not be negative")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Partition configuration loaded",
            extra={
                "db_path": self.store.db_path,
                "collection": self.store.collection,
                "meta_collection": self.store.meta_collection,
                "archive_backend": self.archive.backend.value,
                "archive_location": self.archive.location
                if self.archive.backend == ArchiveBackend.FILESYSTEM
                else None,
                "s3_bucket": self.s3.bucket if self.archive.backend == ArchiveBackend.S3 else None,
                "retention_days": self.retention.days,
                "analyse_only": self.retention.analyse_only,
                "delete_originals": self.retention.delete_originals,
                "max_attempts": self.retry.max_attempts,
                "log_level": self.observability.log_level,
            },
        )
        if self.retention.delete_originals:
            logger.warning("Deleting originals is enabled, archived records will be removed")
