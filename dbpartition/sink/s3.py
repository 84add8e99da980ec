"""
S3 blob sink.

Archive files are uploaded as single objects below the configured prefix:
    s3://<bucket>/<prefix>/<tenant>/<source>/<target>/<day>/<file>

S3 has no directories, so ensure_directory() is a no-op. A PutObject either
stores the whole object or nothing, which gives the no-partial-write
guarantee for free. Recovery files still go to local disk so they survive
an object storage outage.

Invariants:
    - Objects are written with a single conditional PutObject (If-None-Match: *)
    - An existing object is never overwritten
    - Credentials are never logged
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from ..config import S3Config
from .base import BlobExistsError, BlobWriteError, SinkError, SinkUnavailableError
from .filesystem import write_file_atomic

logger = logging.getLogger(__name__)


class S3Sink:
    """Blob sink writing archive files to S3 (or an S3 compatible store).

    Example:
        >>> sink = S3Sink(S3Config(bucket="irc-archive"))
        >>> await sink.check()
        >>> await sink.write("t1/s1/%23chan/01-02-2024/...jsonl.gz", data)
        >>> await sink.close()
    """

    def __init__(self, s3_config: S3Config, recovery_dir: str = ".") -> None:
        self.s3_config = s3_config
        self.recovery_dir = Path(recovery_dir)
        self._session = None
        self._s3_ctx = None
        self._s3_client = None

    @property
    def base_location(self) -> str:
        prefix = self.s3_config.archive_prefix.strip("/")
        if prefix:
            return f"s3://{self.s3_config.bucket}/{prefix}"
        return f"s3://{self.s3_config.bucket}"

    def _key(self, path: str) -> str:
        prefix = self.s3_config.archive_prefix.strip("/")
        return f"{prefix}/{path}" if prefix else path

    async def _init_s3_client(self) -> None:
        """Initialize S3 client."""
        self._session = get_session()

        client_kwargs: dict[str, Any] = {
            "region_name": self.s3_config.region,
        }

        if self.s3_config.endpoint_url:
            client_kwargs["endpoint_url"] = self.s3_config.endpoint_url

        if self.s3_config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

        self._s3_ctx = self._session.create_client("s3", **client_kwargs)
        self._s3_client = await self._s3_ctx.__aenter__()

    async def _client(self) -> Any:
        if self._s3_client is None:
            await self._init_s3_client()
        return self._s3_client

    async def check(self) -> None:
        try:
            client = await self._client()
            await client.head_bucket(Bucket=self.s3_config.bucket)
        except (BotoCoreError, ClientError) as e:
            raise SinkUnavailableError(
                f"S3 bucket {self.s3_config.bucket} is not reachable: {e}"
            ) from e
        logger.info(f"Archive location {self.base_location} is ready")

    async def ensure_directory(self, path: str) -> None:
        pass

    async def write(self, path: str, data: bytes) -> None:
        key = self._key(path)
        try:
            client = await self._client()
            await client.put_object(
                Bucket=self.s3_config.bucket,
                Key=key,
                Body=data,
                IfNoneMatch="*",
                ContentType="application/x-gzip"
                if path.endswith(".gz")
                else "application/x-ndjson",
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "PreconditionFailed":
                raise BlobWriteError(f"Failed to upload s3://{self.s3_config.bucket}/{key}: {e}") from e
            await self._confirm_existing(key, data)
        except BotoCoreError as e:
            raise BlobWriteError(f"Failed to upload s3://{self.s3_config.bucket}/{key}: {e}") from e

    async def _confirm_existing(self, key: str, data: bytes) -> None:
        """Accept an existing object only if it holds exactly data."""
        try:
            client = await self._client()
            response = await client.get_object(Bucket=self.s3_config.bucket, Key=key)
            content = await response["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise BlobWriteError(f"Cannot read existing s3://{self.s3_config.bucket}/{key}: {e}") from e

        if content != data:
            raise BlobExistsError(f"s3://{self.s3_config.bucket}/{key} already holds a different archive")

    async def write_recovery_file(self, name: str, data: bytes) -> Path:
        try:
            self.recovery_dir.mkdir(parents=True, exist_ok=True)
            target = self.recovery_dir / name
            await asyncio.get_event_loop().run_in_executor(None, write_file_atomic, target, data)
        except OSError as e:
            raise SinkError(f"Failed to write recovery file {name}: {e}") from e
        return target

    async def close(self) -> None:
        """Close S3 client."""
        if self._s3_client:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None
