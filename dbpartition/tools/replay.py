"""
Recovery replay tool for db-partition.

When the metadata insert of a partition run fails, the committer spills the
reconciliation records to a local recovery file. This tool loads such a file
back into the metadata store.

Usage:
    db-partition-replay --db-path <path> <recovery-file> [--collection buffersMeta] [--dry-run]

Invariants:
    - Replay is idempotent (can be re-run safely)
    - Rows whose fingerprint is already stored are skipped
    - The recovery file is never modified or deleted

How to change safely:
    - Keep reading old recovery file versions
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path

from ..partition.committer import RECOVERY_FILE_VERSION
from ..store.metadata_store import MetadataStore
from ..store.records import ReconciliationRecord

logger = logging.getLogger(__name__)


class RecoveryFileError(Exception):
    """The recovery file cannot be read."""

    pass


@dataclass
class ReplayConfig:
    """Configuration for a replay.

    Attributes:
        recovery_file: Recovery file written by the committer
        db_path: SQLite database holding the metadata table
        collection: Metadata table, defaults to the one named in the file
        dry_run: If True, don't make changes
    """

    recovery_file: str
    db_path: str
    collection: str | None = None
    dry_run: bool = False


@dataclass
class ReplayResult:
    """Result of a replay.

    Attributes:
        success: Whether the replay succeeded
        total: Records in the recovery file
        inserted: Records inserted into the metadata store
        skipped: Records already present
        duration_ms: Total replay duration
        error: Error message if failed
    """

    success: bool
    total: int = 0
    inserted: int = 0
    skipped: int = 0
    duration_ms: int = 0
    error: str | None = None


def load_recovery_file(path: Path) -> tuple[str | None, list[ReconciliationRecord]]:
    """Parse a recovery file.

    Returns:
        (collection named in the file, reconciliation records)

    Raises:
        RecoveryFileError: If the file is unreadable or malformed
    """
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise RecoveryFileError(f"Cannot read recovery file {path}: {e}") from e

    if not isinstance(document, dict) or "records" not in document:
        raise RecoveryFileError(f"{path} is not a recovery file")

    version = document.get("version", 1)
    if version > RECOVERY_FILE_VERSION:
        raise RecoveryFileError(f"Unsupported recovery file version {version}")

    try:
        records = [ReconciliationRecord.from_dict(r) for r in document["records"]]
    except (TypeError, ValueError) as e:
        raise RecoveryFileError(f"Malformed record in {path}: {e}") from e

    return document.get("collection"), records


class ReplayTool:
    """Loads a recovery file into the metadata store.

    Example:
        >>> tool = ReplayTool(ReplayConfig("buffersMeta-recovery-2024-03-10-....json", "buffers.db"))
        >>> result = await tool.replay()
        >>> print(f"Inserted {result.inserted} records")
    """

    def __init__(self, config: ReplayConfig) -> None:
        self.config = config

    async def replay(self) -> ReplayResult:
        """Execute the replay.

        Returns:
            ReplayResult indicating success/failure
        """
        start_time = time.time()

        try:
            collection, records = load_recovery_file(Path(self.config.recovery_file))
            store = MetadataStore(
                self.config.db_path,
                collection=self.config.collection or collection or "buffersMeta",
            )
            await store.ensure_collection()

            existing = await store.existing_fingerprints(r.fingerprint for r in records)
            pending = [r for r in records if r.fingerprint not in existing]

            logger.info(
                f"Replaying {len(pending)} of {len(records)} records into {store.collection}",
                extra={"total": len(records), "pending": len(pending), "dry_run": self.config.dry_run},
            )

            inserted = 0
            if not self.config.dry_run:
                inserted = await store.insert_many(pending)

            return ReplayResult(
                success=True,
                total=len(records),
                inserted=inserted,
                skipped=len(records) - len(pending),
                duration_ms=int((time.time() - start_time) * 1000),
            )

        except Exception as e:
            logger.error(f"Replay failed: {e}", exc_info=True)
            return ReplayResult(
                success=False,
                duration_ms=int((time.time() - start_time) * 1000),
                error=str(e),
            )


def main() -> None:
    """CLI entry point for the replay tool."""
    parser = argparse.ArgumentParser(
        description="Load a db-partition recovery file into the metadata store"
    )
    parser.add_argument("recovery_file", help="Recovery file written by a partition run")
    parser.add_argument("--db-path", required=True, help="SQLite database with the metadata table")
    parser.add_argument("--collection", help="Metadata table (default: as named in the file)")
    parser.add_argument("--dry-run", action="store_true", help="Don't make changes")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    config = ReplayConfig(
        recovery_file=args.recovery_file,
        db_path=args.db_path,
        collection=args.collection,
        dry_run=args.dry_run,
    )

    tool = ReplayTool(config)
    result = asyncio.run(tool.replay())

    if result.success:
        print("Replay completed successfully")
        print(f"  Records in file: {result.total}")
        print(f"  Inserted: {result.inserted}")
        print(f"  Already present: {result.skipped}")
        print(f"  Duration: {result.duration_ms}ms")
        sys.exit(0)
    else:
        print(f"Replay failed: {result.error}")
        sys.exit(1)


if __name__ == "__main__":
    main()
