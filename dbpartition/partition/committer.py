"""
Reconciliation metadata commit.

Inserts the reconciliation records of a run into the metadata store. If
that fails the full set is spilled to a dated local recovery file that
`db-partition-replay` can load later. Neither outcome is fatal to the run.

Recovery file format (JSON):
    {"version": 1, "collection": "buffersMeta", "created_at": <unix ms>, "records": [{...}, ...]}
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..sink.base import BlobSink
from ..store.metadata_store import MetadataStore
from ..store.records import ReconciliationRecord
from .selector import Clock, to_epoch_ms, utc_now

logger = logging.getLogger(__name__)

RECOVERY_FILE_VERSION = 1


class CommitStatus(Enum):
    """How the reconciliation records were persisted."""

    OK = "ok"
    SPILLED = "spilled"
    EMPTY = "empty"
    LOST = "lost"


@dataclass
class CommitResult:
    """Outcome of a metadata commit.

    Attributes:
        status: OK, SPILLED, EMPTY (nothing to commit) or LOST (store and spill both failed)
        count: Number of reconciliation records
        recovery_path: Recovery file written when SPILLED
        error: Error from the metadata store, if any
    """

    status: CommitStatus
    count: int
    recovery_path: Path | None = None
    error: str | None = None

    @property
    def recorded(self) -> bool:
        """Whether every record is persisted somewhere."""
        return self.status != CommitStatus.LOST


def recovery_file_name(collection: str, clock: Clock = utc_now) -> str:
    moment = clock()
    return f"{collection}-recovery-{moment.strftime('%Y-%m-%d')}-{to_epoch_ms(moment)}.json"


class MetadataCommitter:
    """Persists reconciliation records with a local spill fallback."""

    def __init__(self, metadata_store: MetadataStore, sink: BlobSink, clock: Clock = utc_now) -> None:
        self.metadata_store = metadata_store
        self.sink = sink
        self.clock = clock

    async def commit(self, records: list[ReconciliationRecord]) -> CommitResult:
        if not records:
            logger.info("No reconciliation records to commit")
            return CommitResult(status=CommitStatus.EMPTY, count=0)

        try:
            await self.metadata_store.insert_many(records)
        except Exception as e:
            logger.error(
                f"Failed to insert {len(records)} reconciliation records: {e}",
                extra={"collection": self.metadata_store.collection},
            )
            return await self._spill(records, str(e))

        logger.info(
            f"Committed {len(records)} reconciliation records",
            extra={"collection": self.metadata_store.collection, "records": len(records)},
        )
        return CommitResult(status=CommitStatus.OK, count=len(records))

    async def _spill(self, records: list[ReconciliationRecord], error: str) -> CommitResult:
        name = recovery_file_name(self.metadata_store.collection, self.clock)
        document = {
            "version": RECOVERY_FILE_VERSION,
            "collection": self.metadata_store.collection,
            "created_at": to_epoch_ms(self.clock()),
            "records": [r.to_dict() for r in records],
        }
        data = json.dumps(document, indent=2, sort_keys=True).encode("utf-8")

        try:
            path = await self.sink.write_recovery_file(name, data)
        except Exception as e:
            logger.critical(
                f"Could not write recovery file {name}: {e}; archive locations are only in this log",
                extra={"recovery_file": name},
            )
            for record in records:
                logger.critical(
                    f"Unrecorded archive: {record.base_location}/{record.relative_path}",
                    extra={"fingerprint": record.fingerprint},
                )
            return CommitResult(status=CommitStatus.LOST, count=len(records), error=error)

        logger.warning(
            f"Reconciliation records spilled to {path}, replay with db-partition-replay",
            extra={"recovery_file": str(path), "records": len(records)},
        )
        return CommitResult(
            status=CommitStatus.SPILLED,
            count=len(records),
            recovery_path=path,
            error=error,
        )
