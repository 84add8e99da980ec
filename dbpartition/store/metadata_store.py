"""
Reconciliation metadata store for db-partition.

Each row locates one archive file written by a partition run. The table
lives next to the live records table ("buffersMeta" by default).

Invariants:
    - Rows are only inserted, never updated or replaced
    - A bulk insert is all-or-nothing

Table schema:
    buffersMeta:
        - fingerprint TEXT PRIMARY KEY (sha256 of relative_path)
        - tenant_id, source_id, target, status, day
        - written_at INTEGER (Unix ms)
        - base_location, relative_path TEXT
        - record_count, size_bytes, first_timestamp, last_timestamp INTEGER
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable

from .base import SqliteDatabase, StoreQueryError
from .records import ReconciliationRecord

logger = logging.getLogger(__name__)

_COLUMNS = (
    "fingerprint",
    "tenant_id",
    "source_id",
    "target",
    "status",
    "day",
    "written_at",
    "base_location",
    "relative_path",
    "record_count",
    "size_bytes",
    "first_timestamp",
    "last_timestamp",
)


class MetadataStore:
    """Bulk-insert-only store for reconciliation records."""

    def __init__(
        self,
        db_path: str,
        collection: str = "buffersMeta",
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.db = SqliteDatabase(db_path, busy_timeout_ms=busy_timeout_ms)
        self.collection = collection

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS {self.collection} (
                fingerprint TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                source_id TEXT NOT NULL,
                target TEXT,
                status INTEGER NOT NULL DEFAULT 0,
                day TEXT NOT NULL,
                written_at INTEGER NOT NULL,
                base_location TEXT NOT NULL,
                relative_path TEXT NOT NULL,
                record_count INTEGER NOT NULL DEFAULT 0,
                size_bytes INTEGER NOT NULL DEFAULT 0,
                first_timestamp INTEGER,
                last_timestamp INTEGER
            );

            CREATE INDEX IF NOT EXISTS idx_{self.collection}_group
                ON {self.collection}(tenant_id, source_id, target, day);
        """)

    async def ensure_collection(self) -> bool:
        """Create the metadata table if it doesn't exist.

        Returns:
            True if the table was created, False if it already existed

        Raises:
            StoreConnectionError: If the database cannot be opened or read
            StoreQueryError: If the table cannot be created
        """
        with self.db.connect() as conn:
            if self.db.table_exists(conn, self.collection):
                logger.info(f"Metadata collection: {self.collection} exists")
                return False
            logger.info(f"Metadata collection: {self.collection} doesn't exist, creating")
            try:
                self._create_schema(conn)
            except sqlite3.Error as e:
                raise StoreQueryError(f"Cannot create {self.collection}: {e}") from e
        return True

    async def insert_many(self, records: Iterable[ReconciliationRecord]) -> int:
        """Insert reconciliation records in one transaction.

        Existing rows are never replaced. A row whose fingerprint is already
        stored describes the same archive file (the sinks never overwrite a
        file) and is skipped, so re-runs and replayed recovery files never
        duplicate or alter entries.

        Returns:
            Number of rows inserted

        Raises:
            StoreConnectionError: If the database cannot be opened
            StoreQueryError: If the insert fails (nothing is written)
        """
        rows = [self._to_row(r) for r in records]
        if not rows:
            return 0

        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self.db.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            before = conn.total_changes
            try:
                conn.executemany(
                    f"INSERT OR IGNORE INTO {self.collection} ({', '.join(_COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    rows,
                )
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise StoreQueryError(f"Insert into {self.collection} failed: {e}") from e
            inserted = conn.total_changes - before

        if inserted < len(rows):
            logger.info(
                f"Skipped {len(rows) - inserted} reconciliation rows already in {self.collection}",
                extra={"collection": self.collection, "skipped": len(rows) - inserted},
            )
        logger.debug(f"Inserted {inserted} rows into {self.collection}")
        return inserted

    async def existing_fingerprints(self, fingerprints: Iterable[str]) -> set[str]:
        """Return the subset of fingerprints already stored."""
        wanted = list(fingerprints)
        found: set[str] = set()
        with self.db.connect() as conn:
            for i in range(0, len(wanted), 500):
                chunk = wanted[i : i + 500]
                placeholders = ", ".join("?" for _ in chunk)
                cursor = conn.execute(
                    f"SELECT fingerprint FROM {self.collection} "
                    f"WHERE fingerprint IN ({placeholders})",
                    chunk,
                )
                found.update(row["fingerprint"] for row in cursor.fetchall())
        return found

    async def list_records(self, tenant_id: str | None = None) -> list[ReconciliationRecord]:
        """List stored reconciliation records, oldest write first."""
        sql = f"SELECT * FROM {self.collection}"
        params: tuple[str, ...] = ()
        if tenant_id is not None:
            sql += " WHERE tenant_id = ?"
            params = (tenant_id,)
        sql += " ORDER BY written_at ASC, relative_path ASC"

        with self.db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [ReconciliationRecord.from_dict(dict(row)) for row in rows]

    def _to_row(self, record: ReconciliationRecord) -> tuple:
        data = record.to_dict()
        data["status"] = 1 if record.status else 0
        return tuple(data[c] for c in _COLUMNS)
