"""
Live buffer store for db-partition.

This module wraps the SQLite table holding live records ("buffers"). The
partition run only needs four operations from it:
- count with an optional age filter
- an ordered streaming cursor over the aged records
- count and delete by a DeleteQuery built from archived groups

Invariants:
    - Streams are ordered by ascending timestamp, ties by insertion order
    - Deletes run in a single transaction
    - Only filters present in the DeleteQuery are ever deleted

How to change safely:
    - Schema changes must stay compatible with existing live tables
    - Keep delete filters disjoint, count_matching sums per chunk

Table schema:
    buffers:
        - id INTEGER PRIMARY KEY
        - tenant_id TEXT
        - source_id TEXT
        - target TEXT (NULL for status records)
        - status INTEGER (0/1)
        - timestamp INTEGER (Unix ms)
        - payload_json TEXT
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import AsyncIterator, Iterable
from typing import Any

from .base import CollectionNotFoundError, SqliteDatabase, StoreQueryError
from .records import AgeQuery, BufferRecord, DeleteQuery, GroupFilter

logger = logging.getLogger(__name__)

# Filters per statement, keeps well under SQLite's host parameter limit
FILTER_CHUNK_SIZE = 100


class BufferStore:
    """Live record store backed by a SQLite table.

    Example:
        >>> store = BufferStore("/var/lib/ircanywhere/buffers.db")
        >>> total = await store.count()
        >>> async for record in store.stream(AgeQuery(cutoff_ms)):
        ...     index.add(record)
    """

    def __init__(
        self,
        db_path: str,
        collection: str = "buffers",
        busy_timeout_ms: int = 5000,
        stream_batch_size: int = 1000,
    ) -> None:
        """Initialize the buffer store.

        Args:
            db_path: Path to the SQLite database
            collection: Table holding live records
            busy_timeout_ms: SQLite busy timeout
            stream_batch_size: Rows fetched per cursor read
        """
        self.db = SqliteDatabase(db_path, busy_timeout_ms=busy_timeout_ms)
        self.collection = collection
        self.stream_batch_size = stream_batch_size

    async def initialize(self) -> None:
        """Create the records table if it doesn't exist."""
        with self.db.connect(create=True) as conn:
            conn.executescript(f"""
                CREATE TABLE IF NOT EXISTS {self.collection} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    target TEXT,
                    status INTEGER NOT NULL DEFAULT 0,
                    timestamp INTEGER NOT NULL,
                    payload_json TEXT NOT NULL DEFAULT '{{}}'
                );

                CREATE INDEX IF NOT EXISTS idx_{self.collection}_timestamp
                    ON {self.collection}(timestamp);
                CREATE INDEX IF NOT EXISTS idx_{self.collection}_group
                    ON {self.collection}(tenant_id, source_id, target, timestamp);
            """)
        logger.info(f"Initialized records table: {self.collection}")

    async def check_collection(self) -> None:
        """Verify the records table exists.

        Raises:
            StoreConnectionError: If the database cannot be opened
            CollectionNotFoundError: If the records table is missing
        """
        with self.db.connect() as conn:
            if not self.db.table_exists(conn, self.collection):
                raise CollectionNotFoundError(
                    f"Partition collection {self.collection} doesn't exist, nothing to partition"
                )
        logger.info(f"Partition collection: {self.collection} exists")

    async def insert_records(self, records: Iterable[BufferRecord]) -> int:
        """Insert records into the live table.

        Args:
            records: Records to insert

        Returns:
            Number of rows inserted
        """
        rows = [
            (
                r.tenant_id,
                r.source_id,
                r.target,
                1 if r.status else 0,
                r.timestamp,
                json.dumps(r.payload),
            )
            for r in records
        ]
        with self.db.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.executemany(
                    f"""
                    INSERT INTO {self.collection}
                        (tenant_id, source_id, target, status, timestamp, payload_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return len(rows)

    async def count(self, query: AgeQuery | None = None) -> int:
        """Count records, optionally restricted to an age query.

        Raises:
            StoreQueryError: If the count fails
        """
        sql = f"SELECT COUNT(*) FROM {self.collection}"
        params: tuple[Any, ...] = ()
        if query is not None:
            sql += " WHERE timestamp < ?"
            params = (query.cutoff_ms,)

        with self.db.connect() as conn:
            try:
                return conn.execute(sql, params).fetchone()[0]
            except sqlite3.Error as e:
                raise StoreQueryError(f"Count on {self.collection} failed: {e}") from e

    async def stream(self, query: AgeQuery) -> AsyncIterator[BufferRecord]:
        """Stream records matching the query in ascending timestamp order.

        Args:
            query: Age query selecting the records

        Yields:
            BufferRecord objects

        Raises:
            StoreQueryError: If the cursor fails
        """
        with self.db.connect() as conn:
            try:
                cursor = conn.execute(
                    f"""
                    SELECT tenant_id, source_id, target, status, timestamp, payload_json
                    FROM {self.collection}
                    WHERE timestamp < ?
                    ORDER BY timestamp ASC, id ASC
                    """,
                    (query.cutoff_ms,),
                )
                while True:
                    rows = cursor.fetchmany(self.stream_batch_size)
                    if not rows:
                        break
                    for row in rows:
                        yield self._row_to_record(row)
            except (sqlite3.Error, ValueError) as e:
                raise StoreQueryError(f"Cursor on {self.collection} failed: {e}") from e

    async def count_matching(self, delete_query: DeleteQuery) -> int:
        """Count records matched by a delete query.

        Raises:
            StoreQueryError: If the count fails
        """
        total = 0
        with self.db.connect() as conn:
            try:
                for where, params in self._chunked_where(delete_query):
                    sql = f"SELECT COUNT(*) FROM {self.collection} WHERE {where}"
                    total += conn.execute(sql, params).fetchone()[0]
            except sqlite3.Error as e:
                raise StoreQueryError(f"Count on {self.collection} failed: {e}") from e
        return total

    async def delete_matching(self, delete_query: DeleteQuery) -> int:
        """Delete records matched by a delete query in one transaction.

        Returns:
            Number of rows deleted

        Raises:
            StoreQueryError: If the delete fails (nothing is deleted)
        """
        if not delete_query:
            return 0

        deleted = 0
        with self.db.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for where, params in self._chunked_where(delete_query):
                    cursor = conn.execute(f"DELETE FROM {self.collection} WHERE {where}", params)
                    deleted += cursor.rowcount
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise StoreQueryError(f"Delete on {self.collection} failed: {e}") from e

        logger.info(
            "Deleted archived records",
            extra={"collection": self.collection, "deleted": deleted, "groups": len(delete_query)},
        )
        return deleted

    def _chunked_where(self, delete_query: DeleteQuery) -> Iterable[tuple[str, tuple[Any, ...]]]:
        filters = list(delete_query)
        for i in range(0, len(filters), FILTER_CHUNK_SIZE):
            clauses = []
            params: list[Any] = []
            for group_filter in filters[i : i + FILTER_CHUNK_SIZE]:
                clause, clause_params = self._filter_clause(group_filter)
                clauses.append(clause)
                params.extend(clause_params)
            yield " OR ".join(clauses), tuple(params)

    def _filter_clause(self, group_filter: GroupFilter) -> tuple[str, list[Any]]:
        clause = "tenant_id = ? AND source_id = ? AND timestamp BETWEEN ? AND ?"
        params: list[Any] = [
            group_filter.tenant_id,
            group_filter.source_id,
            group_filter.start_ms,
            group_filter.end_ms,
        ]
        if group_filter.status:
            clause += " AND status = 1"
        else:
            # Status rows with the same nominal target live in a different archive
            clause += " AND status = 0 AND COALESCE(target, '') = ?"
            params.append(group_filter.target or "")
        return f"({clause})", params

    def _row_to_record(self, row: sqlite3.Row) -> BufferRecord:
        return BufferRecord(
            tenant_id=row["tenant_id"],
            source_id=row["source_id"],
            target=row["target"],
            status=bool(row["status"]),
            timestamp=row["timestamp"],
            payload=json.loads(row["payload_json"]),
        )
