"""
Shared SQLite plumbing and errors for the live and metadata stores.

Invariants:
    - Connections are opened per operation and always closed
    - The database file is never created implicitly by a partition run

How to change safely:
    - Keep StoreError as the base of every store failure, main.py maps it to exit codes
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for store operations."""

    pass


class StoreConnectionError(StoreError):
    """The store could not be opened."""

    pass


class CollectionNotFoundError(StoreError):
    """A required table does not exist."""

    pass


class StoreQueryError(StoreError):
    """A query against the store failed."""

    pass


class SqliteDatabase:
    """Opens connections to a single SQLite database file.

    Attributes:
        db_path: Path to the database file
        busy_timeout_ms: SQLite busy timeout
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def connect(self, create: bool = False) -> Iterator[sqlite3.Connection]:
        """Get a database connection.

        Args:
            create: Whether to create the database file if it doesn't exist

        Yields:
            SQLite connection

        Raises:
            StoreConnectionError: If the database cannot be opened
        """
        if create:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            target, uri = str(self.db_path), False
        else:
            # mode=rw refuses to create a missing file
            target, uri = f"file:{self.db_path}?mode=rw", True

        try:
            conn = sqlite3.connect(
                target,
                uri=uri,
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.Error as e:
            raise StoreConnectionError(f"Cannot open database {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row

        try:
            try:
                conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            except sqlite3.Error as e:
                raise StoreConnectionError(f"Cannot open database {self.db_path}: {e}") from e
            yield conn
        finally:
            conn.close()

    def table_exists(self, conn: sqlite3.Connection, table: str) -> bool:
        """Check whether a table exists.

        This is the first read of every bootstrap, so a file that is not a
        SQLite database fails here.

        Raises:
            StoreConnectionError: If the schema cannot be read
        """
        try:
            cursor = conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
                (table,),
            )
            return cursor.fetchone() is not None
        except sqlite3.Error as e:
            raise StoreConnectionError(f"Cannot read schema of {self.db_path}: {e}") from e
