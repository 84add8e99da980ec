"""
Store module for db-partition - live records and reconciliation metadata.

This module handles:
- The live buffer table (count, ordered stream, delete by archived group)
- The reconciliation metadata table (bulk insert only)
- Shared record and query types

Invariants:
    - Nothing here deletes a record that is not named by a DeleteQuery
    - Metadata rows are inserted, never updated or replaced
"""

from .base import (
    CollectionNotFoundError,
    StoreConnectionError,
    StoreError,
    StoreQueryError,
)
from .buffer_store import BufferStore
from .metadata_store import MetadataStore
from .records import (
    AgeQuery,
    BufferRecord,
    DeleteQuery,
    GroupFilter,
    ReconciliationRecord,
)

__all__ = [
    "BufferStore",
    "MetadataStore",
    "StoreError",
    "StoreConnectionError",
    "CollectionNotFoundError",
    "StoreQueryError",
    "AgeQuery",
    "BufferRecord",
    "DeleteQuery",
    "GroupFilter",
    "ReconciliationRecord",
]
