"""
Shared fixtures for the db-partition test suite.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from dbpartition.sink.memory import InMemorySink
from dbpartition.store.buffer_store import BufferStore
from dbpartition.store.metadata_store import MetadataStore

FIXED_NOW = datetime(2024, 3, 10, 0, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixed_clock():
    """Clock pinned to 2024-03-10T00:00:00Z."""
    return lambda: FIXED_NOW


@pytest.fixture
def sleeps():
    """Recording no-op replacement for asyncio.sleep."""
    calls = []

    async def sleep(seconds):
        calls.append(seconds)

    sleep.calls = calls
    return sleep


@pytest.fixture
def db_path(tmp_path):
    """Path of a fresh SQLite database file."""
    return str(tmp_path / "buffers.db")


@pytest.fixture
def store(db_path):
    """Live buffer store with an initialized records table."""
    buffer_store = BufferStore(db_path, stream_batch_size=3)
    asyncio.run(buffer_store.initialize())
    return buffer_store


@pytest.fixture
def metadata_store(store, db_path):
    """Metadata store sharing the live store's database."""
    meta = MetadataStore(db_path)
    asyncio.run(meta.ensure_collection())
    return meta


@pytest.fixture
def sink():
    """In-memory blob sink."""
    return InMemorySink()
