"""
Shared test configuration and fixtures.

Provides a real in-memory SQLite database for the local layer and an
in-memory fake remote store with failure injection, so sync behaviour
can be tested without a Cosmos DB account.
"""

import asyncio
import copy
import logging
from collections import defaultdict
from typing import Any

import pytest

from offline_sync_storage.config import StorageConfig
from offline_sync_storage.connectivity import ManualConnectivityObserver
from offline_sync_storage.exceptions import RecordNotFoundError, ValidationError
from offline_sync_storage.local import (
    LocalDatabase,
    LocalStorageProvider,
    RecordCache,
    SQLiteLocalStore,
    SyncQueue,
)
from offline_sync_storage.offline import OfflineFirstStorageManager
from offline_sync_storage.providers.base import Record, RecordLookup, StorageProvider
from offline_sync_storage.sync import SyncManager, SyncOptions
from offline_sync_storage.tables import LAST_MODIFIED, get_table
from offline_sync_storage.utils import now_ms

logger = logging.getLogger(__name__)


class FakeRemoteStore(StorageProvider, RecordLookup):
    """
    In-memory remote store for testing.

    Upserts by record key like the real remote store. Failures can be
    injected per operation with ``fail()``; every call is recorded in
    ``calls`` as ``(operation, table, key)``. With ``stamp_writes`` every
    save and update sets ``lastModified`` to the write time, the way a
    server-timestamped store reports it.
    """

    def __init__(self, stamp_writes: bool = False) -> None:
        self.stamp_writes = stamp_writes
        self.tables: dict[str, dict[str, Record]] = defaultdict(dict)
        self.calls: list[tuple[str, str, str | None]] = []
        self.online = True
        self._failures: list[dict[str, Any]] = []

    @property
    def provider_name(self) -> str:
        return "fake_remote"

    def fail(
        self,
        error: Exception,
        operations: set[str] | None = None,
        times: int | None = None,
    ) -> None:
        """Raise ``error`` for matching operations, ``times`` times (None = forever)."""
        self._failures.append({"error": error, "operations": operations, "times": times})

    def heal(self) -> None:
        self._failures.clear()

    def _maybe_fail(self, operation: str) -> None:
        for failure in self._failures:
            if failure["operations"] is not None and operation not in failure["operations"]:
                continue
            if failure["times"] is not None:
                if failure["times"] <= 0:
                    continue
                failure["times"] -= 1
            raise failure["error"]

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    async def is_online(self) -> bool:
        return self.online

    async def get_all(self, table: str) -> list[Record]:
        self.calls.append(("get_all", table, None))
        self._maybe_fail("get_all")
        return [copy.deepcopy(r) for r in self.tables[table].values()]

    async def get(self, table: str, record_id: str) -> Record | None:
        key = get_table(table).singleton_key or record_id
        self.calls.append(("get", table, key))
        self._maybe_fail("get")
        record = self.tables[table].get(key)
        return copy.deepcopy(record) if record is not None else None

    async def save(self, table: str, record: Record) -> Record:
        spec = get_table(table)
        key = spec.record_key(record)
        self.calls.append(("save", table, key))
        self._maybe_fail("save")
        if key is None:
            raise ValidationError(f"missing {spec.key_field}", field=spec.key_field, table=table)
        stored = {**copy.deepcopy(record), spec.key_field: key}
        if self.stamp_writes:
            stored[LAST_MODIFIED] = now_ms()
        self.tables[table][key] = stored
        return copy.deepcopy(stored)

    async def update(self, table: str, record_id: str, updates: Record) -> Record:
        spec = get_table(table)
        key = spec.singleton_key or record_id
        self.calls.append(("update", table, key))
        self._maybe_fail("update")
        existing = self.tables[table].get(key)
        if existing is None:
            raise RecordNotFoundError(table, key, self.provider_name)
        existing.update(copy.deepcopy(updates))
        existing[spec.key_field] = key
        if self.stamp_writes:
            existing[LAST_MODIFIED] = now_ms()
        return copy.deepcopy(existing)

    async def delete(self, table: str, record_id: str) -> None:
        key = get_table(table).singleton_key or record_id
        self.calls.append(("delete", table, key))
        self._maybe_fail("delete")
        self.tables[table].pop(key, None)


@pytest.fixture
async def database():
    """Fixture providing an initialized in-memory database."""
    db = await LocalDatabase.create(":memory:")
    yield db
    await db.close()


@pytest.fixture
def local_store(database):
    return SQLiteLocalStore(database)


@pytest.fixture
def local_provider(local_store):
    return LocalStorageProvider(local_store)


@pytest.fixture
def queue(database):
    return SyncQueue(database)


@pytest.fixture
def cache(database):
    return RecordCache(database)


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def sync_manager(queue, remote, local_provider):
    return SyncManager(queue, remote, local_provider, options=SyncOptions())


@pytest.fixture
def connectivity():
    return ManualConnectivityObserver(online=True)


@pytest.fixture
async def offline_manager(local_provider, remote, sync_manager, connectivity):
    """Fixture providing an offline-first manager wired to the fake remote."""
    manager = OfflineFirstStorageManager(
        local_provider,
        remote,
        sync_manager,
        connectivity,
        StorageConfig(import_sync_delay=0.01),
    )
    yield manager
    await manager.close()


@pytest.fixture
def wait_until():
    """Fixture providing ``await wait_until(predicate)`` for background work."""

    async def wait(predicate, timeout: float = 2.0) -> None:
        async def poll():
            while not await predicate():
                await asyncio.sleep(0.01)

        await asyncio.wait_for(poll(), timeout)

    return wait


@pytest.fixture
def stamping_remote():
    return FakeRemoteStore(stamp_writes=True)
