"""
SQLite database shared by the local store, the sync queue and the cache.

One connection per database file. Every write goes through
``transaction()``, which serialises writers on an asyncio lock and wraps
the statements in ``BEGIN IMMEDIATE`` so a read-modify-write on a single
row is atomic with respect to every other caller of the same database.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite

from ..exceptions import StorageError, StorageUnavailableError

logger = logging.getLogger(__name__)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS records (
    table_name TEXT NOT NULL,
    record_key TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (table_name, record_key)
);

CREATE TABLE IF NOT EXISTS sync_queue (
    id TEXT NOT NULL PRIMARY KEY,
    operation TEXT NOT NULL,
    table_name TEXT NOT NULL,
    data TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    last_error TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue (status);
CREATE INDEX IF NOT EXISTS idx_sync_queue_timestamp ON sync_queue (timestamp);

CREATE TABLE IF NOT EXISTS cache_entries (
    cache_key TEXT NOT NULL PRIMARY KEY,
    data TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    version TEXT NOT NULL,
    expires_at INTEGER
);
"""


class LocalDatabase:
    """Async SQLite connection with serialised transactions."""

    def __init__(self, path: str | Path = ":memory:") -> None:
        self.path = str(path)
        self.conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._initialized = False

    @classmethod
    async def create(cls, path: str | Path = ":memory:") -> LocalDatabase:
        """Create and initialize a database."""
        database = cls(path)
        await database.initialize()
        return database

    async def initialize(self) -> None:
        """Open the connection and create the schema.

        Raises:
            StorageUnavailableError: If the database cannot be opened
        """
        if self._initialized:
            return

        try:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            # Autocommit mode; transactions are explicit in transaction()
            self.conn = await aiosqlite.connect(self.path, isolation_level=None)
            self.conn.row_factory = aiosqlite.Row
            if self.path != ":memory:":
                await self.conn.execute("PRAGMA journal_mode=WAL")
            await self.conn.executescript(_SCHEMA_SQL)
        except (aiosqlite.Error, OSError) as e:
            if self.conn is not None:
                await self.conn.close()
                self.conn = None
            raise StorageUnavailableError(self.path, e) from e

        self._initialized = True
        logger.info(f"Local database ready: {self.path}")

    def _require_connection(self) -> aiosqlite.Connection:
        if not self._initialized or self.conn is None:
            raise StorageUnavailableError(self.path, RuntimeError("Database not initialized"))
        return self.conn

    @asynccontextmanager
    async def transaction(self, operation: str = "write") -> AsyncIterator[aiosqlite.Connection]:
        """Run statements in one immediate transaction.

        The lock is not reentrant: do not call ``fetch_*`` or nest
        ``transaction()`` inside the block, use the yielded connection.
        """
        conn = self._require_connection()
        async with self._lock:
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except aiosqlite.Error as e:
                raise StorageError(f"Failed to begin {operation}", "local", operation, e) from e
            try:
                yield conn
            except aiosqlite.Error as e:
                await conn.execute("ROLLBACK")
                raise StorageError(f"Local write failed: {operation}", "local", operation, e) from e
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            try:
                await conn.execute("COMMIT")
            except aiosqlite.Error as e:
                raise StorageError(f"Failed to commit {operation}", "local", operation, e) from e

    async def fetch_all(
        self, sql: str, params: Iterable[Any] = (), operation: str = "read"
    ) -> list[aiosqlite.Row]:
        conn = self._require_connection()
        async with self._lock:
            try:
                async with conn.execute(sql, tuple(params)) as cursor:
                    return list(await cursor.fetchall())
            except aiosqlite.Error as e:
                raise StorageError(f"Local read failed: {operation}", "local", operation, e) from e

    async def fetch_one(
        self, sql: str, params: Iterable[Any] = (), operation: str = "read"
    ) -> aiosqlite.Row | None:
        rows = await self.fetch_all(sql, params, operation)
        return rows[0] if rows else None

    async def close(self) -> None:
        """Close the connection."""
        if self.conn is not None:
            await self.conn.close()
            self.conn = None
        self._initialized = False

    async def __aenter__(self) -> LocalDatabase:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
