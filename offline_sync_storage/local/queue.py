"""
Durable sync queue.

Each row is one pending mutation against the remote store. Rows move
through ``pending -> syncing -> completed | pending | failed`` and are
only removed once completed (or cleared explicitly).

Persisted shape::

    {
        "id": "1718000000000-3f2a9c1b0",
        "operation": "create" | "update" | "delete",
        "table": "players",
        "data": {...},
        "timestamp": 1718000000000,      # enqueue time, epoch ms
        "retry_count": 0,
        "status": "pending" | "syncing" | "failed" | "completed",
        "last_error": null
    }
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import aiosqlite

from ..exceptions import StorageError
from ..tables import SyncOperation
from ..utils import generate_queue_id, now_ms
from .database import LocalDatabase

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    """Status of a sync queue row."""

    PENDING = "pending"
    SYNCING = "syncing"
    FAILED = "failed"
    COMPLETED = "completed"


@dataclass
class SyncQueueItem:
    """One queued mutation."""

    id: str
    operation: SyncOperation
    table: str
    data: Any
    timestamp: int
    retry_count: int = 0
    status: SyncStatus = SyncStatus.PENDING
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialized queue item, with camelCase keys (``retryCount``, ``lastError``).

        ``lastError`` is omitted when the item has not failed.
        """
        result: dict[str, Any] = {
            "id": self.id,
            "operation": self.operation.value,
            "table": self.table,
            "data": self.data,
            "timestamp": self.timestamp,
            "retryCount": self.retry_count,
            "status": self.status.value,
        }
        if self.last_error is not None:
            result["lastError"] = self.last_error
        return result

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> SyncQueueItem:
        return cls(
            id=row["id"],
            operation=SyncOperation(row["operation"]),
            table=row["table_name"],
            data=json.loads(row["data"]),
            timestamp=row["timestamp"],
            retry_count=row["retry_count"],
            status=SyncStatus(row["status"]),
            last_error=row["last_error"],
        )


@dataclass
class QueueCounts:
    pending: int = 0
    syncing: int = 0
    failed: int = 0
    completed: int = 0
    by_table: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.pending + self.syncing + self.failed + self.completed


_UPDATABLE_FIELDS = {"status", "retry_count", "last_error"}

_SELECT_COLUMNS = "id, operation, table_name, data, timestamp, retry_count, status, last_error"


class SyncQueue:
    """Sync queue stored in the ``sync_queue`` table of a LocalDatabase.

    The same instance must be shared by every component that enqueues
    or drains, otherwise mutations end up in split queues.
    """

    def __init__(self, database: LocalDatabase) -> None:
        self.database = database

    async def add(
        self,
        operation: SyncOperation | str,
        table: str,
        data: Any,
    ) -> SyncQueueItem:
        """Append a mutation. Always pending, zero retries, stamped now."""
        item = SyncQueueItem(
            id=generate_queue_id(),
            operation=SyncOperation(operation),
            table=table,
            data=data,
            timestamp=now_ms(),
        )
        async with self.database.transaction("add_to_sync_queue") as conn:
            await conn.execute(
                f"INSERT INTO sync_queue ({_SELECT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    item.id,
                    item.operation.value,
                    item.table,
                    json.dumps(item.data, default=str),
                    item.timestamp,
                    item.retry_count,
                    item.status.value,
                    item.last_error,
                ),
            )
        logger.debug(f"Queued {item.operation.value} on {table} ({item.id})")
        return item

    async def get(self, item_id: str) -> SyncQueueItem | None:
        row = await self.database.fetch_one(
            f"SELECT {_SELECT_COLUMNS} FROM sync_queue WHERE id = ?", (item_id,)
        )
        return SyncQueueItem.from_row(row) if row else None

    async def list_all(self) -> list[SyncQueueItem]:
        rows = await self.database.fetch_all(
            f"SELECT {_SELECT_COLUMNS} FROM sync_queue ORDER BY timestamp, rowid",
            operation="get_sync_queue",
        )
        return [SyncQueueItem.from_row(row) for row in rows]

    async def list_processable(self) -> list[SyncQueueItem]:
        """Pending and failed rows, oldest first."""
        rows = await self.database.fetch_all(
            f"SELECT {_SELECT_COLUMNS} FROM sync_queue "
            "WHERE status IN ('pending', 'failed') ORDER BY timestamp, rowid",
            operation="get_sync_queue",
        )
        return [SyncQueueItem.from_row(row) for row in rows]

    async def update(self, item_id: str, **changes: Any) -> SyncQueueItem:
        """Atomically apply ``changes`` to one row and return the new row.

        Raises:
            StorageError: If the row does not exist
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update sync queue fields: {sorted(unknown)}")

        async with self.database.transaction("update_sync_queue_item") as conn:
            async with conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM sync_queue WHERE id = ?", (item_id,)
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                raise StorageError(
                    f"Sync queue item {item_id} not found", "local", "update_sync_queue_item"
                )

            item = SyncQueueItem.from_row(row)
            if "status" in changes:
                item.status = SyncStatus(changes["status"])
            if "retry_count" in changes:
                item.retry_count = int(changes["retry_count"])
            if "last_error" in changes:
                item.last_error = changes["last_error"]

            await conn.execute(
                "UPDATE sync_queue SET status = ?, retry_count = ?, last_error = ? WHERE id = ?",
                (item.status.value, item.retry_count, item.last_error, item_id),
            )
        return item

    async def delete(self, item_id: str) -> None:
        async with self.database.transaction("delete_sync_queue_item") as conn:
            await conn.execute("DELETE FROM sync_queue WHERE id = ?", (item_id,))

    async def clear_completed(self) -> int:
        """Remove completed rows, returning how many were removed."""
        async with self.database.transaction("clear_completed_sync_items") as conn:
            cursor = await conn.execute("DELETE FROM sync_queue WHERE status = 'completed'")
            removed = cursor.rowcount
            await cursor.close()
        if removed:
            logger.debug(f"Cleared {removed} completed sync items")
        return removed

    async def reset_failed(self) -> int:
        """Move every failed row back to pending with zero retries."""
        async with self.database.transaction("reset_failed_sync_items") as conn:
            cursor = await conn.execute(
                "UPDATE sync_queue SET status = 'pending', retry_count = 0 WHERE status = 'failed'"
            )
            reset = cursor.rowcount
            await cursor.close()
        return reset

    async def recover_interrupted(self) -> int:
        """Return rows left ``syncing`` by an interrupted drain to pending."""
        async with self.database.transaction("recover_sync_queue") as conn:
            cursor = await conn.execute(
                "UPDATE sync_queue SET status = 'pending' WHERE status = 'syncing'"
            )
            recovered = cursor.rowcount
            await cursor.close()
        if recovered:
            logger.info(f"Recovered {recovered} interrupted sync items")
        return recovered

    async def counts(self) -> QueueCounts:
        rows = await self.database.fetch_all(
            "SELECT status, table_name, COUNT(*) AS n FROM sync_queue GROUP BY status, table_name",
            operation="sync_queue_counts",
        )
        counts = QueueCounts()
        for row in rows:
            status = SyncStatus(row["status"])
            setattr(counts, status.value, getattr(counts, status.value) + row["n"])
            table = row["table_name"]
            counts.by_table[table] = counts.by_table.get(table, 0) + row["n"]
        return counts

    async def clear(self) -> None:
        """Remove every row. Intended for tests and account resets."""
        async with self.database.transaction("clear_sync_queue") as conn:
            await conn.execute("DELETE FROM sync_queue")
