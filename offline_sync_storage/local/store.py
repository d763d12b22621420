"""
Durable keyed table store.

The local store knows nothing about business entities: it keeps JSON
documents keyed by (table, key) and survives restarts.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from ..exceptions import ValidationError
from ..tables import get_table
from ..utils import now_ms
from .database import LocalDatabase

logger = logging.getLogger(__name__)


class LocalStore(ABC):
    """Abstract durable table store."""

    @abstractmethod
    async def get_all(self, table: str) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def get(self, table: str, key: str) -> dict[str, Any] | None:
        ...

    @abstractmethod
    async def put(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def delete(self, table: str, key: str) -> None:
        ...


class SQLiteLocalStore(LocalStore):
    """Local store kept in the ``records`` table of a LocalDatabase."""

    def __init__(self, database: LocalDatabase) -> None:
        self.database = database

    async def get_all(self, table: str) -> list[dict[str, Any]]:
        rows = await self.database.fetch_all(
            "SELECT data FROM records WHERE table_name = ? ORDER BY updated_at, record_key",
            (table,),
            operation="get_all",
        )
        return [json.loads(row["data"]) for row in rows]

    async def get(self, table: str, key: str) -> dict[str, Any] | None:
        row = await self.database.fetch_one(
            "SELECT data FROM records WHERE table_name = ? AND record_key = ?",
            (table, key),
            operation="get",
        )
        return json.loads(row["data"]) if row else None

    async def put(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        key = get_table(table).record_key(record)
        if key is None:
            raise ValidationError(f"Cannot store record without key in {table}", table=table)

        async with self.database.transaction("put") as conn:
            await conn.execute(
                """
                INSERT INTO records (table_name, record_key, data, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (table_name, record_key)
                DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
                """,
                (table, key, json.dumps(record, default=str), now_ms()),
            )
        return record

    async def delete(self, table: str, key: str) -> None:
        async with self.database.transaction("delete") as conn:
            await conn.execute(
                "DELETE FROM records WHERE table_name = ? AND record_key = ?",
                (table, key),
            )

    async def count(self, table: str) -> int:
        row = await self.database.fetch_one(
            "SELECT COUNT(*) AS n FROM records WHERE table_name = ?", (table,), operation="count"
        )
        return int(row["n"]) if row else 0
