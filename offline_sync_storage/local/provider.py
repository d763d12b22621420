"""
Local storage provider.

Implements the record operations on top of the durable local store.
Updates merge onto the existing local copy so optimistic writes stay
structurally consistent with the mutation that will be replayed
remotely.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from ..exceptions import RecordNotFoundError, ValidationError
from ..providers.base import (
    Record,
    RecordLookup,
    StorageProvider,
    TimerStateStore,
    iter_import_records,
)
from ..tables import SYNCED_TABLES, TIMER_STATES, get_table
from .store import LocalStore

logger = logging.getLogger(__name__)


class LocalStorageProvider(StorageProvider, RecordLookup, TimerStateStore):
    """Record provider backed by a LocalStore."""

    def __init__(self, store: LocalStore) -> None:
        self.store = store

    @property
    def provider_name(self) -> str:
        return "local"

    async def is_online(self) -> bool:
        # Local storage is always available once initialized
        return True

    async def get_all(self, table: str) -> list[Record]:
        get_table(table)
        return await self.store.get_all(table)

    async def get(self, table: str, record_id: str) -> Record | None:
        return await self.store.get(table, record_id)

    async def save(self, table: str, record: Record) -> Record:
        spec = get_table(table)
        if spec.singleton_key is not None:
            record = {**record, spec.key_field: spec.singleton_key}
        elif not spec.record_key(record):
            raise ValidationError(
                f"Invalid {table} record: missing {spec.key_field}",
                field=spec.key_field,
                table=table,
            )
        return await self.store.put(table, record)

    async def update(self, table: str, record_id: str, updates: Record) -> Record:
        spec = get_table(table)
        key = spec.singleton_key or record_id
        existing = await self.store.get(table, key)
        if existing is None:
            raise RecordNotFoundError(table, key, self.provider_name)

        updated = {**existing, **updates, spec.key_field: existing.get(spec.key_field, key)}
        return await self.store.put(table, updated)

    async def delete(self, table: str, record_id: str) -> None:
        spec = get_table(table)
        await self.store.delete(table, spec.singleton_key or record_id)

    # Timer state capability

    async def get_timer_state(self, game_id: str) -> Record | None:
        return await self.store.get(TIMER_STATES, game_id)

    async def save_timer_state(self, timer_state: Record) -> Record:
        return await self.save(TIMER_STATES, timer_state)

    async def delete_timer_state(self, game_id: str) -> None:
        await self.store.delete(TIMER_STATES, game_id)

    # Backup / restore

    async def export_all_data(self) -> dict[str, Any]:
        exported: dict[str, Any] = {}
        for table in SYNCED_TABLES:
            records = await self.store.get_all(table)
            if get_table(table).singleton_key is not None:
                exported[table] = records[0] if records else None
            else:
                exported[table] = records
        exported["exported_at"] = datetime.now(UTC).isoformat()
        return exported

    async def import_all_data(self, data: dict[str, Any]) -> None:
        if not isinstance(data, dict):
            raise ValidationError("Invalid import data")

        imported = 0
        for table, record in iter_import_records(data, SYNCED_TABLES):
            await self.save(table, record)
            imported += 1
        logger.info(f"Imported {imported} records into local storage")
