"""
Abstract storage provider interface.

Defines the contract that the local and remote providers implement. The
four record operations have the same shape for every table so that the
sync manager can dispatch queued mutations by table name alone.

Optional features are separate capability interfaces, composed only by
providers that actually support them:

- RecordLookup: fetch a single record by key (used for conflict detection)
- TimerStateStore: persistence of ephemeral timer state (local only)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from typing import Any

from ..tables import get_table

Record = dict[str, Any]


class StorageProvider(ABC):
    """Abstract interface for a record store.

    All providers (local, remote, and the managers layered on top of
    them) implement this interface.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Short name used in logs and error messages."""
        ...

    @abstractmethod
    async def is_online(self) -> bool:
        """Report whether the provider can currently serve requests."""
        ...

    @abstractmethod
    async def get_all(self, table: str) -> list[Record]:
        """Return every record in a table.

        Raises:
            StorageError: If the read fails
        """
        ...

    @abstractmethod
    async def save(self, table: str, record: Record) -> Record:
        """Create or replace a record, keyed by the table's key field.

        Saving the same record twice must not create a duplicate.

        Raises:
            ValidationError: If the record has no key
            StorageError: If the write fails
        """
        ...

    @abstractmethod
    async def update(self, table: str, record_id: str, updates: Record) -> Record:
        """Merge ``updates`` onto an existing record and return the result.

        Raises:
            RecordNotFoundError: If the record does not exist
            StorageError: If the write fails
        """
        ...

    @abstractmethod
    async def delete(self, table: str, record_id: str) -> None:
        """Delete a record. Deleting a missing record is not an error."""
        ...

    async def export_all_data(self) -> dict[str, Any]:
        """Export every synced table. Providers may override."""
        raise NotImplementedError(f"{self.provider_name} does not support export")

    async def import_all_data(self, data: dict[str, Any]) -> None:
        """Import data produced by ``export_all_data``. Providers may override."""
        raise NotImplementedError(f"{self.provider_name} does not support import")

    async def close(self) -> None:
        """Release resources held by the provider."""
        return None

    def table(self, name: str) -> TableHandle:
        """Bind a table name, exposing the four record operations."""
        return TableHandle(self, name)


class RecordLookup(ABC):
    """Capability: read one record by key."""

    @abstractmethod
    async def get(self, table: str, record_id: str) -> Record | None:
        ...


class TimerStateStore(ABC):
    """Capability: persistence of per-game timer state."""

    @abstractmethod
    async def get_timer_state(self, game_id: str) -> Record | None:
        ...

    @abstractmethod
    async def save_timer_state(self, timer_state: Record) -> Record:
        ...

    @abstractmethod
    async def delete_timer_state(self, game_id: str) -> None:
        ...


class TableHandle:
    """A provider bound to one table."""

    def __init__(self, provider: StorageProvider, name: str) -> None:
        self.provider = provider
        self.name = name

    async def get_all(self) -> list[Record]:
        return await self.provider.get_all(self.name)

    async def save(self, record: Record) -> Record:
        return await self.provider.save(self.name, record)

    async def update(self, record_id: str, updates: Record) -> Record:
        return await self.provider.update(self.name, record_id, updates)

    async def delete(self, record_id: str) -> None:
        await self.provider.delete(self.name, record_id)

    def __repr__(self) -> str:
        return f"TableHandle({self.provider.provider_name}, {self.name})"


def iter_import_records(
    data: dict[str, Any], tables: Iterable[str]
) -> Iterator[tuple[str, Record]]:
    """Yield ``(table, record)`` pairs from an export document.

    Each table value may be a list of records, a dict of records keyed
    by id, or a single record for singleton tables.
    """
    for table in tables:
        value = data.get(table)
        if not value:
            continue
        if isinstance(value, dict) and get_table(table).singleton_key is None:
            for key, record in value.items():
                yield table, {**record, "id": record.get("id", key)}
        elif isinstance(value, dict):
            yield table, value
        else:
            for record in value:
                yield table, record
