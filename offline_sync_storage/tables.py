"""
Table registry.

Every logical table the data layer knows about is declared here with its
key field and the mutations the remote store accepts for it. Queue items
and cache payloads are discriminated on the table name, so validation of
a mutation only needs this registry.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .exceptions import ValidationError

# Epoch milliseconds of the last write, compared during conflict checks
LAST_MODIFIED = "lastModified"


class SyncOperation(str, Enum):
    """Mutation kinds carried by the sync queue."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class TableSpec:
    """Declaration of a logical table.

    Attributes:
        name: Table name used by every store
        key_field: Field holding the record key
        sync_operations: Mutations that can be replayed against the remote
        ephemeral: Local-only state, never enqueued or sent remotely
        singleton_key: Fixed key for single-record tables
    """

    name: str
    key_field: str = "id"
    sync_operations: frozenset[SyncOperation] = frozenset(SyncOperation)
    ephemeral: bool = False
    singleton_key: str | None = None

    def supports(self, operation: SyncOperation) -> bool:
        return not self.ephemeral and operation in self.sync_operations

    def record_key(self, record: dict[str, Any]) -> str | None:
        if self.singleton_key is not None:
            return self.singleton_key
        value = record.get(self.key_field)
        return str(value) if value not in (None, "") else None


PLAYERS = "players"
SEASONS = "seasons"
TOURNAMENTS = "tournaments"
SAVED_GAMES = "saved_games"
APP_SETTINGS = "app_settings"
TIMER_STATES = "timer_states"

TABLES: dict[str, TableSpec] = {
    PLAYERS: TableSpec(PLAYERS),
    SEASONS: TableSpec(SEASONS),
    TOURNAMENTS: TableSpec(TOURNAMENTS),
    SAVED_GAMES: TableSpec(SAVED_GAMES),
    APP_SETTINGS: TableSpec(
        APP_SETTINGS,
        sync_operations=frozenset({SyncOperation.CREATE, SyncOperation.UPDATE}),
        singleton_key="default",
    ),
    TIMER_STATES: TableSpec(TIMER_STATES, sync_operations=frozenset(), ephemeral=True),
}

SYNCED_TABLES = tuple(name for name, spec in TABLES.items() if not spec.ephemeral)


def get_table(name: str) -> TableSpec:
    """Look up a table declaration.

    Raises:
        ValidationError: If the table is unknown
    """
    try:
        return TABLES[name]
    except KeyError:
        raise ValidationError(f"Unknown table: {name}", table=name) from None


def validate_mutation(table: str, operation: SyncOperation | str, data: Any) -> TableSpec:
    """Check that a mutation can be replayed against the remote store.

    Raises:
        ValidationError: For unknown tables, unsupported (table, operation)
            pairs, non-dict payloads, or update/delete payloads without a key.
    """
    spec = get_table(table)
    try:
        op = SyncOperation(operation)
    except ValueError:
        raise ValidationError(f"Unsupported operation: {operation}", table=table) from None

    if not spec.supports(op):
        raise ValidationError(f"Unsupported table for {op.value}: {table}", table=table)

    if not isinstance(data, dict):
        raise ValidationError(
            f"{op.value.capitalize()} operation requires an object payload", table=table
        )

    if op in (SyncOperation.UPDATE, SyncOperation.DELETE) and spec.singleton_key is None:
        if not data.get(spec.key_field):
            raise ValidationError(
                f"{op.value.capitalize()} operation requires data with {spec.key_field} field",
                field=spec.key_field,
                table=table,
            )

    return spec
