"""
Version-tagged TTL cache kept in the local database.

Cache entries are a read side channel, never authoritative. Each entry
records when it was written, the schema version it was written with,
and an optional expiry. Reads drop entries that expired or were written
with a different version.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from ..utils import now_ms
from .database import LocalDatabase

logger = logging.getLogger(__name__)

DEFAULT_TTL_MS = 24 * 60 * 60 * 1000
DEFAULT_VERSION = "1.0.0"


@dataclass
class CacheEntry:
    """A cached value with its freshness metadata."""

    data: Any
    timestamp: int
    version: str
    expires_at: int | None = None

    def is_expired(self, now: int | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else now_ms()) > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """Serialized entry; ``expiresAt`` is present only for entries with a TTL."""
        result: dict[str, Any] = {
            "data": self.data,
            "timestamp": self.timestamp,
            "version": self.version,
        }
        if self.expires_at is not None:
            result["expiresAt"] = self.expires_at
        return result


@dataclass
class CacheStats:
    total_entries: int
    total_size: int
    expired_entries: int
    old_version_entries: int


class RecordCache:
    """Prefixed cache namespace over the ``cache_entries`` table.

    Args:
        database: Shared local database
        prefix: Namespace prepended to every key
        default_ttl_ms: TTL applied when ``set`` is not given one;
            a non-positive TTL disables expiry
        version: Schema version stamped on new entries and required on reads
    """

    def __init__(
        self,
        database: LocalDatabase,
        prefix: str = "cache",
        default_ttl_ms: int = DEFAULT_TTL_MS,
        version: str = DEFAULT_VERSION,
    ) -> None:
        self.database = database
        self.prefix = prefix
        self.default_ttl_ms = default_ttl_ms
        self.version = version

    def _cache_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def _is_stale(self, entry: CacheEntry, now: int) -> bool:
        return entry.version != self.version or entry.is_expired(now)

    async def set(
        self,
        key: str,
        data: Any,
        ttl_ms: int | None = None,
        version: str | None = None,
    ) -> CacheEntry:
        ttl = self.default_ttl_ms if ttl_ms is None else ttl_ms
        timestamp = now_ms()
        entry = CacheEntry(
            data=data,
            timestamp=timestamp,
            version=version or self.version,
            expires_at=timestamp + ttl if ttl > 0 else None,
        )
        async with self.database.transaction("cache_set") as conn:
            await conn.execute(
                """
                INSERT INTO cache_entries (cache_key, data, timestamp, version, expires_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (cache_key) DO UPDATE SET
                    data = excluded.data,
                    timestamp = excluded.timestamp,
                    version = excluded.version,
                    expires_at = excluded.expires_at
                """,
                (
                    self._cache_key(key),
                    json.dumps(data, default=str),
                    entry.timestamp,
                    entry.version,
                    entry.expires_at,
                ),
            )
        return entry

    async def _read_entry(self, key: str) -> CacheEntry | None:
        row = await self.database.fetch_one(
            "SELECT data, timestamp, version, expires_at FROM cache_entries WHERE cache_key = ?",
            (self._cache_key(key),),
            operation="cache_get",
        )
        if row is None:
            return None
        return CacheEntry(
            data=json.loads(row["data"]),
            timestamp=row["timestamp"],
            version=row["version"],
            expires_at=row["expires_at"],
        )

    async def get(self, key: str) -> Any | None:
        """Return the cached value, or None if missing, expired or outdated."""
        entry = await self._read_entry(key)
        if entry is None:
            return None
        if self._is_stale(entry, now_ms()):
            logger.debug(f"Dropping stale cache entry {key}")
            await self.delete(key)
            return None
        return entry.data

    async def has(self, key: str) -> bool:
        entry = await self._read_entry(key)
        return entry is not None and not self._is_stale(entry, now_ms())

    async def delete(self, key: str) -> None:
        async with self.database.transaction("cache_delete") as conn:
            await conn.execute(
                "DELETE FROM cache_entries WHERE cache_key = ?", (self._cache_key(key),)
            )

    async def keys(self) -> list[str]:
        rows = await self.database.fetch_all(
            "SELECT cache_key FROM cache_entries WHERE cache_key LIKE ? ORDER BY cache_key",
            (f"{self.prefix}:%",),
            operation="cache_keys",
        )
        offset = len(self.prefix) + 1
        return [row["cache_key"][offset:] for row in rows]

    async def clear_all(self) -> None:
        async with self.database.transaction("cache_clear") as conn:
            await conn.execute(
                "DELETE FROM cache_entries WHERE cache_key LIKE ?", (f"{self.prefix}:%",)
            )

    async def clear_expired(self) -> int:
        """Delete expired and outdated entries, returning how many were removed."""
        now = now_ms()
        async with self.database.transaction("cache_clear_expired") as conn:
            cursor = await conn.execute(
                """
                DELETE FROM cache_entries
                WHERE cache_key LIKE ?
                AND (version != ? OR (expires_at IS NOT NULL AND expires_at < ?))
                """,
                (f"{self.prefix}:%", self.version, now),
            )
            removed = cursor.rowcount
            await cursor.close()
        return removed

    async def get_stats(self) -> CacheStats:
        rows = await self.database.fetch_all(
            "SELECT data, version, expires_at FROM cache_entries WHERE cache_key LIKE ?",
            (f"{self.prefix}:%",),
            operation="cache_stats",
        )
        now = now_ms()
        expired = sum(1 for r in rows if r["expires_at"] is not None and now > r["expires_at"])
        old_version = sum(1 for r in rows if r["version"] != self.version)
        return CacheStats(
            total_entries=len(rows),
            total_size=sum(len(r["data"]) for r in rows),
            expired_entries=expired,
            old_version_entries=old_version,
        )
