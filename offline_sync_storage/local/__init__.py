"""
Local durable storage.

Everything local lives in one SQLite database:

- LocalDatabase: connection and serialised transactions
- SQLiteLocalStore: records keyed by (table, key)
- SyncQueue: durable queue of pending remote mutations
- RecordCache: version-tagged TTL cache entries
- LocalStorageProvider: record operations over the local store
"""

from .cache import CacheEntry, CacheStats, RecordCache
from .database import LocalDatabase
from .provider import LocalStorageProvider
from .queue import QueueCounts, SyncQueue, SyncQueueItem, SyncStatus
from .store import LocalStore, SQLiteLocalStore

__all__ = [
    "LocalDatabase",
    "LocalStore",
    "SQLiteLocalStore",
    "LocalStorageProvider",
    "SyncQueue",
    "SyncQueueItem",
    "SyncStatus",
    "QueueCounts",
    "RecordCache",
    "CacheEntry",
    "CacheStats",
]
