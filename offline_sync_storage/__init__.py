"""
Offline Sync Storage

Offline-first data layer that keeps a local SQLite store and a remote
Cosmos DB store eventually consistent under unreliable connectivity.

Provides:
- Local durable storage and a durable sync queue (SQLite)
- Queue draining with retries, backoff and conflict resolution
- Provider selection with transparent local fallback
- Request debouncing and batching for bursts of writes

Usage:

    >>> from offline_sync_storage import StorageConfig, StorageContext
    >>> async with await StorageContext.create(StorageConfig.from_environment()) as ctx:
    ...     # Written locally at once, replicated now or queued for later
    ...     await ctx.offline.save("players", {"id": "p1", "name": "Ada"})
    ...
    ...     # Push anything still queued
    ...     result = await ctx.sync_manager.sync_to_remote()

Components:

    # Local storage and queue
    from offline_sync_storage.local import LocalDatabase, SyncQueue, RecordCache

    # Sync
    from offline_sync_storage.sync import SyncManager, ConflictResolver

    # Remote store (Cosmos DB)
    from offline_sync_storage.remote import CosmosRemoteStore
"""

# Backup
from .backup import read_backup, write_backup

# Configuration
from .config import CosmosAuthMethod, ProviderConfig, ProviderKind, StorageConfig

# Connectivity
from .connectivity import (
    ConnectivityObserver,
    ManualConnectivityObserver,
    PollingConnectivityObserver,
)
from .context import StorageContext
from .debouncer import DebounceConfig, Priority, RequestDebouncer

# Exceptions
from .exceptions import (
    AuthenticationError,
    DebounceCancelledError,
    FallbackError,
    NetworkError,
    RecordNotFoundError,
    StorageError,
    StorageUnavailableError,
    ValidationError,
)

# Logging
from .logging_utils import configure_logging, get_storage_logger

# Local storage
from .local import (
    LocalDatabase,
    LocalStorageProvider,
    RecordCache,
    SQLiteLocalStore,
    SyncQueue,
    SyncQueueItem,
    SyncStatus,
)

# Managers
from .manager import StorageManager
from .offline import OfflineFirstStorageManager
from .providers import StorageProvider, TableHandle

# Sync
from .sync import (
    ConflictResolver,
    ConflictStrategy,
    Resolution,
    SyncConfig,
    SyncConflict,
    SyncManager,
    SyncOptions,
    SyncResult,
)
from .tables import SyncOperation

# Remote store needs the Azure SDKs
try:
    from .remote import CosmosRemoteStore  # noqa: F401

    _has_cosmos = True
except ImportError:
    _has_cosmos = False


__all__ = [
    # Configuration
    "StorageConfig",
    "ProviderConfig",
    "ProviderKind",
    "CosmosAuthMethod",
    # Context and managers
    "StorageContext",
    "StorageManager",
    "OfflineFirstStorageManager",
    "StorageProvider",
    "TableHandle",
    # Local
    "LocalDatabase",
    "SQLiteLocalStore",
    "LocalStorageProvider",
    "SyncQueue",
    "SyncQueueItem",
    "SyncStatus",
    "SyncOperation",
    "RecordCache",
    # Sync
    "SyncManager",
    "SyncOptions",
    "SyncConfig",
    "SyncResult",
    "ConflictResolver",
    "ConflictStrategy",
    "Resolution",
    "SyncConflict",
    # Debouncing
    "RequestDebouncer",
    "DebounceConfig",
    "Priority",
    # Connectivity
    "ConnectivityObserver",
    "ManualConnectivityObserver",
    "PollingConnectivityObserver",
    # Backup
    "write_backup",
    "read_backup",
    # Logging
    "configure_logging",
    "get_storage_logger",
    # Exceptions
    "StorageError",
    "NetworkError",
    "AuthenticationError",
    "ValidationError",
    "RecordNotFoundError",
    "StorageUnavailableError",
    "FallbackError",
    "DebounceCancelledError",
]

if _has_cosmos:
    __all__.extend(["CosmosRemoteStore"])

__version__ = "0.1.0"
