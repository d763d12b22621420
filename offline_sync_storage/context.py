"""
Storage context: the store handles an application holds for its lifetime.

Everything is created once at startup and torn down at shutdown. The
sync queue instance is shared between the offline-first manager (which
enqueues) and the sync manager (which drains).

Example:
    >>> async with await StorageContext.create(StorageConfig.from_environment()) as ctx:
    ...     await ctx.offline.save("players", {"id": "p1", "name": "Ada"})
"""

from __future__ import annotations

import logging
from typing import Any

from .config import StorageConfig
from .connectivity import ConnectivityObserver, PollingConnectivityObserver
from .debouncer import DebounceConfig, RequestDebouncer
from .local.cache import RecordCache
from .local.database import LocalDatabase
from .local.provider import LocalStorageProvider
from .local.queue import SyncQueue
from .local.store import SQLiteLocalStore
from .manager import StorageManager
from .offline import OfflineFirstStorageManager
from .providers.base import StorageProvider
from .sync.manager import SyncConfig, SyncManager, SyncOptions

logger = logging.getLogger(__name__)


class StorageContext:
    """Owns every storage component and their shutdown order."""

    def __init__(
        self,
        config: StorageConfig,
        database: LocalDatabase,
        local: LocalStorageProvider,
        queue: SyncQueue,
        cache: RecordCache,
        storage: StorageManager,
        debouncer: RequestDebouncer,
        remote: StorageProvider | None = None,
        sync_manager: SyncManager | None = None,
        offline: OfflineFirstStorageManager | None = None,
        connectivity: ConnectivityObserver | None = None,
    ) -> None:
        self.config = config
        self.database = database
        self.local = local
        self.queue = queue
        self.cache = cache
        self.storage = storage
        self.debouncer = debouncer
        self.remote = remote
        self.sync_manager = sync_manager
        self.offline = offline
        self.connectivity = connectivity
        self._closed = False

    @classmethod
    async def create(
        cls,
        config: StorageConfig | None = None,
        remote: StorageProvider | None = None,
        connectivity: ConnectivityObserver | None = None,
        sync_config: SyncConfig | None = None,
        debounce_config: DebounceConfig | None = None,
        start_background_sync: bool = False,
    ) -> StorageContext:
        """Open the local database and wire every component.

        A Cosmos DB remote store is created from ``config`` when no
        ``remote`` is given and an endpoint is configured. Without a
        remote, only the local components and the storage manager exist.

        Raises:
            StorageUnavailableError: If the local database cannot be opened
        """
        config = config or StorageConfig.from_environment()
        database = await LocalDatabase.create(config.local_path)
        try:
            local = LocalStorageProvider(SQLiteLocalStore(database))
            queue = SyncQueue(database)
            await queue.recover_interrupted()
            cache = RecordCache(database)

            if remote is None and config.cosmos_endpoint:
                from .remote.cosmos import CosmosRemoteStore

                remote = CosmosRemoteStore(config)

            storage = StorageManager(local, remote, config.provider_config)

            sync_manager = None
            offline = None
            if remote is not None:
                sync_manager = SyncManager(
                    queue,
                    remote,
                    local,
                    options=SyncOptions(
                        max_retries=config.max_retries, batch_size=config.batch_size
                    ),
                    config=sync_config,
                )
                if connectivity is None:
                    connectivity = PollingConnectivityObserver.from_config(config)
                await connectivity.start()
                offline = OfflineFirstStorageManager(
                    local, remote, sync_manager, connectivity, config
                )
                if start_background_sync:
                    sync_manager.start()
        except BaseException:
            await database.close()
            raise

        logger.info(
            f"Storage context ready (local={config.local_path}, "
            f"remote={remote.provider_name if remote else 'none'})"
        )
        return cls(
            config=config,
            database=database,
            local=local,
            queue=queue,
            cache=cache,
            storage=storage,
            debouncer=RequestDebouncer(debounce_config),
            remote=remote,
            sync_manager=sync_manager,
            offline=offline,
            connectivity=connectivity,
        )

    async def aclose(self) -> None:
        """Flush pending writes, stop background work and close every store."""
        if self._closed:
            return
        self._closed = True

        await self.debouncer.flush()
        if self.offline is not None:
            await self.offline.close()
        elif self.sync_manager is not None:
            await self.sync_manager.stop()
        if self.connectivity is not None:
            await self.connectivity.stop()
        if self.remote is not None:
            await self.remote.close()
        await self.database.close()
        logger.info("Storage context closed")

    async def __aenter__(self) -> StorageContext:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()
