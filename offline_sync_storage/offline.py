"""
Offline-first storage manager.

- Reads always come from local storage.
- Writes land in local storage first, then go to the remote store when
  connected. A remote failure, or being offline, queues the same
  mutation for the sync manager instead.
- Every local edit to a synced table is stamped with ``lastModified``, so a
  queued mutation carries the time of the edit rather than of its replay.
- Ephemeral tables (timer state) never leave the device.
- Coming back online drains the queue automatically.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .config import StorageConfig
from .connectivity import ConnectivityObserver
from .exceptions import StorageError
from .local.provider import LocalStorageProvider
from .providers.base import (
    Record,
    RecordLookup,
    StorageProvider,
    TimerStateStore,
    iter_import_records,
)
from .sync.manager import SyncManager, SyncResult, SyncStats
from .tables import LAST_MODIFIED, SYNCED_TABLES, SyncOperation, get_table, validate_mutation
from .utils import now_ms

logger = logging.getLogger(__name__)


class OfflineFirstStorageManager(StorageProvider, RecordLookup, TimerStateStore):
    """Local-first reads and writes with queued remote replication.

    Args:
        local: Durable local provider
        remote: Remote provider
        sync_manager: Drains the shared queue into ``remote``
        connectivity: Online/offline source; assumed online when omitted
        config: Offline-mode flags and import sync delay
    """

    def __init__(
        self,
        local: LocalStorageProvider,
        remote: StorageProvider,
        sync_manager: SyncManager,
        connectivity: ConnectivityObserver | None = None,
        config: StorageConfig | None = None,
    ) -> None:
        self.local = local
        self.remote = remote
        self.sync_manager = sync_manager
        self.connectivity = connectivity
        self.config = config or StorageConfig()

        self._import_sync_task: asyncio.Task[None] | None = None
        self._reconnect_sync_task: asyncio.Task[None] | None = None
        if connectivity is not None:
            connectivity.subscribe(self._handle_connectivity)

    @property
    def provider_name(self) -> str:
        return f"offline_first({self.local.provider_name})"

    @property
    def connected(self) -> bool:
        return self.connectivity is None or self.connectivity.is_online

    def _should_sync_remote(self) -> bool:
        return self.connected and self.config.enable_offline_mode

    async def is_online(self) -> bool:
        if not self.connected:
            return False
        try:
            return await self.remote.is_online()
        except Exception as e:
            logger.debug(f"Remote connectivity check failed: {e}")
            return False

    async def _handle_connectivity(self, online: bool) -> None:
        if not online:
            logger.info("Offline, remote writes will be queued")
            return
        if not self.config.sync_on_reconnect:
            return

        if self._reconnect_sync_task is not None and not self._reconnect_sync_task.done():
            return

        logger.info("Connection restored, starting sync")
        # Connectivity notifications do not wait for the drain
        self._reconnect_sync_task = asyncio.create_task(self._sync_after_reconnect())

    async def _sync_after_reconnect(self) -> None:
        try:
            result = await self.sync_manager.sync_to_remote()
        except Exception as e:
            logger.error(f"Sync failed after reconnection: {e}")
            return
        if result.success:
            logger.info(f"Sync completed: {result.synced_items} items synced")
        else:
            logger.warning(f"Sync completed with errors: {result.failed_items} failed")

    async def _replicate(
        self,
        operation: SyncOperation,
        table: str,
        payload: Record,
        remote_call: Callable[[], Awaitable[Any]],
    ) -> None:
        """Apply ``remote_call`` now if connected, otherwise queue ``payload``."""
        if self._should_sync_remote():
            try:
                await remote_call()
                return
            except Exception as e:
                logger.warning(
                    f"Failed to {operation.value} {table} remotely, queuing for later: {e}"
                )
        await self.sync_manager.queue_operation(operation, table, payload)

    # Reads

    async def get_all(self, table: str) -> list[Record]:
        return await self.local.get_all(table)

    async def get(self, table: str, record_id: str) -> Record | None:
        return await self.local.get(table, record_id)

    # Writes

    async def save(self, table: str, record: Record) -> Record:
        spec = get_table(table)
        if spec.ephemeral:
            return await self.local.save(table, record)

        validate_mutation(table, SyncOperation.CREATE, record)
        saved = await self.local.save(table, {**record, LAST_MODIFIED: now_ms()})
        await self._replicate(
            SyncOperation.CREATE, table, saved, lambda: self.remote.save(table, saved)
        )
        return saved

    async def update(self, table: str, record_id: str, updates: Record) -> Record:
        spec = get_table(table)
        if spec.ephemeral:
            return await self.local.update(table, record_id, updates)

        key = spec.singleton_key or record_id
        validate_mutation(table, SyncOperation.UPDATE, {**updates, spec.key_field: key})
        updates = {**updates, LAST_MODIFIED: now_ms()}
        updated = await self.local.update(table, record_id, updates)
        # Queue the merged record so a replay carries the full state
        await self._replicate(
            SyncOperation.UPDATE,
            table,
            updated,
            lambda: self.remote.update(table, record_id, updates),
        )
        return updated

    async def delete(self, table: str, record_id: str) -> None:
        spec = get_table(table)
        if spec.ephemeral:
            await self.local.delete(table, record_id)
            return

        payload = {spec.key_field: record_id}
        validate_mutation(table, SyncOperation.DELETE, payload)
        await self.local.delete(table, record_id)
        await self._replicate(
            SyncOperation.DELETE, table, payload, lambda: self.remote.delete(table, record_id)
        )

    # Timer state, local only

    async def get_timer_state(self, game_id: str) -> Record | None:
        return await self.local.get_timer_state(game_id)

    async def save_timer_state(self, timer_state: Record) -> Record:
        return await self.local.save_timer_state(timer_state)

    async def delete_timer_state(self, game_id: str) -> None:
        await self.local.delete_timer_state(game_id)

    # Backup / restore

    async def export_all_data(self) -> dict[str, Any]:
        return await self.local.export_all_data()

    async def import_all_data(self, data: dict[str, Any]) -> None:
        """Import into local storage, queue every record, then sync shortly after."""
        await self.local.import_all_data(data)

        queued = 0
        for table, record in iter_import_records(data, SYNCED_TABLES):
            await self.sync_manager.queue_operation(SyncOperation.CREATE, table, record)
            queued += 1
        logger.info(f"Queued {queued} imported records for sync")

        if queued and self._should_sync_remote():
            if self._import_sync_task is not None and not self._import_sync_task.done():
                self._import_sync_task.cancel()
            self._import_sync_task = asyncio.create_task(
                self._delayed_sync(self.config.import_sync_delay)
            )

    async def _delayed_sync(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            result = await self.sync_manager.sync_to_remote()
        except Exception as e:
            logger.warning(f"Failed to sync imported data: {e}")
            return
        if not result.success:
            logger.warning(f"Sync of imported data had {result.failed_items} failures")

    # Sync management

    async def force_sync(self) -> SyncResult:
        """Drain the queue now.

        Raises:
            StorageError: If the drain was not successful
        """
        result = await self.sync_manager.sync_to_remote()
        if not result.success:
            raise StorageError(
                f"Sync failed: {result.failed_items} items failed to sync",
                "offline_first",
                "force_sync",
                details={"errors": result.errors},
            )
        return result

    async def get_sync_stats(self) -> SyncStats:
        return await self.sync_manager.get_sync_stats()

    async def retry_failed_sync(self) -> SyncResult:
        return await self.sync_manager.retry_failed_items()

    async def close(self) -> None:
        """Detach from connectivity and stop background sync work."""
        if self.connectivity is not None:
            self.connectivity.unsubscribe(self._handle_connectivity)
        for task in (self._import_sync_task, self._reconnect_sync_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._import_sync_task = None
        self._reconnect_sync_task = None
        await self.sync_manager.stop()
