"""
Sync manager: drains the durable queue against the remote store.

Per-item state machine::

    pending -> syncing -> completed       (removed after the drain)
                       -> pending         (retry_count + 1 < max_retries)
                       -> failed          (retry ceiling reached, or invalid)

Failed items at the retry ceiling are terminal until
``retry_failed_items`` resets them. Only one drain runs at a time per
manager; concurrent callers await the in-flight drain and receive the
same SyncResult.

A drain remembers the remote version of every record it writes. A later
update to the same record in that drain is not treated as a conflict
while the remote still holds that version.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from ..exceptions import RecordNotFoundError, StorageError, ValidationError
from ..local.queue import SyncQueue, SyncQueueItem, SyncStatus
from ..logging_utils import StorageLoggerAdapter, error_fields, get_storage_logger
from ..providers.base import Record, RecordLookup, StorageProvider
from ..tables import SyncOperation, validate_mutation
from ..utils import generate_queue_id
from .conflict import (
    ConflictDecision,
    ConflictResolver,
    ConflictStrategy,
    Resolution,
    SyncConflict,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], Awaitable[None] | None]


@dataclass
class SyncOptions:
    """Options for a single drain."""

    max_retries: int = 3
    batch_size: int = 10
    conflict_resolution: ConflictStrategy = ConflictStrategy.LAST_WRITE_WINS
    on_progress: ProgressCallback | None = None

    def __post_init__(self) -> None:
        self.conflict_resolution = ConflictStrategy(self.conflict_resolution)
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")


@dataclass
class SyncConfig:
    """Background drain loop settings. Durations are in seconds."""

    auto_sync_interval: float = 30.0
    initial_backoff: float = 1.0
    max_backoff: float = 60.0
    backoff_multiplier: float = 2.0

    @classmethod
    def from_environment(cls) -> SyncConfig:
        """Create configuration from OFFLINE_SYNC_* environment variables."""
        return cls(
            auto_sync_interval=float(os.environ.get("OFFLINE_SYNC_AUTO_SYNC_INTERVAL", "30")),
            initial_backoff=float(os.environ.get("OFFLINE_SYNC_INITIAL_BACKOFF", "1")),
            max_backoff=float(os.environ.get("OFFLINE_SYNC_MAX_BACKOFF", "60")),
            backoff_multiplier=float(os.environ.get("OFFLINE_SYNC_BACKOFF_MULTIPLIER", "2")),
        )

    def next_delay(self, consecutive_failures: int) -> float:
        """Delay before the next drain after ``consecutive_failures`` bad drains."""
        if consecutive_failures <= 0:
            return self.auto_sync_interval
        backoff = self.initial_backoff * (self.backoff_multiplier ** (consecutive_failures - 1))
        return min(backoff, self.max_backoff)


@dataclass
class SyncResult:
    """Result of one drain."""

    success: bool = True
    synced_items: int = 0
    failed_items: int = 0
    conflicts: list[SyncConflict] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0


@dataclass
class SyncStats:
    """Queue snapshot for status displays."""

    pending_count: int
    failed_count: int
    syncing_count: int
    last_sync_time: datetime | None
    pending_conflicts: int = 0


class SyncManager:
    """Drains a SyncQueue into a remote StorageProvider.

    Args:
        queue: Shared durable queue
        remote: Remote provider mutations are replayed against
        local: Local provider refreshed when the remote copy wins a conflict
        resolver: Conflict resolver (last-write-wins when omitted)
        options: Default options for drains
        config: Background loop settings
    """

    def __init__(
        self,
        queue: SyncQueue,
        remote: StorageProvider,
        local: StorageProvider | None = None,
        resolver: ConflictResolver | None = None,
        options: SyncOptions | None = None,
        config: SyncConfig | None = None,
    ) -> None:
        self.queue = queue
        self.remote = remote
        self.local = local
        self.options = options or SyncOptions()
        self.resolver = resolver or ConflictResolver(self.options.conflict_resolution)
        self.config = config or SyncConfig()

        self._drain_task: asyncio.Task[SyncResult] | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._last_sync: datetime | None = None
        self._pending_conflicts: dict[str, SyncConflict] = {}
        # (table, key) -> remote timestamp of the version written by this drain
        self._drain_writes: dict[tuple[str, str], int | None] = {}
        self._progress_listeners: list[ProgressCallback] = []

    @property
    def is_sync_in_progress(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    @property
    def last_sync_time(self) -> datetime | None:
        return self._last_sync

    @property
    def pending_conflicts(self) -> list[SyncConflict]:
        """Conflicts awaiting a manual decision."""
        return list(self._pending_conflicts.values())

    def on_progress(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a progress listener; returns an unsubscribe function."""
        self._progress_listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._progress_listeners:
                self._progress_listeners.remove(callback)

        return unsubscribe

    async def queue_operation(
        self, operation: SyncOperation | str, table: str, data: Any
    ) -> SyncQueueItem:
        """Append a mutation to the queue. Validation happens at drain time."""
        return await self.queue.add(operation, table, data)

    async def sync_to_remote(self, options: SyncOptions | None = None) -> SyncResult:
        """Drain the queue, or join the drain already in flight.

        Options passed while a drain is running are ignored; the caller
        receives the in-flight result.
        """
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._perform_sync(options or self.options))
        else:
            logger.debug("Sync already in progress, joining in-flight drain")
        return await asyncio.shield(self._drain_task)

    async def retry_failed_items(self, options: SyncOptions | None = None) -> SyncResult:
        """Reset failed items to pending with zero retries, then drain."""
        reset = await self.queue.reset_failed()
        if reset:
            logger.info(f"Reset {reset} failed sync items for retry")
        return await self.sync_to_remote(options)

    async def get_sync_stats(self) -> SyncStats:
        counts = await self.queue.counts()
        return SyncStats(
            pending_count=counts.pending,
            failed_count=counts.failed,
            syncing_count=counts.syncing,
            last_sync_time=self._last_sync,
            pending_conflicts=len(self._pending_conflicts),
        )

    async def clear_sync_queue(self) -> None:
        await self.queue.clear()
        self._pending_conflicts.clear()

    async def _perform_sync(self, options: SyncOptions) -> SyncResult:
        drain_log = StorageLoggerAdapter(
            get_storage_logger("sync"), {"drain_id": generate_queue_id()}
        )
        result = SyncResult()
        start_time = datetime.now(UTC)
        self._drain_writes.clear()

        try:
            queued = await self.queue.list_processable()
            items = [
                item
                for item in queued
                if not (
                    item.status == SyncStatus.FAILED and item.retry_count >= options.max_retries
                )
            ]
            if not items:
                return result

            drain_log.info(f"Draining {len(items)} sync items")
            total = len(items)
            processed = 0
            resolver = self._resolver_for(options)
            for batch in _batches(items, options.batch_size):
                for item in batch:
                    await self._sync_item(item, options, resolver, result, drain_log)
                    processed += 1
                    await self._report_progress(options, processed, total)

            await self.queue.clear_completed()
            result.success = result.synced_items > result.failed_items
            self._last_sync = datetime.now(UTC)
            drain_log.info(
                f"Drain finished: {result.synced_items} synced, "
                f"{result.failed_items} failed, {len(result.conflicts)} conflicts"
            )
        except StorageError as e:
            drain_log.error(f"Drain aborted: {e}", extra=error_fields(e))
            result.success = False
            result.errors.append(str(e))
        finally:
            result.duration_ms = int((datetime.now(UTC) - start_time).total_seconds() * 1000)

        return result

    def _resolver_for(self, options: SyncOptions) -> ConflictResolver:
        if options.conflict_resolution == self.resolver.strategy:
            return self.resolver
        return ConflictResolver(options.conflict_resolution, self.resolver.timestamp_field)

    async def _sync_item(
        self,
        item: SyncQueueItem,
        options: SyncOptions,
        resolver: ConflictResolver,
        result: SyncResult,
        drain_log: StorageLoggerAdapter,
    ) -> None:
        item_log = drain_log.bind(queue_item=item.id, table=item.table)
        await self.queue.update(item.id, status=SyncStatus.SYNCING)
        try:
            conflict = await self._apply_item(item, resolver)
        except ValidationError as e:
            # Invalid payloads never succeed on retry
            await self.queue.update(
                item.id,
                status=SyncStatus.FAILED,
                retry_count=max(item.retry_count + 1, options.max_retries),
                last_error=str(e),
            )
            result.failed_items += 1
            result.errors.append(f"{item.operation.value} {item.table} ({item.id}): {e}")
            item_log.warning(f"Invalid sync item {item.id}: {e}", extra=error_fields(e))
        except Exception as e:
            retry_count = item.retry_count + 1
            status = SyncStatus.FAILED if retry_count >= options.max_retries else SyncStatus.PENDING
            await self.queue.update(
                item.id, status=status, retry_count=retry_count, last_error=str(e)
            )
            result.failed_items += 1
            result.errors.append(f"{item.operation.value} {item.table} ({item.id}): {e}")
            item_log.warning(
                f"Sync of {item.id} failed (attempt {retry_count}/{options.max_retries}, "
                f"now {status.value}): {e}",
                extra=error_fields(e),
            )
        else:
            if conflict is not None:
                await self.queue.update(item.id, status=SyncStatus.PENDING)
                self._pending_conflicts[item.id] = conflict
                result.conflicts.append(conflict)
            else:
                await self.queue.update(item.id, status=SyncStatus.COMPLETED, last_error=None)
                self._pending_conflicts.pop(item.id, None)
                result.synced_items += 1
                item_log.debug(f"Synced {item.operation.value} {item.table} ({item.id})")

    async def _apply_item(
        self, item: SyncQueueItem, resolver: ConflictResolver
    ) -> SyncConflict | None:
        """Replay one mutation remotely.

        Returns an unresolved conflict when the item needs a manual
        decision, otherwise None.
        """
        spec = validate_mutation(item.table, item.operation, item.data)
        data: Record = item.data

        key = spec.record_key(data)
        assert key is not None

        if item.operation == SyncOperation.CREATE:
            saved = await self.remote.save(item.table, data)
            self._remember_write(item.table, key, saved, resolver)
            return None

        if item.operation == SyncOperation.DELETE:
            await self.remote.delete(item.table, key)
            self._drain_writes.pop((item.table, key), None)
            return None

        remote_record: Record | None = None
        if isinstance(self.remote, RecordLookup):
            remote_record = await self.remote.get(item.table, key)

        if self._written_by_drain(item.table, key, remote_record, resolver):
            decision = ConflictDecision(Resolution.LOCAL, data)
        else:
            decision = resolver.decide(item, remote_record)
        if decision.conflict is not None and not decision.conflict.resolved:
            return decision.conflict

        pushed = await self._push_resolution(
            item, key, decision.resolution, decision.data, remote_record
        )
        if pushed is not None:
            self._remember_write(item.table, key, pushed, resolver)
        return None

    def _remember_write(
        self, table: str, key: str, written: Any, resolver: ConflictResolver
    ) -> None:
        timestamp = resolver.remote_timestamp(written) if isinstance(written, dict) else None
        self._drain_writes[(table, key)] = timestamp

    def _written_by_drain(
        self,
        table: str,
        key: str,
        remote_record: Record | None,
        resolver: ConflictResolver,
    ) -> bool:
        """True when ``remote_record`` is still the version this drain wrote."""
        if remote_record is None or (table, key) not in self._drain_writes:
            return False
        written_ts = self._drain_writes[(table, key)]
        remote_ts = resolver.remote_timestamp(remote_record)
        return written_ts is None or remote_ts is None or remote_ts <= written_ts

    async def _push_resolution(
        self,
        item: SyncQueueItem,
        key: str,
        resolution: Resolution,
        data: Record | None,
        remote_record: Record | None,
    ) -> Record | None:
        """Push the resolved data; returns what the remote store wrote, if anything."""
        if resolution == Resolution.REMOTE:
            # Remote copy wins; mirror it locally so the next read agrees
            if self.local is not None and remote_record is not None:
                await self.local.save(item.table, remote_record)
            return None

        assert data is not None
        if isinstance(self.remote, RecordLookup) and remote_record is None:
            return await self.remote.save(item.table, data)
        try:
            written = await self.remote.update(item.table, key, data)
        except RecordNotFoundError:
            written = await self.remote.save(item.table, data)

        if resolution == Resolution.MERGED and self.local is not None:
            await self.local.save(item.table, data)
        return written

    async def resolve_conflict(
        self, conflict: SyncConflict, resolution: Resolution | str
    ) -> bool:
        """Apply a manual decision to a conflict reported by a drain.

        Returns:
            True if the conflict was pending and has been applied
        """
        item = conflict.item
        if item.id not in self._pending_conflicts:
            return False

        decision = self.resolver.apply(conflict, resolution)
        spec = validate_mutation(item.table, item.operation, item.data)
        key = spec.record_key(item.data)
        assert key is not None
        await self._push_resolution(
            item, key, decision.resolution, decision.data, conflict.remote_data
        )

        await self.queue.delete(item.id)
        del self._pending_conflicts[item.id]
        logger.info(f"Resolved conflict on {item.table}/{key} with {decision.resolution.value}")
        return True

    async def _report_progress(self, options: SyncOptions, completed: int, total: int) -> None:
        callbacks = list(self._progress_listeners)
        if options.on_progress is not None:
            callbacks.append(options.on_progress)
        for callback in callbacks:
            try:
                outcome = callback(completed, total)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning(f"Sync progress callback failed: {e}")

    # Background loop

    def start(self) -> None:
        """Start draining periodically in the background."""
        if self._loop_task is not None and not self._loop_task.done():
            return
        self._loop_task = asyncio.create_task(self._sync_loop())
        logger.info(f"Background sync started (interval={self.config.auto_sync_interval}s)")

    async def stop(self) -> None:
        """Stop the background loop and wait for any in-flight drain."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._drain_task is not None and not self._drain_task.done():
            await asyncio.wait([self._drain_task])

    async def _sync_loop(self) -> None:
        consecutive_failures = 0
        while True:
            await asyncio.sleep(self.config.next_delay(consecutive_failures))
            try:
                result = await self.sync_to_remote()
            except Exception as e:
                logger.error(f"Background sync failed: {e}")
                result = SyncResult(success=False, errors=[str(e)])

            if result.failed_items or not result.success:
                consecutive_failures += 1
                logger.warning(
                    f"Background sync had failures, next attempt in "
                    f"{self.config.next_delay(consecutive_failures):.1f}s"
                )
            else:
                consecutive_failures = 0


def _batches(items: list[SyncQueueItem], size: int) -> list[list[SyncQueueItem]]:
    return [items[i : i + size] for i in range(0, len(items), size)]
