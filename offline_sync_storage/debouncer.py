"""
Request debouncing and batching for storage operations.

Rapid successive writes to the same key are coalesced into one call:

- Each key owns at most one pending timer. Another call within the
  debounce window cancels and reschedules it.
- Reaching ``max_batch_size`` queued calls, or the oldest call having
  waited ``max_wait_ms``, executes the key immediately.
- Every caller waiting on a key receives the same settled outcome
  (result or exception), except for ``batch_save`` where each caller
  gets its own slice of the results.

Priority hints scale the debounce window: high x0.2, normal x1, low x2.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .exceptions import DebounceCancelledError
from .utils import deep_merge

logger = logging.getLogger(__name__)


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


_PRIORITY_SCALE = {
    Priority.LOW: 2.0,
    Priority.NORMAL: 1.0,
    Priority.HIGH: 0.2,
}


@dataclass
class DebounceConfig:
    """Debounce timing. All values in milliseconds except the batch size."""

    debounce_ms: int = 500
    max_batch_size: int = 10
    max_wait_ms: int = 2000

    @classmethod
    def from_environment(cls) -> DebounceConfig:
        return cls(
            debounce_ms=int(os.environ.get("OFFLINE_SYNC_DEBOUNCE_MS", "500")),
            max_batch_size=int(os.environ.get("OFFLINE_SYNC_DEBOUNCE_MAX_BATCH", "10")),
            max_wait_ms=int(os.environ.get("OFFLINE_SYNC_DEBOUNCE_MAX_WAIT_MS", "2000")),
        )


@dataclass
class DebounceStats:
    pending_batches: int
    total_pending_requests: int
    oldest_request_age_ms: int


@dataclass
class _PendingCall:
    future: asyncio.Future[Any]
    enqueued_at: float
    operation: Callable[[], Awaitable[Any]] | None = None
    data: Any = None


# Executes every queued call for a key; returns one result per call
_Runner = Callable[[list[_PendingCall]], Awaitable[list[Any]]]


@dataclass
class _PendingKey:
    runner: _Runner
    calls: list[_PendingCall] = field(default_factory=list)
    handle: asyncio.TimerHandle | None = None


async def _run_latest(calls: list[_PendingCall]) -> list[Any]:
    operation = calls[-1].operation
    assert operation is not None
    result = await operation()
    return [result] * len(calls)


class RequestDebouncer:
    """Coalesces bursts of storage writes per key."""

    def __init__(self, config: DebounceConfig | None = None) -> None:
        self.config = config or DebounceConfig()
        self._pending: dict[str, _PendingKey] = {}
        self._running: set[asyncio.Task[None]] = set()

    async def debounce(
        self,
        key: str,
        operation: Callable[[], Awaitable[Any]],
        priority: Priority | str = Priority.NORMAL,
    ) -> Any:
        """Queue ``operation`` under ``key``; only the most recent one runs."""
        return await self._enqueue(key, _run_latest, Priority(priority), operation=operation)

    async def debounced_update(
        self,
        record_id: str,
        updates: dict[str, Any],
        update_operation: Callable[[str, dict[str, Any]], Awaitable[Any]],
        priority: Priority | str = Priority.NORMAL,
    ) -> Any:
        """Deep-merge queued updates for ``record_id`` and apply them once."""

        async def run(calls: list[_PendingCall]) -> list[Any]:
            merged: dict[str, Any] = {}
            for call in calls:
                merged = deep_merge(merged, call.data)
            result = await update_operation(record_id, merged)
            return [result] * len(calls)

        return await self._enqueue(f"update:{record_id}", run, Priority(priority), data=updates)

    async def debounced_save(
        self,
        key: str,
        data: Any,
        save_operation: Callable[[Any], Awaitable[Any]],
        priority: Priority | str = Priority.NORMAL,
    ) -> Any:
        """Save only the latest payload queued under ``key``."""

        async def run(calls: list[_PendingCall]) -> list[Any]:
            result = await save_operation(calls[-1].data)
            return [result] * len(calls)

        return await self._enqueue(f"save:{key}", run, Priority(priority), data=data)

    async def batch_save(
        self,
        key: str,
        items: list[Any],
        save_operation: Callable[[list[Any]], Awaitable[list[Any]]],
    ) -> list[Any]:
        """Save the items of every queued call in one operation.

        Each caller receives the slice of results matching its own items.
        """

        async def run(calls: list[_PendingCall]) -> list[Any]:
            all_items = [item for call in calls for item in call.data]
            results = list(await save_operation(all_items))
            sliced: list[Any] = []
            offset = 0
            for call in calls:
                sliced.append(results[offset : offset + len(call.data)])
                offset += len(call.data)
            return sliced

        return await self._enqueue(f"batch:{key}", run, Priority.NORMAL, data=list(items))

    async def _enqueue(
        self,
        key: str,
        runner: _Runner,
        priority: Priority,
        operation: Callable[[], Awaitable[Any]] | None = None,
        data: Any = None,
    ) -> Any:
        loop = asyncio.get_running_loop()
        call = _PendingCall(
            future=loop.create_future(),
            enqueued_at=loop.time(),
            operation=operation,
            data=data,
        )

        pending = self._pending.get(key)
        if pending is None:
            pending = self._pending[key] = _PendingKey(runner=runner)
        pending.runner = runner
        pending.calls.append(call)
        if pending.handle is not None:
            pending.handle.cancel()
            pending.handle = None

        waited_ms = (loop.time() - pending.calls[0].enqueued_at) * 1000
        if len(pending.calls) >= self.config.max_batch_size or waited_ms >= self.config.max_wait_ms:
            self._fire(key)
        else:
            window_ms = self.config.debounce_ms * _PRIORITY_SCALE[priority]
            delay_ms = min(window_ms, self.config.max_wait_ms - waited_ms)
            pending.handle = loop.call_later(delay_ms / 1000, self._fire, key)

        return await call.future

    def _fire(self, key: str) -> None:
        pending = self._pending.pop(key, None)
        if pending is None:
            return
        if pending.handle is not None:
            pending.handle.cancel()
        task = asyncio.ensure_future(self._execute(key, pending))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _execute(self, key: str, pending: _PendingKey) -> None:
        calls = pending.calls
        logger.debug(f"Executing debounced key {key} for {len(calls)} callers")
        try:
            results = await pending.runner(calls)
        except asyncio.CancelledError:
            for call in calls:
                if not call.future.done():
                    call.future.cancel()
            raise
        except Exception as e:
            logger.debug(f"Debounced operation for {key} failed: {e}")
            for call in calls:
                if not call.future.done():
                    call.future.set_exception(e)
            return

        for call, result in zip(calls, results):
            if not call.future.done():
                call.future.set_result(result)

    async def flush(self) -> None:
        """Execute every pending key now and wait for in-flight executions."""
        for key in list(self._pending):
            self._fire(key)
        if self._running:
            await asyncio.gather(*list(self._running))

    def clear(self) -> None:
        """Cancel every pending key without executing it."""
        for key, pending in self._pending.items():
            if pending.handle is not None:
                pending.handle.cancel()
            for call in pending.calls:
                if not call.future.done():
                    call.future.set_exception(DebounceCancelledError(key))
        cleared = len(self._pending)
        self._pending.clear()
        if cleared:
            logger.debug(f"Cleared {cleared} pending debounced keys")

    def get_stats(self) -> DebounceStats:
        total = sum(len(pending.calls) for pending in self._pending.values())
        oldest_age_ms = 0
        if total:
            now = asyncio.get_running_loop().time()
            oldest = min(
                call.enqueued_at for pending in self._pending.values() for call in pending.calls
            )
            oldest_age_ms = int((now - oldest) * 1000)
        return DebounceStats(
            pending_batches=len(self._pending),
            total_pending_requests=total,
            oldest_request_age_ms=oldest_age_ms,
        )
