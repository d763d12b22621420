"""Tests for request debouncing and batching."""

import asyncio

import pytest

from offline_sync_storage.debouncer import DebounceConfig, Priority, RequestDebouncer
from offline_sync_storage.exceptions import DebounceCancelledError


@pytest.fixture
def debouncer():
    return RequestDebouncer(DebounceConfig(debounce_ms=20, max_batch_size=10, max_wait_ms=200))


class Recorder:
    """Async operation that records every call."""

    def __init__(self, result="ok"):
        self.calls = []
        self.result = result

    def operation(self, value):
        async def run():
            self.calls.append(value)
            return f"{self.result}:{value}"

        return run


class TestDebounce:
    async def test_burst_runs_once(self, debouncer):
        recorder = Recorder()

        results = await asyncio.gather(
            *(debouncer.debounce("k", recorder.operation(i)) for i in range(5))
        )

        assert recorder.calls == [4]
        assert results == ["ok:4"] * 5

    async def test_keys_are_independent(self, debouncer):
        recorder = Recorder()

        await asyncio.gather(
            debouncer.debounce("a", recorder.operation("a")),
            debouncer.debounce("b", recorder.operation("b")),
        )

        assert sorted(recorder.calls) == ["a", "b"]

    async def test_max_batch_size_executes_immediately(self):
        debouncer = RequestDebouncer(
            DebounceConfig(debounce_ms=10_000, max_batch_size=3, max_wait_ms=60_000)
        )
        recorder = Recorder()

        results = await asyncio.wait_for(
            asyncio.gather(*(debouncer.debounce("k", recorder.operation(i)) for i in range(3))),
            timeout=1,
        )

        assert recorder.calls == [2]
        assert len(results) == 3

    async def test_max_wait_bounds_rescheduling(self):
        debouncer = RequestDebouncer(
            DebounceConfig(debounce_ms=50, max_batch_size=100, max_wait_ms=120)
        )
        recorder = Recorder()
        first = asyncio.ensure_future(debouncer.debounce("k", recorder.operation(0)))

        # Keep re-arming the timer faster than the debounce window
        for i in range(1, 10):
            await asyncio.sleep(0.03)
            if first.done():
                break
            asyncio.ensure_future(debouncer.debounce("k", recorder.operation(i)))

        await asyncio.wait_for(first, timeout=1)
        assert len(recorder.calls) >= 1
        await debouncer.flush()

    async def test_exception_reaches_every_caller(self, debouncer):
        async def boom():
            raise RuntimeError("write failed")

        results = await asyncio.gather(
            debouncer.debounce("k", boom), debouncer.debounce("k", boom), return_exceptions=True
        )

        assert all(isinstance(r, RuntimeError) for r in results)
        assert results[0] is results[1]

    async def test_high_priority_runs_sooner(self):
        debouncer = RequestDebouncer(DebounceConfig(debounce_ms=500, max_wait_ms=5_000))
        recorder = Recorder()

        await asyncio.wait_for(
            debouncer.debounce("k", recorder.operation(1), priority=Priority.HIGH), timeout=0.3
        )
        assert recorder.calls == [1]

    async def test_low_priority_waits_longer(self):
        debouncer = RequestDebouncer(DebounceConfig(debounce_ms=50, max_wait_ms=5_000))
        recorder = Recorder()
        task = asyncio.ensure_future(
            debouncer.debounce("k", recorder.operation(1), priority="low")
        )

        await asyncio.sleep(0.07)
        assert recorder.calls == []
        await asyncio.wait_for(task, timeout=1)
        assert recorder.calls == [1]


class TestSpecialisedHelpers:
    async def test_debounced_update_deep_merges(self, debouncer):
        applied = []

        async def update(record_id, updates):
            applied.append((record_id, updates))
            return {"id": record_id, **updates}

        results = await asyncio.gather(
            debouncer.debounced_update("g1", {"score": {"home": 1}}, update),
            debouncer.debounced_update("g1", {"score": {"away": 2}}, update),
            debouncer.debounced_update("g1", {"period": 2}, update),
        )

        assert applied == [("g1", {"score": {"home": 1, "away": 2}, "period": 2})]
        assert results[0] == results[2]

    async def test_debounced_save_uses_latest_payload(self, debouncer):
        saved = []

        async def save(data):
            saved.append(data)
            return data

        results = await asyncio.gather(
            debouncer.debounced_save("settings", {"v": 1}, save),
            debouncer.debounced_save("settings", {"v": 2}, save),
        )

        assert saved == [{"v": 2}]
        assert results == [{"v": 2}, {"v": 2}]

    async def test_batch_save_slices_results(self, debouncer):
        batches = []

        async def save_all(items):
            batches.append(list(items))
            return [f"saved:{item}" for item in items]

        first, second = await asyncio.gather(
            debouncer.batch_save("players", ["a", "b"], save_all),
            debouncer.batch_save("players", ["c"], save_all),
        )

        assert batches == [["a", "b", "c"]]
        assert first == ["saved:a", "saved:b"]
        assert second == ["saved:c"]


class TestLifecycle:
    async def test_flush_executes_pending(self):
        debouncer = RequestDebouncer(DebounceConfig(debounce_ms=60_000, max_wait_ms=120_000))
        recorder = Recorder()
        task = asyncio.ensure_future(debouncer.debounce("k", recorder.operation(1)))
        await asyncio.sleep(0)

        await debouncer.flush()

        assert recorder.calls == [1]
        assert await task == "ok:1"

    async def test_clear_cancels_waiting_callers(self):
        debouncer = RequestDebouncer(DebounceConfig(debounce_ms=60_000, max_wait_ms=120_000))
        recorder = Recorder()
        task = asyncio.ensure_future(debouncer.debounce("k", recorder.operation(1)))
        await asyncio.sleep(0)

        debouncer.clear()

        with pytest.raises(DebounceCancelledError):
            await task
        assert recorder.calls == []
        assert debouncer.get_stats().pending_batches == 0

    async def test_stats(self):
        debouncer = RequestDebouncer(DebounceConfig(debounce_ms=60_000, max_wait_ms=120_000))
        recorder = Recorder()
        tasks = [
            asyncio.ensure_future(debouncer.debounce("a", recorder.operation(1))),
            asyncio.ensure_future(debouncer.debounce("a", recorder.operation(2))),
            asyncio.ensure_future(debouncer.debounce("b", recorder.operation(3))),
        ]
        await asyncio.sleep(0.01)

        stats = debouncer.get_stats()

        assert stats.pending_batches == 2
        assert stats.total_pending_requests == 3
        assert stats.oldest_request_age_ms >= 0
        await debouncer.flush()
        await asyncio.gather(*tasks)
