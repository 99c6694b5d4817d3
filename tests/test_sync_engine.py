import asyncio

import httpx

from services.connectivity import ConnectivityMonitor
from services.invalidation import InvalidationCoalescer
from services.offline_queue import PersistentQueue
from services.remote import RemoteWriteError
from services.sync_engine import SyncEngine, SyncResult


class FakeApi:
    """Records every remote write; ``failures`` maps a payload name to how many times it fails."""

    def __init__(self, failures=None, error=None):
        self.calls = []
        self.failures = dict(failures or {})
        self.error = error

    async def create_diary_entry(self, data):
        self._record("diary", data)

    async def submit_analysis(self, data):
        self._record("analysis", data)

    def _record(self, kind, data):
        self.calls.append((kind, data.get("name")))
        remaining = self.failures.get(data.get("name"), 0)
        if remaining:
            self.failures[data.get("name")] = remaining - 1
            if self.error is not None:
                raise self.error
            raise RemoteWriteError("server error", 500)


class GatedApi(FakeApi):
    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def create_diary_entry(self, data):
        self._record("diary", data)
        await self.gate.wait()


def build(store, scheduler, api, online=True):
    queue = PersistentQueue(store)
    monitor = ConnectivityMonitor(online)
    refreshed = []
    coalescer = InvalidationCoalescer(refreshed.append, scheduler=scheduler)
    engine = SyncEngine(queue, monitor, api, coalescer=coalescer)
    return queue, monitor, engine, refreshed


def test_offline_writes_replayed_in_fifo_order(store, scheduler):
    api = FakeApi()
    queue, monitor, engine, refreshed = build(store, scheduler, api, online=False)
    names = [f"meal-{n}" for n in range(5)]
    for name in names:
        queue.enqueue("diary", {"name": name})

    monitor.set_status(True)
    result = asyncio.run(engine.drain())

    assert result == SyncResult(succeeded=5, failed=0)
    assert [name for _, name in api.calls] == names
    assert queue.size() == 0
    assert store.get(queue.storage_key) == "[]"

    scheduler.advance(0.5)
    assert refreshed == ["/api/diary"]


def test_drain_is_noop_when_offline(store, scheduler):
    api = FakeApi()
    queue, _, engine, _ = build(store, scheduler, api, online=False)
    queue.enqueue("diary", {"name": "soup"})
    before = queue.snapshot()

    assert asyncio.run(engine.drain()) == SyncResult()
    assert api.calls == []
    assert queue.snapshot() == before


def test_drain_is_noop_when_queue_empty(store, scheduler):
    api = FakeApi()
    _, _, engine, _ = build(store, scheduler, api)
    assert asyncio.run(engine.drain()) == SyncResult()
    assert engine.last_result is None


def test_concurrent_drain_request_is_dropped(store, scheduler):
    api = GatedApi()
    queue, _, engine, _ = build(store, scheduler, api)
    queue.enqueue("diary", {"name": "first"})
    queue.enqueue("diary", {"name": "second"})

    async def scenario():
        running = asyncio.ensure_future(engine.drain())
        await asyncio.sleep(0)
        assert engine.is_draining
        overlapping = await engine.drain()
        assert len(api.calls) == 1
        api.gate.set()
        return overlapping, await running

    overlapping, result = asyncio.run(scenario())
    assert overlapping == SyncResult()
    assert result == SyncResult(succeeded=2, failed=0)
    assert [name for _, name in api.calls] == ["first", "second"]
    assert not engine.is_draining


def test_failure_does_not_block_later_entries(store, scheduler):
    api = FakeApi(failures={"bad": 1})
    queue, _, engine, _ = build(store, scheduler, api)
    queue.enqueue("diary", {"name": "good-1"})
    bad = queue.enqueue("diary", {"name": "bad"})
    queue.enqueue("analysis", {"name": "good-2"})

    result = asyncio.run(engine.drain())

    assert result == SyncResult(succeeded=2, failed=1)
    assert [entry.id for entry in queue.snapshot()] == [bad]
    assert queue.get(bad).retry_count == 1


def test_entry_dead_lettered_after_three_failed_drains(store, scheduler):
    api = FakeApi(failures={"doomed": 10})
    queue, _, engine, _ = build(store, scheduler, api)
    doomed = queue.enqueue("diary", {"name": "doomed"})

    for expected in (1, 2):
        assert asyncio.run(engine.drain()) == SyncResult(succeeded=0, failed=1)
        assert queue.get(doomed).retry_count == expected

    assert asyncio.run(engine.drain()) == SyncResult(succeeded=0, failed=1)
    assert queue.get(doomed) is None
    assert asyncio.run(engine.drain()) == SyncResult()
    assert len(api.calls) == 3


def test_entry_succeeding_on_third_drain(store, scheduler):
    api = FakeApi(failures={"flaky": 2})
    queue, _, engine, _ = build(store, scheduler, api)
    flaky = queue.enqueue("diary", {"name": "flaky"})

    asyncio.run(engine.drain())
    asyncio.run(engine.drain())
    assert queue.get(flaky).retry_count == 2

    assert asyncio.run(engine.drain()) == SyncResult(succeeded=1, failed=0)
    assert queue.size() == 0


def test_transport_errors_count_as_failures(store, scheduler):
    request = httpx.Request("POST", "https://api.test/api/diary")
    api = FakeApi(failures={"meal": 1}, error=httpx.ConnectError("down", request=request))
    queue, _, engine, _ = build(store, scheduler, api)
    op_id = queue.enqueue("diary", {"name": "meal"})

    assert asyncio.run(engine.drain()) == SyncResult(succeeded=0, failed=1)
    assert queue.get(op_id).retry_count == 1


def test_entries_added_mid_drain_wait_for_next_pass(store, scheduler):
    api = GatedApi()
    queue, _, engine, _ = build(store, scheduler, api)
    queue.enqueue("diary", {"name": "early"})

    async def scenario():
        running = asyncio.ensure_future(engine.drain())
        await asyncio.sleep(0)
        queue.enqueue("diary", {"name": "late"})
        api.gate.set()
        return await running

    assert asyncio.run(scenario()) == SyncResult(succeeded=1, failed=0)
    assert [entry.data["name"] for entry in queue.snapshot()] == ["late"]


def test_each_kind_reports_its_resource_family(store, scheduler):
    api = FakeApi()
    queue, _, engine, refreshed = build(store, scheduler, api)
    queue.enqueue("diary", {"name": "a"})
    queue.enqueue("analysis", {"name": "b"})
    queue.enqueue("diary", {"name": "c"})

    asyncio.run(engine.drain())
    scheduler.advance(0.5)
    assert sorted(refreshed) == ["/api/analyze", "/api/diary"]
    assert engine.last_result == SyncResult(succeeded=3, failed=0)
    assert engine.last_drain_at is not None


def test_unexpected_errors_count_as_failures(store, scheduler):
    api = FakeApi(failures={"broken": 1}, error=RuntimeError("handler bug"))
    queue, _, engine, _ = build(store, scheduler, api)
    broken = queue.enqueue("diary", {"name": "broken"})
    queue.enqueue("diary", {"name": "fine"})

    assert asyncio.run(engine.drain()) == SyncResult(succeeded=1, failed=1)
    assert [entry.id for entry in queue.snapshot()] == [broken]
    assert queue.get(broken).retry_count == 1
    assert not engine.is_draining


class ClosedScheduler:
    def time(self):
        return 0.0

    def call_later(self, delay, callback):
        raise RuntimeError("Event loop is closed")


def test_report_failure_keeps_drain_result(store):
    api = FakeApi()
    queue, _, engine, _ = build(store, ClosedScheduler(), api)
    queue.enqueue("diary", {"name": "a"})
    queue.enqueue("diary", {"name": "b"})

    assert asyncio.run(engine.drain()) == SyncResult(succeeded=2, failed=0)
    assert queue.size() == 0
    assert engine.last_result == SyncResult(succeeded=2, failed=0)
