"""Tests for sync cycles, single-flight and the periodic checker."""

import asyncio

import pytest

from bridgesync.backoff import BackoffPolicy
from bridgesync.conflicts import ConflictResolver
from bridgesync.errors import UnauthorizedError
from bridgesync.models.sync import ConflictResolution, CycleStatus, Operation, PendingChange, Resolution
from bridgesync.orchestrator import SingleFlight, SyncOrchestrator, SyncState
from bridgesync.pull import PullEngine
from bridgesync.push import PushEngine
from fake_backend import DEVICE_ID, USER_ID


@pytest.fixture()
def make(api, records, store, events, flights, fake_sleep):
    def _make(**kwargs):
        kwargs.setdefault("sleep", fake_sleep)
        return SyncOrchestrator(
            PushEngine(api, store, events),
            PullEngine(api, store, records, events),
            ConflictResolver(api, store, events),
            store,
            events,
            user_id=USER_ID,
            device_id=DEVICE_ID,
            flights=flights,
            **kwargs,
        )
    return _make


async def _stage(store, key, entity_id=-1):
    await store.stage(USER_ID, DEVICE_ID, PendingChange(
        entity_type="task", entity_id=entity_id, operation=Operation.CREATE,
        values={"title": key}, idempotency_key=key,
    ))


def _stopping_sleep(sleeps, after):
    """Record delays; park forever once ``after`` sleeps have happened."""
    done = asyncio.Event()

    async def _sleep(delay):
        sleeps.append(delay)
        if len(sleeps) >= after:
            done.set()
            await asyncio.Event().wait()
        await asyncio.sleep(0)

    return _sleep, done


# --- single-flight ---


async def test_single_flight_shares_one_task():
    flights = SingleFlight()
    calls = []
    gate = asyncio.Event()

    async def work():
        calls.append(1)
        await gate.wait()
        return "done"

    first = asyncio.ensure_future(flights.run("k", work))
    second = asyncio.ensure_future(flights.run("k", work))
    await asyncio.sleep(0)
    assert flights.in_flight("k")
    gate.set()

    assert await asyncio.gather(first, second) == ["done", "done"]
    assert calls == [1]
    assert not flights.in_flight("k")


async def test_cancelled_waiter_does_not_cancel_shared_task():
    flights = SingleFlight()
    gate = asyncio.Event()

    async def work():
        await gate.wait()
        return 42

    waiter = asyncio.ensure_future(flights.run("k", work))
    other = asyncio.ensure_future(flights.run("k", work))
    await asyncio.sleep(0)
    waiter.cancel()
    gate.set()

    assert await other == 42
    with pytest.raises(asyncio.CancelledError):
        await waiter


async def test_concurrent_syncs_run_one_cycle(make, store, backend):
    await _stage(store, "k1")
    a, b = make(), make()

    first, second = await asyncio.gather(a.sync(), b.sync())

    assert first.cycle_id == second.cycle_id
    assert len(backend.push_bodies) == 1
    assert len(backend.pull_bodies) == 1
    assert backend.effects["k1"] == 1


# --- cycle outcomes ---


async def test_cycle_pushes_then_pulls(make, store, backend, events):
    await _stage(store, "k1")
    backend.data = {"task": [{"id": 1}]}
    orch = make(models=["task"], batch_size=25)

    report = await orch.sync()

    assert report.ok
    assert report.push.successful == ["k1"]
    assert report.pull.total_records == 1
    assert backend.pull_bodies == [{"device_id": DEVICE_ID, "models": ["task"], "batch_size": 25}]
    assert report.finished_at is not None
    assert not report.acknowledged
    assert orch.state is SyncState.IDLE
    types = [e.type for e in events.history]
    assert types[0] == "sync.started"
    assert types[-1] == "sync.completed"


async def test_transient_failure_returns_failed_report(make, backend, events, sleeps):
    backend.fail_next["pull"] = [503, 503, 503]
    orch = make()

    report = await orch.sync()

    assert report.status is CycleStatus.FAILED
    assert report.error_kind == "transient"
    assert report.error_detail.status == 503
    assert report.error_detail.type == "ServerError"
    assert sleeps == [3.0, 6.0]
    assert orch.state is SyncState.IDLE
    assert events.history[-1].type == "sync.failed"


async def test_authorization_failure_propagates(make, store, backend, events):
    await _stage(store, "k1")
    backend.fail_next["push"] = [401]
    orch = make()

    with pytest.raises(UnauthorizedError):
        await orch.sync()

    failed = [e for e in events.history if e.type == "sync.failed"]
    assert failed[0].data["error_kind"] == "authorization"
    assert orch.state is SyncState.IDLE
    assert [c.idempotency_key for c in await store.pending(USER_ID, DEVICE_ID)] == ["k1"]


async def test_cancel_stops_after_current_step(make, store, backend, events):
    await _stage(store, "k1")
    orch = make()

    @events.on("sync.push.completed")
    async def _cancel(event):
        orch.cancel()

    report = await orch.sync()

    assert report.status is CycleStatus.CANCELLED
    assert backend.effects["k1"] == 1
    assert backend.pull_bodies == []
    assert "sync.completed" not in [e.type for e in events.history]


async def test_cancel_when_idle_is_ignored(make, backend):
    orch = make()
    orch.cancel()
    report = await orch.sync()
    assert report.ok
    assert len(backend.pull_bodies) == 1


async def test_cancel_reaches_cycle_started_by_another_orchestrator(make, store, backend, events):
    await _stage(store, "k1")
    first, second = make(), make()

    @events.on("sync.push.completed")
    async def _cancel(event):
        second.cancel()

    report = await first.sync()

    assert report.status is CycleStatus.CANCELLED
    assert backend.pull_bodies == []


async def test_cancel_request_does_not_outlive_its_cycle(make, store, backend, events):
    await _stage(store, "k1")
    orch = make()
    cancelled = []

    @events.on("sync.push.completed")
    async def _cancel_once(event):
        if not cancelled:
            cancelled.append(True)
            orch.cancel()

    assert (await orch.sync()).status is CycleStatus.CANCELLED
    report = await orch.sync()
    assert report.ok
    assert len(backend.pull_bodies) == 1


async def test_smart_cycle_drains_backlog_in_pages(make, store, backend):
    backend.events = [{"id": i, "model": "task", "res_id": i} for i in range(1, 6)]
    applied = []
    progress = []

    async def apply(payload):
        applied.append([e.id for e in payload.events])

    async def on_progress(total, pages):
        progress.append(total)

    report = await make(mode="smart", apply=apply, smart_pull_limit=2, on_progress=on_progress).sync()

    assert applied == [[1, 2], [3, 4], [5]]
    assert progress == [2, 4, 5]
    assert report.acknowledged
    assert [e.id for e in report.smart_pull.events] == [1, 2, 3, 4, 5]
    assert backend.acked == [1, 2, 3, 4, 5]
    assert (await store.get_cursor(USER_ID, DEVICE_ID)).last_event_id == 5


async def test_cancel_stops_drain_between_pages(make, store, backend):
    backend.events = [{"id": i, "model": "task", "res_id": i} for i in range(1, 6)]
    orch = None

    async def apply(payload):
        orch.cancel()

    orch = make(mode="smart", apply=apply, smart_pull_limit=2)
    report = await orch.sync()

    assert report.status is CycleStatus.CANCELLED
    assert backend.acked == [1, 2]
    assert report.smart_pull.has_more


async def test_apply_callback_triggers_acknowledgement(make, store, backend):
    backend.events = [{"id": 1, "model": "task", "res_id": 5}, {"id": 2, "model": "task", "res_id": 6}]
    applied = []

    async def apply(payload):
        applied.append([e.id for e in payload.events])

    report = await make(mode="smart", apply=apply).sync()

    assert applied == [[1, 2]]
    assert report.acknowledged
    assert backend.acked == [1, 2]
    assert (await store.get_cursor(USER_ID, DEVICE_ID)).last_event_id == 2


async def test_failing_apply_leaves_cursor(make, store, backend):
    backend.events = [{"id": 1, "model": "task", "res_id": 5}]

    async def apply(payload):
        raise RuntimeError("disk full")

    with pytest.raises(RuntimeError):
        await make(mode="smart", apply=apply).sync()

    assert backend.acked == []
    assert (await store.get_cursor(USER_ID, DEVICE_ID)).last_event_id is None


async def test_decide_callback_resolves_conflicts(make, store, backend):
    backend.conflict_on["k2"] = {"remote": {"title": "server"}}
    await _stage(store, "k2", entity_id=3)
    seen = []

    async def decide(conflicts):
        seen.extend(c.conflict_id for c in conflicts)
        return [ConflictResolution(conflict_id=c.conflict_id, resolution=Resolution.KEEP_REMOTE) for c in conflicts]

    report = await make(decide=decide).sync()

    assert seen == ["c-k2"]
    assert report.resolution.resolved == ["c-k2"]
    assert report.conflicts == []
    assert await store.pending(USER_ID, DEVICE_ID) == []


async def test_conflicts_reported_without_decide(make, store, backend):
    backend.conflict_on["k2"] = {"remote": {"title": "server"}}
    await _stage(store, "k2", entity_id=3)

    report = await make().sync()

    assert report.ok
    assert report.has_conflicts
    assert report.resolution is None


# --- periodic checker ---


async def test_check_once_skips_when_idle(make, backend):
    assert await make().check_once() is None
    assert backend.pull_bodies == []


async def test_check_once_syncs_pending_outbox(make, store, backend):
    await _stage(store, "k1")
    report = await make().check_once()
    assert report.ok
    assert backend.effects["k1"] == 1


async def test_periodic_backoff_then_interval(make, backend):
    backend.fail_next["check"] = [401, 401, 401, 401]
    sleeps = []
    sleep, done = _stopping_sleep(sleeps, after=4)
    orch = make(backoff=BackoffPolicy(base_delay=1.0, max_attempts=2), sleep=sleep)

    orch.start_periodic(60.0)
    await asyncio.wait_for(done.wait(), timeout=5)
    await orch.stop_periodic()

    assert sleeps == [1.0, 2.0, 60.0, 1.0]


async def test_periodic_success_resets_backoff(make, backend):
    backend.fail_next["check"] = [401]
    sleeps = []
    sleep, done = _stopping_sleep(sleeps, after=3)
    orch = make(backoff=BackoffPolicy(base_delay=1.0, max_attempts=5), sleep=sleep)

    task = orch.start_periodic(30.0)
    assert orch.start_periodic(30.0) is task
    await asyncio.wait_for(done.wait(), timeout=5)
    await orch.stop_periodic()

    assert sleeps == [1.0, 30.0, 30.0]
    assert orch.backoff.attempt == 0
    assert task.cancelled()
