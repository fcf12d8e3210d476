"""Tests for batch pulls, event pulls, acknowledgement and hydration."""

import pytest

from bridgesync.errors import FallbackExhaustedError
from bridgesync.models.sync import SmartPullResult
from bridgesync.presets import FieldPreset
from bridgesync.pull import PullEngine
from fake_backend import DEVICE_ID, USER_ID


@pytest.fixture()
def engine(api, store, records, events, cache):
    return PullEngine(api, store, records, events, app_type="field_app", cache=cache)


def _event(event_id, model="task", res_id=1, event="update"):
    return {"id": event_id, "model": model, "res_id": res_id, "event": event}


# --- batch ---


async def test_batch_pull_returns_grouped_records(engine, backend):
    backend.data = {"task": [{"id": 1, "title": "A"}], "project": [{"id": 9}]}

    result = await engine.pull(DEVICE_ID, models=["task"], batch_size=50)

    assert result.data == {"task": [{"id": 1, "title": "A"}]}
    assert result.total_records == 1
    assert backend.pull_bodies == [{"device_id": DEVICE_ID, "models": ["task"], "batch_size": 50}]


async def test_batch_pull_does_not_move_cursor_until_acknowledged(engine, store, backend):
    backend.data = {"task": [{"id": 1}]}
    result = await engine.pull(DEVICE_ID)
    assert (await store.get_cursor(USER_ID, DEVICE_ID)).last_sync_at is None

    cursor = await engine.acknowledge(USER_ID, DEVICE_ID, result)
    assert cursor.last_sync_at == result.synced_at


# --- events ---


async def test_check_updates_emits_when_pending(engine, events, backend):
    backend.events = [_event(1), _event(2)]

    info = await engine.check_updates(USER_ID, DEVICE_ID)

    assert info.has_updates
    assert info.pending_events == 2
    assert backend.check_params[0] == {"user_id": str(USER_ID), "device_id": DEVICE_ID, "app_type": "field_app"}
    [event] = [e for e in events.history if e.type == "updates.available"]
    assert event.data["pending_count"] == 2


async def test_check_updates_quiet_when_nothing_pending(engine, events):
    info = await engine.check_updates(USER_ID, DEVICE_ID)
    assert not info.has_updates
    assert events.history == []


async def test_smart_pull_at_cursor_reports_nothing(engine, store, backend):
    backend.events = [_event(40), _event(41), _event(42)]
    await store.advance_cursor(USER_ID, DEVICE_ID, last_event_id=42)

    result = await engine.smart_pull(USER_ID, DEVICE_ID)

    assert not result.has_updates
    assert result.new_events_count == 0
    assert result.events == []
    assert backend.smart_pull_bodies[0]["last_event_id"] == 42


async def test_smart_pull_discards_events_below_cursor(engine, store, backend):
    # A backend that ignores last_event_id and replays its whole log.
    backend.replay_all = True
    backend.events = [_event(5), _event(6), _event(7)]
    await store.advance_cursor(USER_ID, DEVICE_ID, last_event_id=5)

    result = await engine.smart_pull(USER_ID, DEVICE_ID)
    assert [e.id for e in result.events] == [6, 7]
    assert result.new_events_count == 2

    await store.advance_cursor(USER_ID, DEVICE_ID, last_event_id=7)
    result = await engine.smart_pull(USER_ID, DEVICE_ID)
    assert result.events == []
    assert not result.has_updates


async def test_acknowledge_posts_ids_and_advances_cursor(engine, store, backend):
    backend.events = [_event(10), _event(11, res_id=2)]
    result = await engine.smart_pull(USER_ID, DEVICE_ID, limit=10)
    assert result.new_events_count == 2
    assert (await store.get_cursor(USER_ID, DEVICE_ID)).last_event_id is None

    cursor = await engine.acknowledge(USER_ID, DEVICE_ID, result)

    assert backend.acked == [10, 11]
    assert cursor.last_event_id == 11
    again = await engine.smart_pull(USER_ID, DEVICE_ID)
    assert not again.has_updates


async def test_acknowledge_empty_result_only_touches(engine, store, backend):
    result = await engine.smart_pull(USER_ID, DEVICE_ID)
    cursor = await engine.acknowledge(USER_ID, DEVICE_ID, result)
    assert backend.acked == []
    assert cursor.last_event_id is None
    assert cursor.last_sync_at is not None


# --- paging ---


async def test_smart_pull_reports_has_more_when_limited(engine, backend):
    backend.events = [_event(1), _event(2), _event(3)]

    page = await engine.smart_pull(USER_ID, DEVICE_ID, limit=2)

    assert [e.id for e in page.events] == [1, 2]
    assert page.has_more


async def test_drain_pages_past_the_limit(engine, store, backend):
    backend.events = [_event(i, res_id=i) for i in range(1, 6)]
    applied = []
    progress = []

    async def apply(page):
        applied.append([e.id for e in page.events])

    async def on_progress(total, pages):
        progress.append((total, pages))

    result = await engine.drain(USER_ID, DEVICE_ID, apply, limit=2, on_progress=on_progress)

    assert applied == [[1, 2], [3, 4], [5]]
    assert progress == [(2, 1), (4, 2), (5, 3)]
    assert [b.get("last_event_id") for b in backend.smart_pull_bodies] == [None, 2, 4]
    assert backend.acked == [1, 2, 3, 4, 5]
    assert [e.id for e in result.events] == [1, 2, 3, 4, 5]
    assert result.new_events_count == 5
    assert not result.has_more
    assert (await store.get_cursor(USER_ID, DEVICE_ID)).last_event_id == 5


async def test_drain_stops_early_when_asked(engine, store, backend):
    backend.events = [_event(i) for i in range(1, 6)]

    async def apply(page):
        pass

    result = await engine.drain(USER_ID, DEVICE_ID, apply, limit=2, should_stop=lambda: True)

    assert backend.acked == [1, 2]
    assert result.has_more
    assert (await store.get_cursor(USER_ID, DEVICE_ID)).last_event_id == 2


async def test_drain_with_nothing_pending(engine, backend):
    async def apply(page):
        raise AssertionError("nothing to apply")

    result = await engine.drain(USER_ID, DEVICE_ID, apply, limit=2)

    assert result.events == []
    assert backend.acked == []


# --- hydration ---


async def test_hydrate_reads_touched_records_with_fallback(engine, backend, cache):
    backend.schemas["task"] = {"id", "name", "display_name"}
    backend.rows["task"] = [
        {"id": 1, "name": "One", "display_name": "One"},
        {"id": 2, "name": "Two", "display_name": "Two"},
        {"id": 3, "name": "Three", "display_name": "Three"},
    ]
    backend.events = [_event(1, res_id=1), _event(2, res_id=3), _event(3, res_id=2, event="delete")]
    result = await engine.smart_pull(USER_ID, DEVICE_ID)

    hydrated = await engine.hydrate(result, preset=FieldPreset.BASIC)

    assert [r["id"] for r in hydrated["task"]] == [1, 3]
    assert set(hydrated["task"][0]) == {"id", "name", "display_name"}
    assert cache.get("task") == frozenset({"create_date", "write_date"})


async def test_hydrate_all_preset_skips_field_list(engine, backend):
    backend.rows["task"] = [{"id": 1, "name": "One", "secret": "x"}]
    backend.events = [_event(1, res_id=1)]
    result = await engine.smart_pull(USER_ID, DEVICE_ID)

    hydrated = await engine.hydrate(result, preset=FieldPreset.ALL)

    assert hydrated["task"] == [{"id": 1, "name": "One", "secret": "x"}]
    assert "fields" not in backend.call_kw_bodies[-1]["kwargs"]


async def test_hydrate_exhausts_when_schema_unavailable(engine, backend):
    backend.fields_get_fails = True
    backend.events = [_event(1, model="widget", res_id=1)]
    result = await engine.smart_pull(USER_ID, DEVICE_ID)

    with pytest.raises(FallbackExhaustedError) as exc_info:
        await engine.hydrate(result, fields={"widget": ["ghost_field"]})
    assert exc_info.value.entity_type == "widget"


async def test_hydrate_without_records_api(api, store):
    engine = PullEngine(api, store)
    with pytest.raises(RuntimeError):
        await engine.hydrate(SmartPullResult())
