import asyncio

import pytest
from httpx import ASGITransport

from bridgesync.api import RecordsAPI, SyncAPI
from bridgesync.client import BridgeSyncClient
from bridgesync.db.engine import create_tables, dispose_engine, init_engine
from bridgesync.events import EventBus
from bridgesync.fallback import InvalidFieldCache
from bridgesync.http import HTTPClient
from bridgesync.orchestrator import SingleFlight
from bridgesync.store import SyncStateStore
from fake_backend import DEVICE_ID, USER_ID, FakeBackend


def _reset_config():
    """Reset the in-memory config singleton to defaults."""
    import bridgesync.config as _cfg
    _cfg._override_values.clear()
    _cfg._reload_all()


@pytest.fixture(autouse=True)
def _clear_state():
    _reset_config()
    yield
    _reset_config()


@pytest.fixture()
def backend():
    return FakeBackend()


@pytest.fixture()
async def db():
    init_engine("sqlite+aiosqlite://")
    await create_tables()
    yield
    await dispose_engine()


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def fake_sleep(sleeps):
    async def _sleep(delay):
        sleeps.append(delay)
        await asyncio.sleep(0)
    return _sleep


@pytest.fixture()
async def http(backend, fake_sleep):
    client = HTTPClient(
        "http://test", token="test-token", transport=ASGITransport(app=backend.app), sleep=fake_sleep
    )
    yield client
    await client.close()


@pytest.fixture()
def api(http):
    return SyncAPI(http)


@pytest.fixture()
def records(http):
    return RecordsAPI(http)


@pytest.fixture()
def store(db):
    return SyncStateStore()


@pytest.fixture()
def events():
    return EventBus()


@pytest.fixture()
def cache():
    return InvalidFieldCache()


@pytest.fixture()
def flights():
    return SingleFlight()


@pytest.fixture()
async def client(backend, db, cache, flights, fake_sleep):
    c = BridgeSyncClient(
        "http://test",
        "test-token",
        user_id=USER_ID,
        device_id=DEVICE_ID,
        transport=ASGITransport(app=backend.app),
        cache=cache,
        flights=flights,
        sleep=fake_sleep,
    )
    yield c
    await c.close()
