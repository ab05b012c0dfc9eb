import os

import aiosqlite
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

# In-memory DB and no external services for tests
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["DATABASE_URL"] = ""
os.environ["SEED_DEMO_DATA"] = "false"
os.environ["GOOGLE_MAPS_API_KEY"] = ""
os.environ["NOTIFY_WEBHOOK_URL"] = ""

from lifeline.database import SQLITE_SCHEMA, SQLiteAdapter, close_db, init_db
from lifeline.dependencies import build_services
from lifeline.main import app
from lifeline.services.delivery import EventBusDeliverer
from lifeline.services.dispatch_engine import DispatchEngine
from lifeline.services.event_bus import TopicEventBus
from tests.fakes import (
    AMB_1,
    AMB_2,
    AMB_3,
    CENTRAL,
    CLOSED,
    NORTH,
    PATIENT_CONTACT,
    FixedEstimator,
    RecordingDeliverer,
)


def _reset_database_module(seed: bool) -> None:
    import lifeline.database as db_mod

    db_mod._db = None
    # Override module-level config directly (avoids fragile importlib.reload)
    db_mod.DATABASE_PATH = ":memory:"
    db_mod.DATABASE_URL = ""
    db_mod.SEED_DEMO_DATA = seed


@pytest_asyncio.fixture
async def db():
    """Provide a fresh in-memory database for each test."""
    import lifeline.database as db_mod

    if db_mod._db is not None:
        await db_mod._db.close()
    _reset_database_module(seed=False)

    await init_db()
    database = await db_mod.get_db()
    yield database
    await close_db()


@pytest.fixture
def recorder():
    return RecordingDeliverer()


@pytest.fixture
def bus():
    return TopicEventBus()


@pytest_asyncio.fixture
async def services(db, bus, recorder):
    """Dispatch core wired with a fixed 5 minute ETA and a recording deliverer."""
    built = build_services(
        db,
        route_estimator=FixedEstimator(300.0),
        deliverers=[EventBusDeliverer(bus), recorder],
        bus=bus,
    )
    await built.notifier.start()
    yield built
    await built.notifier.stop()


@pytest_asyncio.fixture
async def fleet(services):
    """Two active hospitals with ambulances, one inactive hospital, one patient contact."""
    store = services.store
    async with services.db.transaction():
        for hospital in (CENTRAL, NORTH, CLOSED):
            await store.insert_hospital(hospital)
        for ambulance in (AMB_1, AMB_2, AMB_3):
            await store.insert_ambulance(ambulance)
        await store.add_emergency_contact(PATIENT_CONTACT)
    return services


@pytest.fixture
def make_engine(services):
    """Build a DispatchEngine sharing the test services but with its own estimator or limits."""

    def _make(estimator=None, **kwargs) -> DispatchEngine:
        return DispatchEngine(
            services.db,
            services.store,
            kwargs.pop("geo_index", services.geo_index),
            estimator or FixedEstimator(),
            services.notifier,
            **kwargs,
        )

    return _make


@pytest_asyncio.fixture
async def async_client(services):
    """Provide an async httpx client for HTTP tests, bound to the test services."""
    app.state.services = services
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def live_client():
    """TestClient running the real lifespan against a seeded in-memory demo fleet."""
    _reset_database_module(seed=True)
    with TestClient(app) as client:
        yield client


@pytest_asyncio.fixture
async def open_file_db(tmp_path):
    """Open independent connections to one file-backed database, like separate worker processes."""
    path = str(tmp_path / "lifeline.db")
    opened: list[SQLiteAdapter] = []

    async def _open(timeout: float = 5.0) -> SQLiteAdapter:
        conn = await aiosqlite.connect(path, isolation_level=None, timeout=timeout)
        conn.row_factory = aiosqlite.Row
        adapter = SQLiteAdapter(conn)
        if not opened:
            await adapter.executescript(SQLITE_SCHEMA)
        opened.append(adapter)
        return adapter

    yield _open
    for adapter in opened:
        await adapter.close()
