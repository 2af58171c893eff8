"""
Centralized Test Configuration.
"""

import os

os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("SCAN_LEASE_ENABLED", "false")

from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient, ASGITransport

from backend.app.main import app
from backend.app.core.exceptions import NotificationDeliveryFailed
from backend.app.core.jwt import create_access_token
from backend.app.db.session import get_db, Base, build_engine, build_session_factory
from backend.app.models.trusted_contact import TrustedContact
from backend.app.services.notification_dispatcher import NotificationDispatcher
from backend.app.services.notification_service import TripNotifier
from backend.app.services.trip_engine import TripLifecycleEngine, get_trip_engine
from backend.app.services.trip_store import TripStore
from backend.app.schemas.notification import ContactRef

# Event handler to enable foreign keys for SQLite
from sqlalchemy import event
from sqlalchemy.pool import Pool

T0 = datetime(2026, 3, 2, 8, 0, 0)
TRAVELER_ID = 1
OTHER_TRAVELER_ID = 2


@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints and WAL for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)).lower():
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()


class FakeClock:
    """Injectable clock; tests move time explicitly."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingDispatcher(NotificationDispatcher):
    """Keeps every message instead of delivering it."""

    def __init__(self):
        self.sent = []
        self.failing_recipients = set()

    async def send(self, contact: ContactRef, channel, message) -> bool:
        if contact.name in self.failing_recipients:
            raise NotificationDeliveryFailed("provider unavailable")
        self.sent.append((contact.name, channel, message.kind))
        return True

    def sent_of_kind(self, kind):
        return [entry for entry in self.sent if entry[2] == kind]


# Mock Redis for the scan lease
class MockRedis:
    def __init__(self):
        self.store = {}

    async def ping(self):
        return True

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key):
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def eval(self, script, numkeys, *keys_and_args):
        # Only the lease release script is used: compare-and-delete
        key, token = keys_and_args[0], keys_and_args[numkeys]
        if self.store.get(key) == token:
            return await self.delete(key)
        return 0


@pytest.fixture
async def session_factory(tmp_path):
    """File-backed SQLite so concurrent sessions use separate connections."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'guardian.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def store(session_factory):
    return TripStore(session_factory)


@pytest.fixture
def escalation():
    return ContactRef(name="Campus Security", phone="+2348000000000")


@pytest.fixture
def trip_engine(store, dispatcher, clock, escalation):
    notifier = TripNotifier(dispatcher, store, timeout_seconds=1.0, escalation=escalation)
    return TripLifecycleEngine(store, notifier, clock=clock, max_retries=2)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def contacts(db_session):
    """Two trusted contacts in traveler 1's address book."""
    mum = TrustedContact(owner_id=TRAVELER_ID, name="Mum", phone="+2348011111111", is_primary=True)
    roommate = TrustedContact(owner_id=TRAVELER_ID, name="Roommate", email="roommate@example.edu")
    db_session.add_all([mum, roommate])
    await db_session.commit()
    return [mum, roommate]


@pytest.fixture
async def client(session_factory, trip_engine):
    """Async client for testing."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_trip_engine] = lambda: trip_engine

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides = {}


@pytest.fixture
def auth_headers():
    """Build bearer headers for a traveler id."""

    def build(user_id: int = TRAVELER_ID) -> dict:
        token = create_access_token(data={"sub": f"traveler{user_id}", "user_id": user_id})
        return {"Authorization": f"Bearer {token}"}

    return build


@pytest.fixture
def mock_redis():
    return MockRedis()
