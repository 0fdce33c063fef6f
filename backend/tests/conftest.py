"""
Centralized Test Configuration.
"""

import asyncio
import json
import pytest
from datetime import datetime, timedelta
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import Pool, StaticPool

from backend.app.main import app
from backend.app.db.session import get_db, Base
from backend.app.core.jwt import create_access_token
from backend.app.core.security import get_password_hash
from backend.app.domain.pickups.approval import ApprovalGate
from backend.app.domain.pickups.broker import AssignmentBroker
from backend.app.domain.pickups.delivery import DeliveryService
from backend.app.domain.pickups.intake import PickupIntake
from backend.app.domain.pickups.transitions import Actor, ActorRole
from backend.app.models.enums import UserRole
from backend.app.models.pickup_enums import PickupPriority, WasteType
from backend.app.models.user import User
from backend.app.services.notification_fanout import fanout
from backend.app.services.routing import routing_service
import backend.app.core.redis_client as redis_client_module

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

_password_hash = None


@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)).lower():
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# Mock Redis for reliability in CI/CD
class MockPubSub:
    def __init__(self, redis):
        self.redis = redis
        self.channels = set()
        self.queue = asyncio.Queue()
        self.closed = False

    async def subscribe(self, *channels):
        self.channels.update(channels)
        self.redis.subscribers.append(self)

    async def unsubscribe(self, *channels):
        self.channels.difference_update(channels)

    async def get_message(self, ignore_subscribe_messages=False, timeout=0.0):
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def aclose(self):
        self.closed = True
        self.redis.subscribers.remove(self)


class MockRedis:
    def __init__(self):
        self.store = {}
        self.published = []
        self.subscribers = []
        self.fail_publish = False
        self._closed = False

    async def ping(self):
        return not self._closed

    async def publish(self, channel, message):
        if self.fail_publish:
            raise ConnectionError("Redis unavailable")
        self.published.append((channel, json.loads(message)))
        receivers = [sub for sub in self.subscribers if channel in sub.channels]
        for sub in receivers:
            sub.queue.put_nowait({"type": "message", "channel": channel, "data": message})
        return len(receivers)

    def pubsub(self):
        return MockPubSub(self)

    def events_for(self, user_id):
        """Published envelopes addressed to one user, in order."""
        return [envelope for _, envelope in self.published if envelope["recipient_id"] == user_id]

    async def aclose(self):
        self._closed = True
        self.store = {}


@pytest.fixture
def mock_redis():
    original_client = redis_client_module.redis_client
    client = MockRedis()
    redis_client_module.redis_client = client
    yield client
    redis_client_module.redis_client = original_client


@pytest.fixture
async def engine():
    """Fresh in-memory database per test."""
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture(autouse=True)
async def apply_overrides(session_factory, mock_redis, monkeypatch):
    """Point the app at the test database and keep the routing provider offline."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(routing_service, "enabled", False)

    yield

    await fanout.drain()
    app.dependency_overrides = {}


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Shared session for fixture data creation
@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(session_factory):
    """Factory: insert a user and return it."""
    counter = {"n": 0}

    async def _make(role=UserRole.REQUESTER, username=None, full_name=None, is_active=True) -> User:
        global _password_hash
        if _password_hash is None:
            _password_hash = get_password_hash("password123")

        counter["n"] += 1
        username = username or f"{role.value.lower()}{counter['n']}"
        user = User(
            email=f"{username}@test.com",
            username=username,
            full_name=full_name or username.title(),
            hashed_password=_password_hash,
            role=role,
            is_active=is_active,
        )
        async with session_factory() as session:
            session.add(user)
            await session.commit()
            await session.refresh(user)
        return user

    return _make


def token_for(user: User) -> str:
    return create_access_token({"sub": user.username, "user_id": user.id, "role": user.role.value})


def auth(user: User) -> dict:
    return {"Authorization": f"Bearer {token_for(user)}"}


@pytest.fixture
def headers():
    """Bearer headers for a user."""
    return auth


def actor(user: User) -> Actor:
    return Actor(user_id=user.id, role=ActorRole(user.role.value))


@pytest.fixture
def as_actor():
    return actor


@pytest.fixture
async def requester(make_user):
    return await make_user(UserRole.REQUESTER, username="riya", full_name="Riya Sharma")


@pytest.fixture
async def admin(make_user):
    return await make_user(UserRole.ADMIN, username="admin")


@pytest.fixture
def online_agent(db_session, make_user):
    """Factory: an agent who is already online."""
    async def _online(location=None, **user_fields):
        agent = await make_user(UserRole.AGENT, **user_fields)
        await AssignmentBroker.set_availability(db_session, agent.id, True, location)
        return agent
    return _online


@pytest.fixture
def new_pickup(db_session, requester):
    """Factory: create a pickup through intake (pending_review)."""
    async def _new(**overrides):
        data = dict(
            requester_id=requester.id,
            waste_type=WasteType.MIXED,
            images=["https://img.example/1.jpg"],
            priority=PickupPriority.IMMEDIATE,
            food_boxes=2,
            bottles=3,
            estimated_weight_kg=3.0,
            pickup_address="12 Marine Drive, Mumbai",
        )
        data.update(overrides)
        return await PickupIntake.create_pickup(db_session, **data)
    return _new


@pytest.fixture
def awaiting_pickup(db_session, new_pickup, admin):
    """Factory: create and approve a pickup so it is awaiting an agent."""
    async def _awaiting(**overrides):
        pickup = await new_pickup(**overrides)
        return await ApprovalGate.approve(db_session, pickup.id, actor(admin))
    return _awaiting


@pytest.fixture
def tomorrow():
    return datetime.utcnow().date() + timedelta(days=1)


@pytest.fixture
def completed_pickup(db_session, awaiting_pickup, online_agent):
    """Factory: run a pickup all the way to completed; returns (pickup, agent)."""
    async def _completed(agent=None, **overrides):
        if agent is None:
            agent = await online_agent()
        else:
            await AssignmentBroker.set_availability(db_session, agent.id, True)
        pickup = await awaiting_pickup(**overrides)
        await AssignmentBroker.accept(db_session, pickup.id, actor(agent))
        await DeliveryService.advance(db_session, pickup.id, actor(agent))
        await DeliveryService.advance(db_session, pickup.id, actor(agent))
        pickup = await DeliveryService.complete(db_session, pickup.id, actor(agent))
        return pickup, agent
    return _completed
