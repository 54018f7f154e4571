"""
Centralized Test Configuration.
"""

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from carrypool.app.main import app
from carrypool.app.db.session import get_db, Base
from carrypool.app.core.config import settings
from carrypool.app.core.jwt import create_access_token
from carrypool.app.core.redis_client import get_redis
from carrypool.app.core.reliability import settlement_circuit_breaker
from carrypool.app.models.user import User
from carrypool.app.models.enums import UserRole
from carrypool.app.models.safety_enums import SafetyEvent
from carrypool.app.domain.safety.safety_gate import REQUIRED_ITEMS
from carrypool.app.services.payment_gateway import SandboxPaymentGateway, get_payment_gateway
import carrypool.app.core.redis_client as redis_client_module

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

CARD = "pm_card_visa"
DECLINED_CARD = "pm_decline_insufficient_funds"


def _enable_foreign_keys(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@pytest.fixture
async def engine():
    """Fresh in-memory database per test."""
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(test_engine.sync_engine, "connect", _enable_foreign_keys)

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    # Same session options as the application's AsyncSessionLocal
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def get(self, key):
        if self._closed:
            return None
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if self._closed:
            return False
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key):
        if self._closed:
            return 0
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def exists(self, key):
        if self._closed:
            return 0
        return 1 if key in self.store else 0

    async def flushdb(self):
        if not self._closed:
            self.store = {}

    async def aclose(self):
        self._closed = True
        self.store = {}


@pytest.fixture
def redis_client():
    return MockRedis()


@pytest.fixture
def gateway():
    """Per-test sandbox so authorizations never leak between tests."""
    return SandboxPaymentGateway()


@pytest.fixture(autouse=True)
def apply_overrides(session_factory, redis_client, gateway, monkeypatch):
    """Point the app at the test database, Redis and gateway."""
    monkeypatch.setattr(redis_client_module, "redis_client", redis_client)
    monkeypatch.setattr(settings, "gateway_retry_delay_seconds", 0)
    monkeypatch.setattr(settings, "payment_gateway_api_key", None)
    settlement_circuit_breaker.reset_state()

    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def override_get_redis():
        return redis_client

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield

    app.dependency_overrides = {}
    settlement_circuit_breaker.reset_state()


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


# Users

async def _create_user(session_factory, username: str, role: UserRole) -> dict:
    async with session_factory() as session:
        user = User(email=f"{username}@test.com", username=username, full_name=username.title(), role=role)
        session.add(user)
        await session.commit()
        user_id = user.id

    token = create_access_token({"sub": username, "user_id": user_id, "role": role.value})
    return {"id": user_id, "username": username, "headers": {"Authorization": f"Bearer {token}"}}


@pytest.fixture
async def sender(session_factory):
    return await _create_user(session_factory, "sender", UserRole.USER)


@pytest.fixture
async def traveler(session_factory):
    return await _create_user(session_factory, "traveler", UserRole.USER)


@pytest.fixture
async def stranger(session_factory):
    return await _create_user(session_factory, "stranger", UserRole.USER)


@pytest.fixture
async def admin(session_factory):
    return await _create_user(session_factory, "admin", UserRole.ADMIN)


# Marketplace helpers

def address(city: str) -> dict:
    return {"line1": "1 Main St", "city": city, "country": "US"}


class Marketplace:
    """Drives the HTTP API through the usual lifecycle steps."""

    CARD = CARD
    DECLINED_CARD = DECLINED_CARD

    def __init__(self, client: AsyncClient, sender: dict, traveler: dict):
        self.client = client
        self.sender = sender
        self.traveler = traveler

    async def post_package(self, **overrides) -> dict:
        payload = {
            "title": "Birthday gift",
            "weight_kg": "5",
            "length_cm": 40,
            "width_cm": 30,
            "height_cm": 20,
            "pickup_address": address("Boston"),
            "delivery_address": address("Chicago"),
            "offered_price": 4000,
        }
        payload.update(overrides)
        response = await self.client.post("/v1/packages", json=payload, headers=self.sender["headers"])
        assert response.status_code == 201, response.text
        return response.json()

    async def post_trip(self, traveler: dict = None, **overrides) -> dict:
        payload = {
            "title": "Boston to Chicago",
            "origin_address": address("Boston"),
            "destination_address": address("Chicago"),
            "departure_date": "2030-05-01",
            "max_weight_kg": "5",
        }
        payload.update(overrides)
        traveler = traveler or self.traveler
        response = await self.client.post("/v1/trips", json=payload, headers=traveler["headers"])
        assert response.status_code == 201, response.text
        return response.json()

    async def request_match(self, package_id: int, trip_id: int, user: dict = None, **extra) -> dict:
        response = await self.client.post(
            "/v1/assignments",
            json={"package_id": package_id, "trip_id": trip_id, **extra},
            headers=(user or self.sender)["headers"]
        )
        assert response.status_code == 201, response.text
        return response.json()

    async def confirm(self, assignment_id: int, user: dict, payment_method_id: str = None):
        body = {"payment_method_id": payment_method_id} if payment_method_id else None
        return await self.client.post(
            f"/v1/assignments/{assignment_id}/confirm-price", json=body, headers=user["headers"]
        )

    async def accept(self, assignment_id: int, user: dict):
        return await self.client.post(f"/v1/assignments/{assignment_id}/accept", headers=user["headers"])

    async def tick(self, assignment_id: int, event: SafetyEvent, items=None, user: dict = None):
        for item in items if items is not None else REQUIRED_ITEMS[event]:
            response = await self.client.post(
                f"/v1/assignments/{assignment_id}/safety-confirmations",
                json={"event": event.value, "item": item.value, "value": True},
                headers=(user or self.traveler)["headers"]
            )
            assert response.status_code == 200, response.text
        return response.json()

    async def matched(self, **package_overrides) -> dict:
        """Package and trip posted, both confirmed at the offered price."""
        package = await self.post_package(**package_overrides)
        trip = await self.post_trip()
        assignment = await self.request_match(package["id"], trip["id"])
        response = await self.confirm(assignment["id"], self.traveler)
        assert response.status_code == 200, response.text
        response = await self.confirm(assignment["id"], self.sender, CARD)
        assert response.status_code == 200, response.text
        return {"package": package, "trip": trip, "assignment": response.json()}

    async def confirmed(self) -> dict:
        state = await self.matched()
        assignment_id = state["assignment"]["id"]
        assert (await self.accept(assignment_id, self.sender)).status_code == 200
        response = await self.accept(assignment_id, self.traveler)
        assert response.status_code == 200, response.text
        state["assignment"] = response.json()
        return state

    async def in_transit(self) -> dict:
        state = await self.confirmed()
        assignment_id = state["assignment"]["id"]
        await self.tick(assignment_id, SafetyEvent.PICKUP)
        response = await self.client.post(
            f"/v1/assignments/{assignment_id}/pickup", headers=self.traveler["headers"]
        )
        assert response.status_code == 200, response.text
        state["assignment"] = response.json()
        return state

    async def get(self, assignment_id: int, user: dict = None) -> dict:
        response = await self.client.get(
            f"/v1/assignments/{assignment_id}", headers=(user or self.sender)["headers"]
        )
        assert response.status_code == 200, response.text
        return response.json()

    async def transactions(self, assignment_id: int) -> list:
        response = await self.client.get(
            f"/v1/assignments/{assignment_id}/transactions", headers=self.sender["headers"]
        )
        assert response.status_code == 200, response.text
        return response.json()

    async def trip(self, trip_id: int) -> dict:
        response = await self.client.get(f"/v1/trips/{trip_id}", headers=self.traveler["headers"])
        return response.json()

    async def package(self, package_id: int) -> dict:
        response = await self.client.get(f"/v1/packages/{package_id}", headers=self.sender["headers"])
        return response.json()


@pytest.fixture
def market(client, sender, traveler):
    return Marketplace(client, sender, traveler)
