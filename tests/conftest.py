"""Test configuration and fixtures.

Each test gets a fresh database: in-memory SQLite by default, or the
Postgres database named by TEST_DATABASE_URL. The test and the app share a
single AsyncSession so both sides see the same rows without juggling
connections. Redis is an AsyncMock and toyyibPay is a recording fake.
"""

import itertools
import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from app.config import settings
from app.database import Base, get_db
from app.errors import GatewayUnavailable
from app.main import app
from app.redis import get_redis
from app.services.toyyibpay import BillState, BillStatus, get_gateway
from app.utils.crypto import sign_actor_context


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeGateway:
    """Stands in for toyyibPay: hands out bill codes and reports scripted states."""

    def __init__(self) -> None:
        self.bills: dict[str, BillStatus] = {}
        self.created: list[dict] = []
        self.status_calls: list[str] = []
        self.unavailable = False
        self._codes = itertools.count(123)

    def payment_url(self, bill_code: str) -> str:
        return f"https://pay.example.test/{bill_code}"

    async def create_bill(
        self,
        amount: Decimal,
        reference: str,
        name: str,
        description: str,
        return_url: str | None = None,
        callback_url: str | None = None,
    ) -> str:
        if self.unavailable:
            raise GatewayUnavailable()
        bill_code = f"BILL{next(self._codes)}"
        self.created.append({
            "bill_code": bill_code,
            "amount": amount,
            "reference": reference,
            "name": name,
        })
        self.bills[bill_code] = BillStatus(bill_code=bill_code, state=BillState.PENDING)
        return bill_code

    async def get_bill_status(self, bill_code: str) -> BillStatus:
        self.status_calls.append(bill_code)
        if self.unavailable:
            raise GatewayUnavailable()
        return self.bills.get(bill_code, BillStatus(bill_code=bill_code, state=BillState.PENDING))

    def settle(self, bill_code: str, state: BillState, transaction_id: str | None = "TP0001") -> None:
        self.bills[bill_code] = BillStatus(
            bill_code=bill_code, state=state, transaction_id=transaction_id
        )


# ---------------------------------------------------------------------------
# Per-test fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(settings, "notification_backend", "log")
    object.__setattr__(settings, "review_service_url", "")
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


def _create_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        # one shared connection, otherwise every connection gets its own empty database
        return create_async_engine(
            url, connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
    return create_async_engine(url)


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = _create_engine(settings.test_database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    session = AsyncSession(bind=db_engine, expire_on_commit=False)
    yield session
    await session.close()


@pytest.fixture
def fake_redis() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    fake_redis: AsyncMock,
    gateway: FakeGateway,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden DB, Redis and gateway dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_get_redis() -> AsyncGenerator[AsyncMock, None]:
        yield fake_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_gateway] = lambda: gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def new_id() -> uuid.UUID:
    return uuid.uuid4()


def make_auth_headers(actor_id: uuid.UUID | str, role: str = "customer") -> dict[str, str]:
    """Signed actor context headers, as the identity provider would send them."""
    timestamp = datetime.now(UTC).isoformat()
    signature = sign_actor_context(settings.platform_signing_key, timestamp, str(actor_id), role)
    return {
        "X-Actor-Id": str(actor_id),
        "X-Actor-Role": role,
        "X-Timestamp": timestamp,
        "X-Signature": signature,
    }


def customer(actor_id: uuid.UUID) -> dict[str, str]:
    return make_auth_headers(actor_id, "customer")


def handyman(actor_id: uuid.UUID) -> dict[str, str]:
    return make_auth_headers(actor_id, "handyman")


def admin(actor_id: uuid.UUID | None = None) -> dict[str, str]:
    return make_auth_headers(actor_id or uuid.uuid4(), "admin")


def make_project_data(**overrides: object) -> dict:
    """Factory for a project creation payload."""
    data: dict = {
        "title": "Fix leaking kitchen tap",
        "description": "Mixer tap drips constantly",
        "category": "plumbing",
        "initialBudget": "100.00",
        "isNegotiable": True,
    }
    data.update(overrides)
    return data


async def create_project(client: AsyncClient, customer_id: uuid.UUID, **overrides: object) -> dict:
    resp = await client.post("/projects", json=make_project_data(**overrides), headers=customer(customer_id))
    assert resp.status_code == 201, resp.text
    return resp.json()


async def submit_offer(
    client: AsyncClient,
    project_id: str,
    handyman_id: uuid.UUID,
    amount: str = "100.00",
    **overrides: object,
) -> dict:
    body: dict = {"offerType": "bid", "amount": amount, "estimatedDuration": "2 hours"}
    body.update(overrides)
    resp = await client.post(f"/projects/{project_id}/offers", json=body, headers=handyman(handyman_id))
    assert resp.status_code == 201, resp.text
    return resp.json()


async def agree_project(
    client: AsyncClient,
    customer_id: uuid.UUID,
    handyman_id: uuid.UUID,
    amount: str = "80.00",
) -> dict:
    """Post a project, bid on it and accept the bid. Returns the agreed project."""
    project = await create_project(client, customer_id)
    offer = await submit_offer(client, project["id"], handyman_id, amount=amount)
    resp = await client.post(f"/offers/{offer['id']}/accept", headers=customer(customer_id))
    assert resp.status_code == 200, resp.text
    return resp.json()["project"]


async def start_deposit(
    client: AsyncClient,
    customer_id: uuid.UUID,
    handyman_id: uuid.UUID,
    deposit: str = "50.00",
) -> tuple[dict, dict]:
    """Agree a project, request a deposit and initiate payment.

    Returns (project, deposit response); the project is payment_processing.
    """
    project = await agree_project(client, customer_id, handyman_id)
    resp = await client.post(
        f"/projects/{project['id']}/deposit-request",
        json={"depositAmount": deposit},
        headers=handyman(handyman_id),
    )
    assert resp.status_code == 200, resp.text
    resp = await client.post(f"/projects/{project['id']}/payments/deposit", headers=customer(customer_id))
    assert resp.status_code == 201, resp.text
    return project, resp.json()


async def fund_project(
    client: AsyncClient,
    gateway: FakeGateway,
    customer_id: uuid.UUID,
    handyman_id: uuid.UUID,
    deposit: str = "50.00",
) -> tuple[dict, dict]:
    """Run a deposit through a successful gateway callback. Project ends in_progress."""
    project, payment = await start_deposit(client, customer_id, handyman_id, deposit)
    gateway.settle(payment["billCode"], BillState.SUCCESS)
    resp = await client.post(
        "/payments/toyyibpay/callback",
        data={"billcode": payment["billCode"], "status_id": "1", "transaction_id": "TP0001"},
    )
    assert resp.status_code == 200, resp.text
    return project, payment
