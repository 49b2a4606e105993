"""Tests for the bill expiry queue: scheduling, expiring, retry and startup recovery."""

import asyncio
import time
import uuid
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.models.project import Project, ProjectStatus
from app.models.transaction import LedgerTransaction, TransactionStatus
from app.services.bill_expiry import (
    BILL_EXPIRY_KEY,
    EXPIRED_REASON,
    RETRY_DELAY_SECONDS,
    cancel_bill_expiry,
    enqueue_bill_expiry,
    expire_bill,
    recover_pending_bills,
    run_bill_expiry_consumer,
)
from app.services.toyyibpay import BillState
from tests.conftest import FakeGateway, start_deposit


async def _fresh_state(engine: AsyncEngine, project_id: str) -> tuple[ProjectStatus, list[LedgerTransaction]]:
    """Read the project and its legs through a new session (no identity map reuse)."""
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as db:
        pid = uuid.UUID(project_id)
        status = await db.scalar(select(Project.status).where(Project.project_id == pid))
        result = await db.execute(select(LedgerTransaction).where(LedgerTransaction.project_id == pid))
        return status, list(result.scalars().all())


# --- Pure queue operations ---

@pytest.mark.asyncio
async def test_enqueue_bill_expiry() -> None:
    redis = AsyncMock()
    await enqueue_bill_expiry(redis, "BILL1", 1700000000.0)
    redis.zadd.assert_awaited_once_with(BILL_EXPIRY_KEY, {"BILL1": 1700000000.0})


@pytest.mark.asyncio
async def test_cancel_bill_expiry() -> None:
    redis = AsyncMock()
    await cancel_bill_expiry(redis, "BILL1")
    redis.zrem.assert_awaited_once_with(BILL_EXPIRY_KEY, "BILL1")


# --- Expiring a due bill ---

@pytest.mark.asyncio
async def test_unpaid_bill_expires_as_failed(
    client: AsyncClient, db_session: AsyncSession, db_engine: AsyncEngine, gateway: FakeGateway
) -> None:
    project, _ = await start_deposit(client, uuid.uuid4(), uuid.uuid4())
    redis = AsyncMock()

    assert await expire_bill(db_session, gateway, redis, "BILL123") is True

    status, legs = await _fresh_state(db_engine, project["id"])
    assert status is ProjectStatus.AWAITING_PAYMENT
    assert {leg.status for leg in legs} == {TransactionStatus.FAILED}
    assert {leg.reason for leg in legs} == {EXPIRED_REASON}
    redis.zadd.assert_not_awaited()


@pytest.mark.asyncio
async def test_bill_paid_before_expiry_is_confirmed(
    client: AsyncClient, db_session: AsyncSession, db_engine: AsyncEngine, gateway: FakeGateway
) -> None:
    project, _ = await start_deposit(client, uuid.uuid4(), uuid.uuid4())
    gateway.settle("BILL123", BillState.SUCCESS, transaction_id="TP9")

    assert await expire_bill(db_session, gateway, AsyncMock(), "BILL123") is True

    status, legs = await _fresh_state(db_engine, project["id"])
    assert status is ProjectStatus.IN_PROGRESS
    assert {leg.status for leg in legs} == {TransactionStatus.COMPLETED}
    assert {leg.gateway_transaction_id for leg in legs} == {"TP9"}


@pytest.mark.asyncio
async def test_gateway_down_reschedules_bill(
    client: AsyncClient, db_session: AsyncSession, db_engine: AsyncEngine, gateway: FakeGateway
) -> None:
    project, _ = await start_deposit(client, uuid.uuid4(), uuid.uuid4())
    gateway.unavailable = True
    redis = AsyncMock()

    before = time.time()
    assert await expire_bill(db_session, gateway, redis, "BILL123") is False

    redis.zadd.assert_awaited_once()
    key, mapping = redis.zadd.await_args.args
    assert key == BILL_EXPIRY_KEY
    assert mapping["BILL123"] >= before + RETRY_DELAY_SECONDS

    status, legs = await _fresh_state(db_engine, project["id"])
    assert status is ProjectStatus.PAYMENT_PROCESSING
    assert {leg.status for leg in legs} == {TransactionStatus.PENDING}


@pytest.mark.asyncio
async def test_expiring_settled_bill_is_noop(
    client: AsyncClient, db_session: AsyncSession, db_engine: AsyncEngine, gateway: FakeGateway
) -> None:
    project, _ = await start_deposit(client, uuid.uuid4(), uuid.uuid4())
    gateway.settle("BILL123", BillState.SUCCESS)
    await client.post("/payments/toyyibpay/callback", data={"billcode": "BILL123", "status_id": "1"})

    # The gateway record is gone by the time the expiry fires
    gateway.settle("BILL123", BillState.PENDING)
    assert await expire_bill(db_session, gateway, AsyncMock(), "BILL123") is True

    status, legs = await _fresh_state(db_engine, project["id"])
    assert status is ProjectStatus.IN_PROGRESS
    assert {leg.status for leg in legs} == {TransactionStatus.COMPLETED}


# --- Background consumer ---

@pytest.mark.asyncio
async def test_consumer_expires_due_bill(
    client: AsyncClient, db_engine: AsyncEngine, gateway: FakeGateway
) -> None:
    project, _ = await start_deposit(client, uuid.uuid4(), uuid.uuid4())

    redis = AsyncMock()
    redis.zrangebyscore.side_effect = [[(b"BILL123", 0.0)], asyncio.CancelledError()]
    redis.zrem.return_value = 1
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    with (
        patch("app.redis.redis_client", return_value=redis),
        patch("app.database.async_session_factory", factory),
        patch("app.services.bill_expiry.ToyyibPayGateway", return_value=gateway),
    ):
        await run_bill_expiry_consumer()

    redis.zrem.assert_awaited_with(BILL_EXPIRY_KEY, b"BILL123")
    redis.aclose.assert_awaited_once()
    status, legs = await _fresh_state(db_engine, project["id"])
    assert status is ProjectStatus.AWAITING_PAYMENT
    assert {leg.status for leg in legs} == {TransactionStatus.FAILED}


@pytest.mark.asyncio
async def test_consumer_skips_bill_taken_by_another_worker(
    client: AsyncClient, db_engine: AsyncEngine, gateway: FakeGateway
) -> None:
    project, _ = await start_deposit(client, uuid.uuid4(), uuid.uuid4())

    redis = AsyncMock()
    redis.zrangebyscore.side_effect = [[(b"BILL123", 0.0)], asyncio.CancelledError()]
    redis.zrem.return_value = 0

    with (
        patch("app.redis.redis_client", return_value=redis),
        patch("app.services.bill_expiry.ToyyibPayGateway", return_value=gateway),
    ):
        await run_bill_expiry_consumer()

    assert gateway.status_calls == []
    status, _ = await _fresh_state(db_engine, project["id"])
    assert status is ProjectStatus.PAYMENT_PROCESSING


# --- Startup recovery ---

@pytest.mark.asyncio
async def test_recover_pending_bills(
    client: AsyncClient, db_session: AsyncSession, gateway: FakeGateway
) -> None:
    await start_deposit(client, uuid.uuid4(), uuid.uuid4())
    await start_deposit(client, uuid.uuid4(), uuid.uuid4())
    gateway.settle("BILL124", BillState.SUCCESS)
    await client.post("/payments/toyyibpay/callback", data={"billcode": "BILL124", "status_id": "1"})

    redis = AsyncMock()
    count = await recover_pending_bills(db_session, redis)

    assert count == 1
    redis.zadd.assert_awaited_once()
    key, mapping = redis.zadd.await_args.args
    assert key == BILL_EXPIRY_KEY
    assert list(mapping) == ["BILL123"]
    assert mapping["BILL123"] > time.time()


@pytest.mark.asyncio
async def test_startup_recovery_uses_background_session(
    client: AsyncClient, db_engine: AsyncEngine
) -> None:
    from app.main import _recover_bill_expiries

    await start_deposit(client, uuid.uuid4(), uuid.uuid4())
    redis = AsyncMock()
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    with (
        patch("app.redis.redis_client", return_value=redis),
        patch("app.database.async_session_factory", factory),
    ):
        await _recover_bill_expiries()

    redis.zadd.assert_awaited_once()
    redis.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_startup_recovery_survives_redis_outage(
    client: AsyncClient, db_engine: AsyncEngine
) -> None:
    from app.main import _recover_bill_expiries

    await start_deposit(client, uuid.uuid4(), uuid.uuid4())
    redis = AsyncMock()
    redis.zadd.side_effect = ConnectionError("redis down")
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    with (
        patch("app.redis.redis_client", return_value=redis),
        patch("app.database.async_session_factory", factory),
    ):
        await _recover_bill_expiries()

    redis.aclose.assert_awaited_once()
