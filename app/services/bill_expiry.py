"""Bill expiry queue using a Redis sorted set.

When a deposit bill is created we ZADD its bill code with score = expiry
unix timestamp. A single async consumer sleeps until the earliest bill is
due, re-checks it with the gateway and settles it: paid bills are confirmed,
everything else resolves to failed. A customer who abandons the gateway page
therefore never leaves a project stuck in payment_processing.
"""

import asyncio
import logging
import time
from datetime import UTC

import redis.asyncio as aioredis
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import GatewayUnavailable
from app.models.transaction import LedgerTransaction, TransactionStatus
from app.services.toyyibpay import BillState, ToyyibPayGateway

logger = logging.getLogger(__name__)

BILL_EXPIRY_KEY = "payments:bill_expiry"
# Gateway unreachable when a bill comes due: try again after this long
RETRY_DELAY_SECONDS = 300
EXPIRED_REASON = "bill expired"


async def enqueue_bill_expiry(
    redis: aioredis.Redis,
    bill_code: str,
    expires_at: float,
) -> None:
    """Schedule a bill for expiry enforcement."""
    await redis.zadd(BILL_EXPIRY_KEY, {bill_code: expires_at})
    logger.info("Enqueued expiry for bill %s at %s", bill_code, expires_at)


async def cancel_bill_expiry(redis: aioredis.Redis, bill_code: str) -> None:
    """Remove a bill from the expiry queue (e.g. once it is settled)."""
    await redis.zrem(BILL_EXPIRY_KEY, bill_code)


async def expire_bill(
    db: AsyncSession,
    gateway: ToyyibPayGateway,
    redis: aioredis.Redis,
    bill_code: str,
) -> bool:
    """Settle a due bill from the gateway's final answer.

    Returns False when the gateway could not be reached and the bill was
    rescheduled.
    """
    from app.services.payment import PaymentOutcome, confirm_by_bill_code

    try:
        status = await gateway.get_bill_status(bill_code)
    except GatewayUnavailable:
        retry_at = time.time() + RETRY_DELAY_SECONDS
        logger.warning("Gateway unavailable while expiring bill %s, retrying at %s", bill_code, retry_at)
        await enqueue_bill_expiry(redis, bill_code, retry_at)
        return False

    if status.state is BillState.SUCCESS:
        logger.info("Bill %s was paid before expiry", bill_code)
        await confirm_by_bill_code(
            db, bill_code, PaymentOutcome.SUCCESS, gateway_transaction_id=status.transaction_id
        )
    else:
        await confirm_by_bill_code(db, bill_code, PaymentOutcome.FAILED, reason=EXPIRED_REASON)
        logger.info("Expired bill %s (gateway state %s)", bill_code, status.state.value)
    return True


async def run_bill_expiry_consumer() -> None:
    """Process bills as their expiry times arrive.

    Sleeps until the next expiry is due rather than polling on a fixed
    interval.
    """
    from app.database import async_session_factory
    from app.redis import redis_client

    redis = redis_client()
    gateway = ToyyibPayGateway()

    while True:
        try:
            # Peek at the earliest expiry
            entries = await redis.zrangebyscore(
                BILL_EXPIRY_KEY, "-inf", "+inf", start=0, num=1, withscores=True
            )

            if not entries:
                await asyncio.sleep(10)
                continue

            bill_code_bytes, expires_ts = entries[0]
            now = time.time()

            if expires_ts > now:
                # Sleep until due (or 60s max to pick up new earlier bills)
                await asyncio.sleep(min(expires_ts - now, 60.0))
                continue

            removed = await redis.zrem(BILL_EXPIRY_KEY, bill_code_bytes)
            if not removed:
                # Another consumer got it
                continue

            bill_code = bill_code_bytes.decode() if isinstance(bill_code_bytes, bytes) else bill_code_bytes
            try:
                async with async_session_factory() as db:
                    await expire_bill(db, gateway, redis, bill_code)
            except Exception:
                logger.exception("Failed to expire bill %s", bill_code)

        except asyncio.CancelledError:
            logger.info("Bill expiry consumer shutting down")
            break
        except Exception:
            logger.exception("Bill expiry consumer error, retrying in 5s")
            await asyncio.sleep(5)

    await redis.aclose()


async def recover_pending_bills(db: AsyncSession, redis: aioredis.Redis) -> int:
    """Re-enqueue every bill whose ledger legs are still pending.

    ZADD is idempotent, so this is safe to run unconditionally at startup.
    """
    result = await db.execute(
        select(LedgerTransaction.toyyib_pay_bill_code, func.min(LedgerTransaction.created_at))
        .where(
            LedgerTransaction.status == TransactionStatus.PENDING,
            LedgerTransaction.toyyib_pay_bill_code.isnot(None),
        )
        .group_by(LedgerTransaction.toyyib_pay_bill_code)
    )
    rows = list(result.all())
    for bill_code, created_at in rows:
        if created_at.tzinfo is None:
            # SQLite drops the offset; stored values are UTC
            created_at = created_at.replace(tzinfo=UTC)
        await enqueue_bill_expiry(
            redis, bill_code, created_at.timestamp() + settings.bill_expiry_seconds
        )
    return len(rows)
