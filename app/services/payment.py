"""Payment reconciliation between toyyibPay, the ledger and project status.

Every path that learns a payment outcome (the synchronous redirect handler,
the gateway callback, a manual status poll, the bill expiry consumer) ends
in ``_apply_outcome``, which settles both ledger legs together and moves the
project. Repeating an outcome is a no-op.
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

import redis.asyncio as aioredis
from fastapi import HTTPException
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.middleware import AuthenticatedActor
from app.config import settings
from app.errors import InvalidTransition, LedgerPairMismatch, UnauthorizedActor
from app.models.project import ProjectStatus
from app.models.transaction import (
    PAIRED_TYPES,
    LedgerTransaction,
    TransactionStatus,
    TransactionType,
)
from app.services.bill_expiry import cancel_bill_expiry, enqueue_bill_expiry
from app.services.ledger import check_pair, create_pair, get_legs_by_bill_code, get_legs_by_ids
from app.services.notifications import notify_parties
from app.services.project import get_project, transition_project
from app.services.toyyibpay import BillState, BillStatus, ToyyibPayGateway, parse_status_code

logger = logging.getLogger(__name__)


class PaymentOutcome(enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"


OUTCOME_STATUS = {
    PaymentOutcome.SUCCESS: TransactionStatus.COMPLETED,
    PaymentOutcome.FAILED: TransactionStatus.FAILED,
}

BILL_STATE_OUTCOME = {
    BillState.SUCCESS: PaymentOutcome.SUCCESS,
    BillState.FAILED: PaymentOutcome.FAILED,
}


@dataclass
class ConfirmResult:
    reference: str
    outcome: PaymentOutcome
    applied: bool
    transaction_status: TransactionStatus
    project_status: ProjectStatus | None = None


def service_fee_for(deposit: Decimal) -> Decimal:
    return (deposit * settings.service_fee_percent).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Initiation
# ---------------------------------------------------------------------------


async def initiate_deposit(
    db: AsyncSession,
    redis: aioredis.Redis,
    gateway: ToyyibPayGateway,
    project_id: uuid.UUID,
    actor: AuthenticatedActor,
) -> dict:
    """Create the gateway bill and the pending ledger pair for a project's deposit.

    The bill is created first: if the gateway is unavailable nothing has
    been written. The ledger pair and the awaiting_payment ->
    payment_processing transition then commit together.
    """
    project = await get_project(db, project_id)
    if actor.actor_id != project.customer_id:
        raise UnauthorizedActor("Only the customer can pay the deposit")
    if project.status is not ProjectStatus.AWAITING_PAYMENT:
        raise InvalidTransition(project.status.value, ProjectStatus.PAYMENT_PROCESSING.value)
    if project.deposit_amount is None or project.deposit_amount <= 0:
        raise HTTPException(status_code=409, detail="No deposit has been requested for this project")

    deposit = project.deposit_amount
    fee = service_fee_for(deposit)
    total = deposit + fee
    pair_id = uuid.uuid4()

    bill_code = await gateway.create_bill(
        amount=total,
        reference=str(pair_id),
        name=f"Deposit {project.title}",
        description=f"Deposit RM{deposit} + service fee RM{fee} for {project.title}",
    )

    now = datetime.now(UTC)
    try:
        customer_leg, handyman_leg = create_pair(
            db, project, TransactionType.DEPOSIT_PAID, deposit,
            pair_id=pair_id,
            bill_code=bill_code,
            description=f"Deposit for {project.title}",
        )
        for leg in (customer_leg, handyman_leg):
            leg.payment_method = "toyyibpay"
        await transition_project(
            db, project_id, ProjectStatus.PAYMENT_PROCESSING, {ProjectStatus.AWAITING_PAYMENT},
            service_fee=fee, payment_initiated_at=now,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        logger.warning("Deposit for project %s not recorded; bill %s left unused", project_id, bill_code)
        raise
    await db.refresh(project)

    expires_at = now.timestamp() + settings.bill_expiry_seconds
    try:
        await enqueue_bill_expiry(redis, bill_code, expires_at)
    except Exception:
        # picked up again by startup recovery
        logger.exception("Failed to schedule expiry for bill %s", bill_code)

    logger.info(
        "Deposit initiated for project %s: bill %s, RM%s + fee RM%s",
        project_id, bill_code, deposit, fee,
    )
    return {
        "project": project,
        "bill_code": bill_code,
        "payment_url": gateway.payment_url(bill_code),
        "customer_transaction_id": customer_leg.transaction_id,
        "handyman_transaction_id": handyman_leg.transaction_id,
        "deposit_amount": deposit,
        "service_fee": fee,
        "total_amount": total,
    }


# ---------------------------------------------------------------------------
# Confirmation
# ---------------------------------------------------------------------------


async def _apply_outcome(
    db: AsyncSession,
    legs: list[LedgerTransaction],
    reference: str,
    outcome: PaymentOutcome,
    gateway_transaction_id: str | None = None,
    reason: str | None = None,
) -> ConfirmResult:
    """Settle a locked ledger pair and move its project. Caller commits."""
    check_pair(legs, reference)
    current = legs[0].status
    target = OUTCOME_STATUS[outcome]

    if current is not TransactionStatus.PENDING:
        if current is target:
            logger.info("Duplicate %s confirmation for %s ignored", outcome.value, reference)
        else:
            logger.warning(
                "Ignoring %s confirmation for %s: legs already %s",
                outcome.value, reference, current.value,
            )
        return ConfirmResult(reference, outcome, applied=False, transaction_status=current)

    now = datetime.now(UTC)
    values: dict[str, object] = {"status": target, "updated_at": now}
    if target is TransactionStatus.COMPLETED:
        values["settled_at"] = now
    if gateway_transaction_id:
        values["gateway_transaction_id"] = gateway_transaction_id
    if reason:
        values["reason"] = reason

    result = await db.execute(
        update(LedgerTransaction)
        .where(
            LedgerTransaction.transaction_id.in_([leg.transaction_id for leg in legs]),
            LedgerTransaction.status == TransactionStatus.PENDING,
        )
        .values(**values)
        .execution_options(synchronize_session="evaluate")
    )
    if result.rowcount != 2:
        logger.error(
            "Ledger pair mismatch for %s: settled %d of 2 legs", reference, result.rowcount
        )
        raise LedgerPairMismatch(reference, result.rowcount, f"Settled {result.rowcount} of 2 legs for {reference}")

    project_id = legs[0].project_id
    project_status = None
    if {leg.type for leg in legs} == {TransactionType.DEPOSIT_PAID, PAIRED_TYPES[TransactionType.DEPOSIT_PAID]}:
        if outcome is PaymentOutcome.SUCCESS:
            moved = await transition_project(
                db, project_id, ProjectStatus.IN_PROGRESS, {ProjectStatus.PAYMENT_PROCESSING},
                strict=False, deposit_paid_at=now,
            )
        else:
            moved = await transition_project(
                db, project_id, ProjectStatus.AWAITING_PAYMENT, {ProjectStatus.PAYMENT_PROCESSING},
                strict=False,
            )
        if moved:
            project_status = (
                ProjectStatus.IN_PROGRESS if outcome is PaymentOutcome.SUCCESS
                else ProjectStatus.AWAITING_PAYMENT
            )
        else:
            logger.warning(
                "Stale %s for %s: project %s has moved on, status left unchanged",
                outcome.value, reference, project_id,
            )

    logger.info("Ledger pair %s settled as %s", reference, target.value)
    return ConfirmResult(
        reference, outcome, applied=True, transaction_status=target, project_status=project_status
    )


async def _notify_outcome(db: AsyncSession, legs: list[LedgerTransaction], outcome: PaymentOutcome) -> None:
    customer_leg = next(leg for leg in legs if leg.type in PAIRED_TYPES)
    if outcome is PaymentOutcome.SUCCESS:
        text = f"Deposit payment of RM{customer_leg.amount} received. The work can now begin."
        event = "payment_success"
    else:
        text = f"Deposit payment of RM{customer_leg.amount} did not go through. Please try again."
        event = "payment_failed"
    await notify_parties(
        db, customer_leg.user_id, customer_leg.other_party_id, text,
        {
            "type": event,
            "projectId": str(customer_leg.project_id),
            "amount": str(customer_leg.amount),
            "billCode": customer_leg.toyyib_pay_bill_code,
        },
    )


async def confirm_by_bill_code(
    db: AsyncSession,
    bill_code: str,
    outcome: PaymentOutcome,
    gateway_transaction_id: str | None = None,
    reason: str | None = None,
) -> ConfirmResult:
    """Settle the pair carrying ``bill_code``. Idempotent."""
    try:
        legs = await get_legs_by_bill_code(db, bill_code, lock=True)
        result = await _apply_outcome(
            db, legs, bill_code, outcome,
            gateway_transaction_id=gateway_transaction_id, reason=reason,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if result.applied:
        await _notify_outcome(db, legs, outcome)
    return result


async def confirm_by_transaction_ids(
    db: AsyncSession,
    gateway: ToyyibPayGateway,
    customer_transaction_id: uuid.UUID,
    handyman_transaction_id: uuid.UUID,
    outcome: PaymentOutcome,
    actor: AuthenticatedActor,
) -> ConfirmResult:
    """Settle a pair the caller still holds both ids for.

    Only admins may push an outcome directly. For anyone else the gateway's
    answer for the pair's bill decides: a pending bill is refused with 409,
    and a terminal state is applied even when it differs from the claim.
    """
    ids = [customer_transaction_id, handyman_transaction_id]
    reference = f"{customer_transaction_id}/{handyman_transaction_id}"

    legs = await get_legs_by_ids(db, ids)
    by_id = {leg.transaction_id: leg for leg in legs}
    if len(by_id) != 2:
        raise HTTPException(status_code=404, detail="Transactions not found")
    if not actor.is_admin and any(
        actor.actor_id not in (leg.user_id, leg.other_party_id) for leg in legs
    ):
        raise UnauthorizedActor("Not a party to this payment")
    if by_id[customer_transaction_id].type not in PAIRED_TYPES:
        raise HTTPException(status_code=422, detail="customerTransactionId is not a customer-side entry")
    check_pair(legs, reference)

    gateway_transaction_id = None
    bill_code = legs[0].toyyib_pay_bill_code
    if bill_code and not actor.is_admin:
        status = await gateway.get_bill_status(bill_code)
        verified = BILL_STATE_OUTCOME.get(status.state)
        if verified is None:
            raise HTTPException(
                status_code=409,
                detail=f"Payment gateway reports bill {bill_code} as {status.state.value}",
            )
        if verified is not outcome:
            logger.warning(
                "Confirmation for bill %s claimed %s, gateway reports %s",
                bill_code, outcome.value, status.state.value,
            )
        outcome = verified
        gateway_transaction_id = status.transaction_id

    try:
        legs = await get_legs_by_ids(db, ids, lock=True)
        result = await _apply_outcome(
            db, legs, reference, outcome, gateway_transaction_id=gateway_transaction_id
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if result.applied:
        await _notify_outcome(db, legs, outcome)
    return result


async def sync_bill_status(
    db: AsyncSession,
    gateway: ToyyibPayGateway,
    bill_code: str,
    redis: aioredis.Redis | None = None,
) -> tuple[BillStatus, ConfirmResult | None]:
    """Poll the gateway and settle the pair if the bill reached a final state."""
    status = await gateway.get_bill_status(bill_code)
    outcome = BILL_STATE_OUTCOME.get(status.state)
    if outcome is None:
        return status, None

    result = await confirm_by_bill_code(
        db, bill_code, outcome, gateway_transaction_id=status.transaction_id
    )
    if redis is not None:
        await _forget_expiry(redis, bill_code)
    return status, result


async def handle_callback(
    db: AsyncSession,
    gateway: ToyyibPayGateway,
    bill_code: str,
    status_code: str,
    gateway_transaction_id: str | None = None,
    redis: aioredis.Redis | None = None,
) -> ConfirmResult | None:
    """Gateway callback. The reported status is re-verified when configured to."""
    state = parse_status_code(status_code)
    if settings.toyyibpay_verify_callbacks:
        verified = await gateway.get_bill_status(bill_code)
        if verified.state is not state:
            logger.warning(
                "Callback for bill %s claimed %s, gateway reports %s",
                bill_code, state.value, verified.state.value,
            )
        state = verified.state
        gateway_transaction_id = verified.transaction_id or gateway_transaction_id

    outcome = BILL_STATE_OUTCOME.get(state)
    if outcome is None:
        logger.info("Callback for bill %s: still pending", bill_code)
        return None

    result = await confirm_by_bill_code(
        db, bill_code, outcome, gateway_transaction_id=gateway_transaction_id
    )
    if redis is not None:
        await _forget_expiry(redis, bill_code)
    return result


async def _forget_expiry(redis: aioredis.Redis, bill_code: str) -> None:
    try:
        await cancel_bill_expiry(redis, bill_code)
    except Exception:
        logger.exception("Failed to unschedule expiry for bill %s", bill_code)


async def assert_bill_party(db: AsyncSession, bill_code: str, actor: AuthenticatedActor) -> None:
    legs = await get_legs_by_bill_code(db, bill_code)
    if not legs:
        raise HTTPException(status_code=404, detail="Bill not found")
    if not actor.is_admin and actor.actor_id not in {leg.user_id for leg in legs}:
        raise UnauthorizedActor("Not a party to this payment")
