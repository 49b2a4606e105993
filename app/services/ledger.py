"""Paired double-entry ledger.

Every economic event between a customer and a handyman is written as two
legs sharing a ``pair_id``: the customer-side leg and its complementary
handyman-side leg. Legs are append-only; only their status moves, and it
moves for both legs at once.
"""

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.middleware import ActorRole, AuthenticatedActor
from app.errors import LedgerPairMismatch, UnauthorizedActor
from app.models.project import Project, ProjectStatus
from app.models.transaction import (
    PAIRED_TYPES,
    LedgerTransaction,
    TransactionStatus,
    TransactionType,
)
from app.services.notifications import notify_parties
from app.services.project import lock_project

logger = logging.getLogger(__name__)

# Statuses in which the deposit has been paid and may be partly refunded
REFUNDABLE_STATUSES = frozenset({
    ProjectStatus.IN_PROGRESS,
    ProjectStatus.REQUIRES_ADJUSTMENT,
    ProjectStatus.PENDING_COMPLETION,
    ProjectStatus.COMPLETED,
    ProjectStatus.DISPUTED,
})


def create_pair(
    db: AsyncSession,
    project: Project,
    customer_type: TransactionType,
    amount: Decimal,
    status: TransactionStatus = TransactionStatus.PENDING,
    pair_id: uuid.UUID | None = None,
    bill_code: str | None = None,
    description: str | None = None,
    reason: str | None = None,
) -> tuple[LedgerTransaction, LedgerTransaction]:
    """Add both legs of one economic event to the session. Caller commits.

    Returns (customer_leg, handyman_leg).
    """
    if customer_type not in PAIRED_TYPES:
        raise ValueError(f"{customer_type.value} is not the customer side of a pair")
    if amount <= 0:
        raise ValueError("Ledger amounts must be positive")
    if project.handyman_id is None:
        raise ValueError(f"Project {project.project_id} has no assigned handyman")

    pair_id = pair_id or uuid.uuid4()
    settled_at = datetime.now(UTC) if status is TransactionStatus.COMPLETED else None
    common = {
        "pair_id": pair_id,
        "project_id": project.project_id,
        "amount": amount,
        "status": status,
        "toyyib_pay_bill_code": bill_code,
        "description": description,
        "reason": reason,
        "settled_at": settled_at,
    }
    customer_leg = LedgerTransaction(
        transaction_id=uuid.uuid4(),
        user_id=project.customer_id,
        other_party_id=project.handyman_id,
        type=customer_type,
        **common,
    )
    handyman_leg = LedgerTransaction(
        transaction_id=uuid.uuid4(),
        user_id=project.handyman_id,
        other_party_id=project.customer_id,
        type=PAIRED_TYPES[customer_type],
        **common,
    )
    db.add_all([customer_leg, handyman_leg])
    return customer_leg, handyman_leg


def check_pair(legs: list[LedgerTransaction], reference: str) -> None:
    """Raise LedgerPairMismatch unless ``legs`` are exactly one complementary pair."""
    if len(legs) != 2:
        logger.error(
            "Ledger pair mismatch for %s: found %d legs %s",
            reference, len(legs), [str(leg.transaction_id) for leg in legs],
        )
        raise LedgerPairMismatch(reference, len(legs))

    first, second = legs
    types = {first.type, second.type}
    complementary = any({a, b} == types for a, b in PAIRED_TYPES.items())
    if first.pair_id != second.pair_id or not complementary:
        logger.error(
            "Ledger pair mismatch for %s: legs %s/%s are not one pair",
            reference, first.transaction_id, second.transaction_id,
        )
        raise LedgerPairMismatch(reference, 2, f"Ledger entries for {reference} are not one pair")

    if first.status is not second.status:
        logger.error(
            "Ledger pair mismatch for %s: legs in different states (%s, %s)",
            reference, first.status.value, second.status.value,
        )
        raise LedgerPairMismatch(
            reference, 2,
            f"Ledger entries for {reference} are in different states "
            f"({first.status.value}, {second.status.value})",
        )


async def get_legs_by_bill_code(
    db: AsyncSession, bill_code: str, lock: bool = False
) -> list[LedgerTransaction]:
    query = select(LedgerTransaction).where(LedgerTransaction.toyyib_pay_bill_code == bill_code)
    if lock:
        query = query.with_for_update()
    result = await db.execute(
        query.order_by(LedgerTransaction.type).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_legs_by_ids(
    db: AsyncSession, transaction_ids: list[uuid.UUID], lock: bool = False
) -> list[LedgerTransaction]:
    query = select(LedgerTransaction).where(LedgerTransaction.transaction_id.in_(transaction_ids))
    if lock:
        query = query.with_for_update()
    result = await db.execute(query.execution_options(populate_existing=True))
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def list_user_transactions(
    db: AsyncSession,
    actor: AuthenticatedActor,
    type: TransactionType | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[LedgerTransaction]:
    query = select(LedgerTransaction).where(LedgerTransaction.user_id == actor.actor_id)
    if type is not None:
        query = query.where(LedgerTransaction.type == type)
    query = query.order_by(LedgerTransaction.created_at.desc()).limit(limit).offset(offset)
    result = await db.execute(query)
    return list(result.scalars().all())


async def list_project_transactions(
    db: AsyncSession, project_id: uuid.UUID, actor: AuthenticatedActor
) -> list[LedgerTransaction]:
    """Both legs of every event on the project, for its parties and admins."""
    result = await db.execute(select(Project).where(Project.project_id == project_id))
    project = result.scalar_one_or_none()
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    if not actor.is_admin and actor.actor_id not in (project.customer_id, project.handyman_id):
        raise UnauthorizedActor()

    result = await db.execute(
        select(LedgerTransaction)
        .where(LedgerTransaction.project_id == project_id)
        .order_by(LedgerTransaction.created_at, LedgerTransaction.type)
    )
    return list(result.scalars().all())


async def _completed_total(
    db: AsyncSession, types: list[TransactionType], *conditions: object
) -> Decimal:
    total = await db.scalar(
        select(func.coalesce(func.sum(LedgerTransaction.amount), 0)).where(
            LedgerTransaction.type.in_(types),
            LedgerTransaction.status == TransactionStatus.COMPLETED,
            *conditions,
        )
    )
    return Decimal(str(total)).quantize(Decimal("0.01"))


async def get_transaction_stats(db: AsyncSession, actor: AuthenticatedActor) -> dict:
    """Handyman earnings or customer spending, from completed legs only."""
    mine = LedgerTransaction.user_id == actor.actor_id
    if actor.role is ActorRole.HANDYMAN:
        received = await _completed_total(db, [TransactionType.DEPOSIT_RECEIVED], mine)
        paid_out = await _completed_total(db, [TransactionType.PAYOUT], mine)
        deducted = await _completed_total(db, [TransactionType.REFUND_DEDUCTION], mine)
        stats = {
            "total_received": received,
            "total_paid_out": paid_out,
            "total_refunded": deducted,
            "net": received - paid_out - deducted,
        }
    else:
        paid = await _completed_total(db, [TransactionType.DEPOSIT_PAID], mine)
        refunded = await _completed_total(db, [TransactionType.REFUND], mine)
        stats = {
            "total_paid": paid,
            "total_refunded": refunded,
            "net": paid - refunded,
        }

    pending = await db.scalar(
        select(func.count()).select_from(LedgerTransaction).where(
            mine, LedgerTransaction.status == TransactionStatus.PENDING
        )
    )
    stats["pending_count"] = pending or 0
    return stats


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------


async def create_refund(
    db: AsyncSession,
    project_id: uuid.UUID,
    actor: AuthenticatedActor,
    amount: Decimal,
    reason: str,
) -> tuple[LedgerTransaction, LedgerTransaction]:
    """Assigned handyman refunds part or all of the paid deposit.

    Settled directly (no gateway round trip); the refunded total can never
    exceed the completed deposit.
    """
    try:
        project = await lock_project(db, project_id)
        if actor.actor_id != project.handyman_id:
            raise UnauthorizedActor("Only the assigned handyman can issue a refund")
        if project.status not in REFUNDABLE_STATUSES:
            raise HTTPException(
                status_code=409,
                detail=f"Cannot refund a project in status {project.status.value}",
            )

        on_project = LedgerTransaction.project_id == project_id
        paid = await _completed_total(db, [TransactionType.DEPOSIT_PAID], on_project)
        refunded = await _completed_total(db, [TransactionType.REFUND], on_project)
        if amount > paid - refunded:
            raise HTTPException(
                status_code=409,
                detail=f"Refund of RM{amount} exceeds the refundable balance of RM{paid - refunded}",
            )

        legs = create_pair(
            db, project, TransactionType.REFUND, amount,
            status=TransactionStatus.COMPLETED,
            description=f"Refund for {project.title}",
            reason=reason,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    for leg in legs:
        await db.refresh(leg)
    logger.info("Refund of RM%s recorded on project %s (pair %s)", amount, project_id, legs[0].pair_id)
    await notify_parties(
        db, project.customer_id, actor.actor_id,
        f'The handyman refunded RM{amount} for "{project.title}". Reason: {reason}',
        {"type": "refund_issued", "projectId": str(project_id), "amount": str(amount)},
    )
    return legs
