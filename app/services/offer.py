"""Offer engine: bids, counter-offers, acceptance and negotiation history.

Each mutation is one unit of work. The project row is locked first so offer
mutations on a project serialize against each other; offer updates are then
conditional on the offer still being pending, so the losing side of a race
gets OfferNotPending instead of overwriting the winner.
"""

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from fastapi import HTTPException
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.middleware import ActorRole, AuthenticatedActor
from app.config import settings
from app.errors import (
    InvalidTransition,
    NegotiationChainCorrupt,
    OfferNotPending,
    UnauthorizedActor,
)
from app.models.offer import ANOTHER_OFFER_ACCEPTED, Offer, OfferParty, OfferStatus
from app.models.project import NEGOTIABLE_STATUSES, Project, ProjectStatus
from app.schemas.offer import CounterOfferCreate, OfferCreate
from app.services.notifications import notify_parties
from app.services.project import lock_project, transition_project

logger = logging.getLogger(__name__)

# Project statuses in which a handyman may submit a fresh offer
SUBMITTABLE_STATUSES = frozenset({
    ProjectStatus.OPEN,
    ProjectStatus.HAS_OFFERS,
    ProjectStatus.IN_NEGOTIATION,
})


def _submission_target(current: ProjectStatus, offer_type: str) -> ProjectStatus:
    """Project status after a new offer lands on a project in ``current``."""
    if current is ProjectStatus.IN_NEGOTIATION:
        return current
    if offer_type == "accept":
        return ProjectStatus.PENDING_CUSTOMER_ACCEPTANCE
    return ProjectStatus.HAS_OFFERS


def _actor_party(offer: Offer, actor: AuthenticatedActor) -> OfferParty:
    if actor.actor_id == offer.customer_id:
        return OfferParty.CUSTOMER
    if actor.actor_id == offer.handyman_id:
        return OfferParty.HANDYMAN
    raise UnauthorizedActor("Not a party to this offer")


async def _get_offer(db: AsyncSession, offer_id: uuid.UUID) -> Offer:
    result = await db.execute(select(Offer).where(Offer.offer_id == offer_id))
    offer = result.scalar_one_or_none()
    if offer is None:
        raise HTTPException(status_code=404, detail="Offer not found")
    return offer


async def _mark_offer(
    db: AsyncSession,
    offer_id: uuid.UUID,
    status: OfferStatus,
    *conditions: Any,
    **values: object,
) -> None:
    """Conditionally move a pending offer to ``status``. Does not commit."""
    result = await db.execute(
        update(Offer)
        .where(Offer.offer_id == offer_id, Offer.status == OfferStatus.PENDING, *conditions)
        .values(status=status, updated_at=datetime.now(UTC), **values)
        .execution_options(synchronize_session="evaluate")
    )
    if result.rowcount != 1:
        current = await db.scalar(select(Offer.status).where(Offer.offer_id == offer_id))
        raise OfferNotPending(offer_id, current.value if current else "missing")


async def _pending_count(db: AsyncSession, project_id: uuid.UUID) -> int:
    return await db.scalar(
        select(func.count())
        .select_from(Offer)
        .where(Offer.project_id == project_id, Offer.status == OfferStatus.PENDING)
    ) or 0


async def _resettle_project(db: AsyncSession, project_id: uuid.UUID) -> None:
    """Return a negotiating project to open once no pending offers remain."""
    if await _pending_count(db, project_id) == 0:
        await transition_project(
            db, project_id, ProjectStatus.OPEN, NEGOTIABLE_STATUSES, strict=False
        )


async def _rollback_on_error(db: AsyncSession, offer_id: uuid.UUID) -> None:
    await db.rollback()
    logger.warning("Offer %s lost a concurrent update, rolled back", offer_id)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


async def submit_offer(
    db: AsyncSession,
    project_id: uuid.UUID,
    actor: AuthenticatedActor,
    data: OfferCreate,
) -> Offer:
    """Handyman bids on a project, or takes the posted budget as-is."""
    if actor.role is not ActorRole.HANDYMAN:
        raise UnauthorizedActor("Only handymen can submit offers")

    try:
        project = await lock_project(db, project_id)
        if project.customer_id == actor.actor_id:
            raise UnauthorizedActor("Cannot bid on your own project")

        current = project.status
        target = _submission_target(current, data.offer_type)
        if current not in SUBMITTABLE_STATUSES:
            raise InvalidTransition(current.value, target.value)

        if data.offer_type == "bid" and not project.is_negotiable and data.amount != project.initial_budget:
            raise HTTPException(
                status_code=422,
                detail="This project's budget is not negotiable; accept the posted budget instead",
            )

        existing = await db.scalar(
            select(Offer.offer_id).where(
                Offer.project_id == project_id,
                Offer.handyman_id == actor.actor_id,
                Offer.status == OfferStatus.PENDING,
            )
        )
        if existing is not None:
            raise HTTPException(
                status_code=409, detail="You already have a pending offer on this project"
            )

        now = datetime.now(UTC)
        offer = Offer(
            offer_id=uuid.uuid4(),
            project_id=project_id,
            handyman_id=actor.actor_id,
            customer_id=project.customer_id,
            proposed_by=OfferParty.HANDYMAN,
            amount=project.initial_budget if data.offer_type == "accept" else data.amount,
            estimated_duration=data.estimated_duration,
            materials_included=data.materials_included,
            proposed_date=data.proposed_date,
            proposed_time=data.proposed_time,
            message=data.message,
            negotiation_round=1,
            status=OfferStatus.PENDING,
        )
        db.add(offer)
        await db.flush()
        await transition_project(
            db, project_id, target, {current},
            last_offer_by=actor.actor_id, last_offer_at=now,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(offer)

    if data.offer_type == "accept":
        text = f'A handyman accepted your posted budget of RM{offer.amount} for "{project.title}".'
    else:
        text = f'New offer of RM{offer.amount} received for "{project.title}".'
    await notify_parties(
        db, offer.customer_id, offer.handyman_id, text,
        {
            "type": "offer_received",
            "offerId": str(offer.offer_id),
            "projectId": str(project_id),
            "amount": str(offer.amount),
        },
    )
    return offer


async def counter_offer(
    db: AsyncSession,
    offer_id: uuid.UUID,
    actor: AuthenticatedActor,
    data: CounterOfferCreate,
) -> tuple[Offer, Offer]:
    """Either party answers a pending offer with new terms. Returns (original, counter)."""
    original = await _get_offer(db, offer_id)
    party = _actor_party(original, actor)
    if original.status is not OfferStatus.PENDING:
        raise OfferNotPending(offer_id, original.status.value)
    if original.proposed_by is party:
        raise UnauthorizedActor("Cannot counter your own offer")

    next_round = original.negotiation_round + 1
    if next_round > settings.max_negotiation_rounds:
        raise HTTPException(
            status_code=409,
            detail=f"Maximum of {settings.max_negotiation_rounds} negotiation rounds reached",
        )

    now = datetime.now(UTC)
    counter = Offer(
        offer_id=uuid.uuid4(),
        project_id=original.project_id,
        handyman_id=original.handyman_id,
        customer_id=original.customer_id,
        proposed_by=party,
        amount=data.amount,
        estimated_duration=data.estimated_duration or original.estimated_duration,
        materials_included=(
            original.materials_included if data.materials_included is None
            else data.materials_included
        ),
        proposed_date=data.proposed_date or original.proposed_date,
        proposed_time=data.proposed_time or original.proposed_time,
        message=data.message,
        is_counter_offer=True,
        parent_offer_id=original.offer_id,
        negotiation_round=next_round,
        status=OfferStatus.PENDING,
    )

    try:
        await lock_project(db, original.project_id)
        await _mark_offer(
            db, offer_id, OfferStatus.COUNTERED, Offer.counter_offer_id.is_(None),
            counter_offer_id=counter.offer_id, countered_at=now,
        )
        db.add(counter)
        await db.flush()
        await transition_project(
            db, original.project_id, ProjectStatus.IN_NEGOTIATION, NEGOTIABLE_STATUSES,
            last_offer_by=actor.actor_id, last_offer_at=now,
        )
        await db.commit()
    except IntegrityError:
        # unique parent_offer_id: someone else countered this offer first
        await _rollback_on_error(db, offer_id)
        raise OfferNotPending(offer_id, OfferStatus.COUNTERED.value)
    except Exception:
        await db.rollback()
        raise
    await db.refresh(original)
    await db.refresh(counter)

    who = "customer" if party is OfferParty.CUSTOMER else "handyman"
    await notify_parties(
        db, counter.customer_id, counter.handyman_id,
        f"The {who} sent a counter offer of RM{counter.amount} (round {counter.negotiation_round}).",
        {
            "type": "counter_offer",
            "offerId": str(counter.offer_id),
            "parentOfferId": str(original.offer_id),
            "projectId": str(counter.project_id),
            "amount": str(counter.amount),
        },
    )
    return original, counter


async def accept_offer(
    db: AsyncSession, offer_id: uuid.UUID, actor: AuthenticatedActor
) -> tuple[Offer, Project]:
    """Accept a pending offer.

    One commit: the offer becomes accepted, every other pending offer on the
    project is rejected, and the project moves to agreed_scheduled with the
    agreed terms stamped on it.
    """
    offer = await _get_offer(db, offer_id)
    party = _actor_party(offer, actor)
    if offer.proposed_by is party:
        raise UnauthorizedActor("Cannot accept your own offer")

    now = datetime.now(UTC)
    try:
        project = await lock_project(db, offer.project_id)
        await _mark_offer(db, offer_id, OfferStatus.ACCEPTED, accepted_at=now)

        siblings = await db.execute(
            select(Offer.offer_id, Offer.handyman_id)
            .where(
                Offer.project_id == offer.project_id,
                Offer.status == OfferStatus.PENDING,
                Offer.offer_id != offer_id,
            )
            .with_for_update()
        )
        rejected = list(siblings.all())
        if rejected:
            await db.execute(
                update(Offer)
                .where(
                    Offer.offer_id.in_([row.offer_id for row in rejected]),
                    Offer.status == OfferStatus.PENDING,
                )
                .values(
                    status=OfferStatus.REJECTED,
                    rejection_reason=ANOTHER_OFFER_ACCEPTED,
                    rejected_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session="evaluate")
            )

        await transition_project(
            db, offer.project_id, ProjectStatus.AGREED_SCHEDULED, NEGOTIABLE_STATUSES,
            handyman_id=offer.handyman_id,
            agreed_budget=offer.amount,
            agreed_duration=offer.estimated_duration,
            materials_included=offer.materials_included,
            accepted_offer_id=offer.offer_id,
            accepted_at=now,
        )
        await db.commit()
    except IntegrityError:
        # one-accepted-offer-per-project index
        await _rollback_on_error(db, offer_id)
        raise OfferNotPending(offer_id, OfferStatus.REJECTED.value)
    except Exception:
        await db.rollback()
        raise
    await db.refresh(offer)
    await db.refresh(project)

    logger.info(
        "Offer %s accepted on project %s (%d sibling offers rejected)",
        offer_id, offer.project_id, len(rejected),
    )
    title, customer_id, project_ref = project.title, offer.customer_id, str(project.project_id)
    await notify_parties(
        db, customer_id, offer.handyman_id,
        f'Offer of RM{offer.amount} accepted for "{title}". '
        "The handyman will request a deposit to get started.",
        {
            "type": "offer_accepted",
            "offerId": str(offer.offer_id),
            "projectId": project_ref,
            "amount": str(offer.amount),
        },
    )
    for row in rejected:
        await notify_parties(
            db, customer_id, row.handyman_id,
            f'Your offer for "{title}" was not selected: {ANOTHER_OFFER_ACCEPTED}.',
            {"type": "offer_rejected", "offerId": str(row.offer_id), "projectId": project_ref},
        )
    return offer, project


async def reject_offer(
    db: AsyncSession,
    offer_id: uuid.UUID,
    actor: AuthenticatedActor,
    reason: str | None = None,
) -> Offer:
    """The receiving party turns down a pending offer."""
    offer = await _get_offer(db, offer_id)
    party = _actor_party(offer, actor)
    if offer.proposed_by is party:
        raise UnauthorizedActor("Cannot reject your own offer; withdraw it instead")

    try:
        await lock_project(db, offer.project_id)
        await _mark_offer(
            db, offer_id, OfferStatus.REJECTED,
            rejection_reason=reason, rejected_at=datetime.now(UTC),
        )
        await _resettle_project(db, offer.project_id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(offer)

    text = f"Offer of RM{offer.amount} was declined."
    if reason:
        text += f" Reason: {reason}"
    await notify_parties(
        db, offer.customer_id, offer.handyman_id, text,
        {"type": "offer_rejected", "offerId": str(offer.offer_id), "projectId": str(offer.project_id)},
    )
    return offer


async def withdraw_offer(
    db: AsyncSession, offer_id: uuid.UUID, actor: AuthenticatedActor
) -> Offer:
    """The handyman takes back their own pending offer. Never cascades to siblings."""
    offer = await _get_offer(db, offer_id)
    if actor.actor_id != offer.handyman_id:
        raise UnauthorizedActor("Only the handyman who made this offer can withdraw it")
    if offer.status is not OfferStatus.PENDING:
        raise OfferNotPending(offer_id, offer.status.value)
    if offer.proposed_by is not OfferParty.HANDYMAN:
        raise UnauthorizedActor("Only the handyman who made this offer can withdraw it")

    try:
        await lock_project(db, offer.project_id)
        await _mark_offer(db, offer_id, OfferStatus.WITHDRAWN, withdrawn_at=datetime.now(UTC))
        await _resettle_project(db, offer.project_id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(offer)

    await notify_parties(
        db, offer.customer_id, offer.handyman_id,
        f"The handyman withdrew their offer of RM{offer.amount}.",
        {"type": "offer_withdrawn", "offerId": str(offer.offer_id), "projectId": str(offer.project_id)},
    )
    return offer


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_offer_for_actor(
    db: AsyncSession, offer_id: uuid.UUID, actor: AuthenticatedActor
) -> Offer:
    offer = await _get_offer(db, offer_id)
    if not actor.is_admin:
        _actor_party(offer, actor)
    return offer


async def _visible_offers(
    db: AsyncSession, project_id: uuid.UUID, actor: AuthenticatedActor
) -> list[Offer]:
    """Customers and admins see every offer; a handyman sees only their own."""
    result = await db.execute(select(Project.customer_id).where(Project.project_id == project_id))
    customer_id = result.scalar_one_or_none()
    if customer_id is None:
        raise HTTPException(status_code=404, detail="Project not found")

    query = select(Offer).where(Offer.project_id == project_id)
    if not actor.is_admin and actor.actor_id != customer_id:
        if actor.role is not ActorRole.HANDYMAN:
            raise UnauthorizedActor()
        query = query.where(Offer.handyman_id == actor.actor_id)
    result = await db.execute(
        query.order_by(Offer.created_at, Offer.negotiation_round)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def list_project_offers(
    db: AsyncSession, project_id: uuid.UUID, actor: AuthenticatedActor
) -> list[Offer]:
    return await _visible_offers(db, project_id, actor)


def build_chains(offers: list[Offer]) -> list[dict]:
    """Rebuild negotiation chains by walking counter links from every root offer."""
    by_id = {offer.offer_id: offer for offer in offers}
    chains = []
    for root in offers:
        if root.parent_offer_id is not None:
            continue
        chain = [root]
        seen = {root.offer_id}
        current = root
        while current.counter_offer_id is not None:
            child = by_id.get(current.counter_offer_id)
            if child is None:
                break
            if child.offer_id in seen:
                logger.error("Cycle in negotiation chain at offer %s", child.offer_id)
                raise NegotiationChainCorrupt(child.offer_id, "cycle detected")
            if child.negotiation_round <= current.negotiation_round:
                logger.error(
                    "Non-increasing negotiation round: offer %s (round %d) -> %s (round %d)",
                    current.offer_id, current.negotiation_round,
                    child.offer_id, child.negotiation_round,
                )
                raise NegotiationChainCorrupt(child.offer_id, "negotiation rounds out of order")
            chain.append(child)
            seen.add(child.offer_id)
            current = child

        last = chain[-1]
        chains.append({
            "id": root.offer_id,
            "handyman_id": root.handyman_id,
            "offers": chain,
            "status": last.status.value,
            "negotiation_rounds": len(chain),
            "final_amount": last.amount,
            "started_at": root.created_at,
            "last_activity": max(o.updated_at for o in chain),
        })
    return chains


async def get_negotiation_history(
    db: AsyncSession, project_id: uuid.UUID, actor: AuthenticatedActor
) -> dict:
    offers = await _visible_offers(db, project_id, actor)
    chains = build_chains(offers)
    return {
        "project_id": project_id,
        "total_offers": len(offers),
        "negotiation_chains": chains,
        "active_negotiations": sum(1 for c in chains if c["status"] == OfferStatus.PENDING.value),
        "accepted_offers": sum(1 for o in offers if o.status is OfferStatus.ACCEPTED),
    }


async def get_offer_stats(db: AsyncSession, actor: AuthenticatedActor) -> dict:
    """Offer counts for the actor's side of the market."""
    if actor.role is ActorRole.CUSTOMER:
        party_filter = Offer.customer_id == actor.actor_id
    else:
        party_filter = Offer.handyman_id == actor.actor_id

    result = await db.execute(
        select(Offer.status, func.count(), func.avg(Offer.amount))
        .where(party_filter)
        .group_by(Offer.status)
    )
    stats: dict[str, Any] = {s.value: 0 for s in OfferStatus}
    total = 0
    amount_sum = Decimal("0")
    for status, count, avg in result.all():
        stats[status.value] = count
        total += count
        if avg is not None:
            amount_sum += Decimal(str(avg)) * count

    active = await db.scalar(
        select(func.count(func.distinct(Offer.project_id)))
        .where(party_filter, Offer.status == OfferStatus.PENDING)
    )
    stats.update(
        total=total,
        average_amount=(amount_sum / total).quantize(Decimal("0.01")) if total else None,
        acceptance_rate=round(stats[OfferStatus.ACCEPTED.value] / total * 100, 1) if total else 0.0,
        active_negotiations=active or 0,
    )
    return stats
