"""Project lifecycle state machine.

The project's ``status`` column is the single source of truth for which
actions are legal. Every transition is a conditional UPDATE that only
matches while the row is still in one of the expected pre-states; when it
matches nothing we re-read the row and raise InvalidTransition. Nothing
here caches status across requests.
"""

import logging
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from decimal import Decimal

from fastapi import HTTPException
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.middleware import ActorRole, AuthenticatedActor
from app.errors import InvalidTransition, UnauthorizedActor
from app.models.offer import Offer
from app.models.project import (
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    Project,
    ProjectStatus,
)
from app.schemas.project import ProjectCreate
from app.services.notifications import notify_parties

logger = logging.getLogger(__name__)


def _assert_transition(current: ProjectStatus, target: ProjectStatus) -> None:
    """Raise InvalidTransition if the state transition is not valid."""
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidTransition(current.value, target.value)


def _assert_party(
    project: Project, actor: AuthenticatedActor, allowed: str = "both"
) -> None:
    """Ensure actor is a party to the project. allowed: 'customer', 'handyman', 'both'."""
    is_customer = project.customer_id == actor.actor_id
    is_handyman = project.handyman_id is not None and project.handyman_id == actor.actor_id
    if allowed == "customer" and not is_customer:
        raise UnauthorizedActor("Only the customer can perform this action")
    if allowed == "handyman" and not is_handyman:
        raise UnauthorizedActor("Only the assigned handyman can perform this action")
    if allowed == "both" and not (is_customer or is_handyman):
        raise UnauthorizedActor()


async def _get_project(db: AsyncSession, project_id: uuid.UUID) -> Project:
    result = await db.execute(select(Project).where(Project.project_id == project_id))
    project = result.scalar_one_or_none()
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


async def current_status(db: AsyncSession, project_id: uuid.UUID) -> ProjectStatus:
    """Fresh read of a project's status, bypassing the identity map."""
    result = await db.execute(
        select(Project.status)
        .where(Project.project_id == project_id)
        .execution_options(populate_existing=True)
    )
    status = result.scalar_one_or_none()
    if status is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return status


async def lock_project(db: AsyncSession, project_id: uuid.UUID) -> Project:
    """Row-lock a project for the rest of the unit of work and refresh it."""
    result = await db.execute(
        select(Project)
        .where(Project.project_id == project_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    project = result.scalar_one_or_none()
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


async def transition_project(
    db: AsyncSession,
    project_id: uuid.UUID,
    target: ProjectStatus,
    allowed_from: Iterable[ProjectStatus],
    strict: bool = True,
    **values: object,
) -> bool:
    """Move a project to ``target`` only if it is still in ``allowed_from``.

    Part of the caller's unit of work: nothing is committed here. A target
    equal to a source status is a guarded no-op status change (the other
    ``values`` are still written). With ``strict=False`` a project that has
    already left ``allowed_from`` is left alone and False is returned.
    """
    sources = set(allowed_from)
    for source in sources:
        if source is not target:
            _assert_transition(source, target)

    result = await db.execute(
        update(Project)
        .where(Project.project_id == project_id, Project.status.in_(list(sources)))
        .values(status=target, updated_at=datetime.now(UTC), **values)
        .execution_options(synchronize_session="evaluate")
    )
    if result.rowcount == 1:
        return True

    status = await current_status(db, project_id)
    if not strict:
        logger.info(
            "Project %s left as %s (wanted %s)", project_id, status.value, target.value
        )
        return False
    logger.info(
        "Rejected transition of project %s: %s -> %s",
        project_id, status.value, target.value,
    )
    raise InvalidTransition(status.value, target.value)


async def _commit_transition(
    db: AsyncSession,
    project: Project,
    target: ProjectStatus,
    allowed_from: Iterable[ProjectStatus],
    **values: object,
) -> Project:
    try:
        await transition_project(db, project.project_id, target, allowed_from, **values)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(project)
    return project


# ---------------------------------------------------------------------------
# Creation and reads
# ---------------------------------------------------------------------------


async def create_project(
    db: AsyncSession, actor: AuthenticatedActor, data: ProjectCreate
) -> Project:
    """Customer posts a project, optionally addressed to one handyman (direct hire)."""
    if actor.role is not ActorRole.CUSTOMER:
        raise UnauthorizedActor("Only customers can post projects")
    if data.requested_handyman_id == actor.actor_id:
        raise HTTPException(status_code=422, detail="Cannot hire yourself")

    status = (
        ProjectStatus.PENDING_HANDYMAN_REVIEW
        if data.requested_handyman_id is not None
        else ProjectStatus.OPEN
    )
    project = Project(
        project_id=uuid.uuid4(),
        customer_id=actor.actor_id,
        requested_handyman_id=data.requested_handyman_id,
        title=data.title,
        description=data.description,
        category=data.category,
        initial_budget=data.initial_budget,
        is_negotiable=data.is_negotiable,
        status=status,
    )
    db.add(project)
    await db.commit()
    await db.refresh(project)

    if project.requested_handyman_id is not None:
        await notify_parties(
            db, project.customer_id, project.requested_handyman_id,
            f'You have a new project request: "{project.title}" with a budget of '
            f"RM{project.initial_budget}.",
            {"type": "project_requested", "projectId": str(project.project_id)},
        )
    return project


async def get_project(db: AsyncSession, project_id: uuid.UUID) -> Project:
    return await _get_project(db, project_id)


async def get_project_for_actor(
    db: AsyncSession, project_id: uuid.UUID, actor: AuthenticatedActor
) -> Project:
    """Load a project, enforcing read visibility for the actor."""
    project = await _get_project(db, project_id)
    if actor.is_admin or actor.actor_id in (
        project.customer_id, project.handyman_id, project.requested_handyman_id,
    ):
        return project
    if actor.role is ActorRole.HANDYMAN:
        if project.status is ProjectStatus.OPEN:
            return project
        bid = await db.execute(
            select(Offer.offer_id)
            .where(Offer.project_id == project_id, Offer.handyman_id == actor.actor_id)
            .limit(1)
        )
        if bid.scalar_one_or_none() is not None:
            return project
    raise UnauthorizedActor()


async def list_projects(
    db: AsyncSession,
    actor: AuthenticatedActor,
    status: ProjectStatus | None = None,
    browse_open: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> list[Project]:
    """The actor's own projects, or open projects for handymen browsing for work."""
    query = select(Project)
    if browse_open:
        if actor.role is not ActorRole.HANDYMAN:
            raise UnauthorizedActor("Only handymen can browse open projects")
        query = query.where(Project.status == ProjectStatus.OPEN)
    elif actor.role is ActorRole.CUSTOMER:
        query = query.where(Project.customer_id == actor.actor_id)
    elif actor.role is ActorRole.HANDYMAN:
        query = query.where(or_(
            Project.handyman_id == actor.actor_id,
            Project.requested_handyman_id == actor.actor_id,
        ))
    if status is not None:
        query = query.where(Project.status == status)
    query = query.order_by(Project.created_at.desc()).limit(limit).offset(offset)
    result = await db.execute(query)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Customer-driven transitions
# ---------------------------------------------------------------------------


async def cancel_project(
    db: AsyncSession, project_id: uuid.UUID, actor: AuthenticatedActor
) -> Project:
    """Customer cancels while no handyman is assigned."""
    project = await _get_project(db, project_id)
    _assert_party(project, actor, allowed="customer")

    project = await _commit_transition(
        db, project, ProjectStatus.CANCELLED,
        {ProjectStatus.OPEN, ProjectStatus.PENDING_HANDYMAN_REVIEW},
        cancelled_at=datetime.now(UTC),
    )
    if project.requested_handyman_id is not None:
        await notify_parties(
            db, project.customer_id, project.requested_handyman_id,
            f'The customer has cancelled the project "{project.title}".',
            {"type": "project_cancelled", "projectId": str(project.project_id)},
        )
    return project


async def reopen_project(
    db: AsyncSession, project_id: uuid.UUID, actor: AuthenticatedActor
) -> Project:
    """Customer reposts a declined direct request as an open project."""
    project = await _get_project(db, project_id)
    _assert_party(project, actor, allowed="customer")
    return await _commit_transition(
        db, project, ProjectStatus.OPEN, {ProjectStatus.DECLINED},
        requested_handyman_id=None,
    )


async def confirm_completion(
    db: AsyncSession, project_id: uuid.UUID, actor: AuthenticatedActor
) -> Project:
    """Customer confirms the work is done. A handyman can never self-confirm."""
    project = await _get_project(db, project_id)
    _assert_party(project, actor, allowed="customer")

    now = datetime.now(UTC)
    project = await _commit_transition(
        db, project, ProjectStatus.COMPLETED, {ProjectStatus.PENDING_COMPLETION},
        completed_at=now, confirmed_by=actor.actor_id,
    )
    await notify_parties(
        db, project.customer_id, project.handyman_id,
        f'The customer confirmed "{project.title}" as completed. Thank you for your work!',
        {"type": "project_completed", "projectId": str(project.project_id)},
    )
    return project


async def respond_to_adjustment(
    db: AsyncSession, project_id: uuid.UUID, actor: AuthenticatedActor, approve: bool
) -> Project:
    """Customer approves or rejects a mid-project budget adjustment."""
    project = await _get_project(db, project_id)
    _assert_party(project, actor, allowed="customer")

    values: dict[str, object] = {"proposed_adjusted_budget": None}
    if approve:
        values["adjusted_budget"] = project.proposed_adjusted_budget
    project = await _commit_transition(
        db, project, ProjectStatus.IN_PROGRESS, {ProjectStatus.REQUIRES_ADJUSTMENT}, **values,
    )

    if approve:
        text = f'The customer approved the new budget of RM{project.adjusted_budget} for "{project.title}".'
    else:
        text = f'The customer did not approve the budget adjustment for "{project.title}".'
    await notify_parties(
        db, project.customer_id, project.handyman_id, text,
        {
            "type": "adjustment_approved" if approve else "adjustment_rejected",
            "projectId": str(project.project_id),
        },
    )
    return project


# ---------------------------------------------------------------------------
# Handyman-driven transitions
# ---------------------------------------------------------------------------


async def accept_direct_request(
    db: AsyncSession, project_id: uuid.UUID, actor: AuthenticatedActor
) -> Project:
    """Requested handyman takes a direct-hire project at the posted budget."""
    project = await _get_project(db, project_id)
    if project.requested_handyman_id != actor.actor_id:
        raise UnauthorizedActor("Only the requested handyman can accept this project")

    project = await _commit_transition(
        db, project, ProjectStatus.AGREED_SCHEDULED, {ProjectStatus.PENDING_HANDYMAN_REVIEW},
        handyman_id=actor.actor_id,
        agreed_budget=project.initial_budget,
        accepted_at=datetime.now(UTC),
    )
    await notify_parties(
        db, project.customer_id, actor.actor_id,
        f'Great news! The handyman accepted "{project.title}" at RM{project.agreed_budget}.',
        {"type": "project_accepted", "projectId": str(project.project_id)},
    )
    return project


async def decline_direct_request(
    db: AsyncSession, project_id: uuid.UUID, actor: AuthenticatedActor
) -> Project:
    """Requested handyman turns down a direct-hire project."""
    project = await _get_project(db, project_id)
    if project.requested_handyman_id != actor.actor_id:
        raise UnauthorizedActor("Only the requested handyman can decline this project")

    project = await _commit_transition(
        db, project, ProjectStatus.DECLINED, {ProjectStatus.PENDING_HANDYMAN_REVIEW},
        declined_by=actor.actor_id, declined_at=datetime.now(UTC),
    )
    await notify_parties(
        db, project.customer_id, actor.actor_id,
        f'The handyman is unable to take on "{project.title}". You can reopen it to receive offers.',
        {"type": "project_declined", "projectId": str(project.project_id)},
    )
    return project


async def request_deposit(
    db: AsyncSession,
    project_id: uuid.UUID,
    actor: AuthenticatedActor,
    deposit_amount: Decimal,
) -> Project:
    """Assigned handyman states the deposit; the customer is now asked to pay."""
    project = await _get_project(db, project_id)
    _assert_party(project, actor, allowed="handyman")

    if project.agreed_budget is not None and deposit_amount > project.agreed_budget:
        raise HTTPException(
            status_code=422,
            detail=f"Deposit {deposit_amount} exceeds the agreed budget {project.agreed_budget}",
        )

    project = await _commit_transition(
        db, project, ProjectStatus.AWAITING_PAYMENT, {ProjectStatus.AGREED_SCHEDULED},
        deposit_amount=deposit_amount, deposit_requested_at=datetime.now(UTC),
    )
    await notify_parties(
        db, project.customer_id, actor.actor_id,
        f'A deposit of RM{project.deposit_amount} has been requested for "{project.title}". '
        "Please proceed with payment to get the work started.",
        {"type": "deposit_requested", "projectId": str(project.project_id)},
    )
    return project


async def mark_complete(
    db: AsyncSession,
    project_id: uuid.UUID,
    actor: AuthenticatedActor,
    notes: str | None = None,
) -> Project:
    """Assigned handyman marks the work done; the customer must confirm."""
    project = await _get_project(db, project_id)
    _assert_party(project, actor, allowed="handyman")

    project = await _commit_transition(
        db, project, ProjectStatus.PENDING_COMPLETION, {ProjectStatus.IN_PROGRESS},
        marked_complete_at=datetime.now(UTC), completion_notes=notes,
    )
    await notify_parties(
        db, project.customer_id, actor.actor_id,
        f'The handyman has marked "{project.title}" as complete. Please review and confirm.',
        {"type": "project_marked_complete", "projectId": str(project.project_id)},
    )
    return project


async def request_adjustment(
    db: AsyncSession,
    project_id: uuid.UUID,
    actor: AuthenticatedActor,
    new_amount: Decimal,
    reason: str,
) -> Project:
    """Assigned handyman asks for a budget change after an on-site assessment."""
    project = await _get_project(db, project_id)
    _assert_party(project, actor, allowed="handyman")

    project = await _commit_transition(
        db, project, ProjectStatus.REQUIRES_ADJUSTMENT, {ProjectStatus.IN_PROGRESS},
        proposed_adjusted_budget=new_amount, adjustment_reason=reason,
    )
    await notify_parties(
        db, project.customer_id, actor.actor_id,
        f'The handyman requested a budget adjustment for "{project.title}" '
        f"to RM{new_amount}. Reason: {reason}",
        {
            "type": "adjustment_requested",
            "projectId": str(project.project_id),
            "newAmount": str(new_amount),
        },
    )
    return project


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------


async def dispute_project(
    db: AsyncSession,
    project_id: uuid.UUID,
    actor: AuthenticatedActor,
    reason: str | None = None,
) -> Project:
    """Escalate to a dispute. Terminal until resolved outside the platform."""
    project = await _get_project(db, project_id)
    if not actor.is_admin:
        _assert_party(project, actor)

    sources = {
        status for status in ProjectStatus
        if status not in TERMINAL_STATUSES and status is not ProjectStatus.DISPUTED
    }
    project = await _commit_transition(
        db, project, ProjectStatus.DISPUTED, sources,
        disputed_at=datetime.now(UTC), disputed_by=actor.actor_id, dispute_reason=reason,
    )
    if project.handyman_id is not None:
        await notify_parties(
            db, project.customer_id, project.handyman_id,
            f'"{project.title}" has been escalated to a dispute. Our support team will be in touch.',
            {"type": "project_disputed", "projectId": str(project.project_id)},
        )
    return project
