"""Project lifecycle endpoints."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.middleware import AuthenticatedActor, verify_request
from app.database import get_db
from app.models.project import Project, ProjectStatus, status_label
from app.schemas.project import (
    AdjustmentRequestPayload,
    AdjustmentResponsePayload,
    DepositRequestPayload,
    DisputePayload,
    MarkCompletePayload,
    ProjectCreate,
    ProjectResponse,
    ReviewEligibilityResponse,
)
from app.services import project as project_service
from app.services.review import ReviewClient, get_review_client, review_eligibility

router = APIRouter(prefix="/projects", tags=["projects"])


def _respond(project: Project, auth: AuthenticatedActor) -> ProjectResponse:
    response = ProjectResponse.model_validate(project)
    response.display_status = status_label(project.status, auth.role.value)
    return response


@router.post("", response_model=ProjectResponse, status_code=201)
async def create_project(
    data: ProjectCreate,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    """Customer posts a project (or a direct-hire request)."""
    project = await project_service.create_project(db, auth, data)
    return _respond(project, auth)


@router.get("", response_model=list[ProjectResponse])
async def list_projects(
    status: ProjectStatus | None = None,
    available: bool = Query(False, description="Handymen: browse open projects instead of your own"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[ProjectResponse]:
    projects = await project_service.list_projects(
        db, auth, status=status, browse_open=available, limit=limit, offset=offset
    )
    return [_respond(p, auth) for p in projects]


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    project = await project_service.get_project_for_actor(db, project_id, auth)
    return _respond(project, auth)


@router.post("/{project_id}/cancel", response_model=ProjectResponse)
async def cancel_project(
    project_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    """Customer cancels a project no handyman is assigned to yet."""
    project = await project_service.cancel_project(db, project_id, auth)
    return _respond(project, auth)


@router.post("/{project_id}/direct-request/accept", response_model=ProjectResponse)
async def accept_direct_request(
    project_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    project = await project_service.accept_direct_request(db, project_id, auth)
    return _respond(project, auth)


@router.post("/{project_id}/direct-request/decline", response_model=ProjectResponse)
async def decline_direct_request(
    project_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    project = await project_service.decline_direct_request(db, project_id, auth)
    return _respond(project, auth)


@router.post("/{project_id}/reopen", response_model=ProjectResponse)
async def reopen_project(
    project_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    project = await project_service.reopen_project(db, project_id, auth)
    return _respond(project, auth)


@router.post("/{project_id}/deposit-request", response_model=ProjectResponse)
async def request_deposit(
    project_id: uuid.UUID,
    data: DepositRequestPayload,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    """Assigned handyman asks the customer for a deposit."""
    project = await project_service.request_deposit(db, project_id, auth, data.deposit_amount)
    return _respond(project, auth)


@router.post("/{project_id}/mark-complete", response_model=ProjectResponse)
async def mark_complete(
    project_id: uuid.UUID,
    data: MarkCompletePayload | None = None,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    notes = data.notes if data else None
    project = await project_service.mark_complete(db, project_id, auth, notes)
    return _respond(project, auth)


@router.post("/{project_id}/confirm-completion", response_model=ProjectResponse)
async def confirm_completion(
    project_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    """Customer confirms the work is done."""
    project = await project_service.confirm_completion(db, project_id, auth)
    return _respond(project, auth)


@router.post("/{project_id}/adjustment", response_model=ProjectResponse)
async def request_adjustment(
    project_id: uuid.UUID,
    data: AdjustmentRequestPayload,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    project = await project_service.request_adjustment(
        db, project_id, auth, data.new_amount, data.reason
    )
    return _respond(project, auth)


@router.post("/{project_id}/adjustment/respond", response_model=ProjectResponse)
async def respond_to_adjustment(
    project_id: uuid.UUID,
    data: AdjustmentResponsePayload,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    project = await project_service.respond_to_adjustment(db, project_id, auth, data.approve)
    return _respond(project, auth)


@router.post("/{project_id}/dispute", response_model=ProjectResponse)
async def dispute_project(
    project_id: uuid.UUID,
    data: DisputePayload | None = None,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    """Escalate to a dispute. A party or an admin may do this."""
    reason = data.reason if data else None
    project = await project_service.dispute_project(db, project_id, auth, reason)
    return _respond(project, auth)


@router.get("/{project_id}/review-eligibility", response_model=ReviewEligibilityResponse)
async def get_review_eligibility(
    project_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    reviews: ReviewClient = Depends(get_review_client),
) -> ReviewEligibilityResponse:
    result = await review_eligibility(db, reviews, project_id, auth)
    return ReviewEligibilityResponse(**result)
