"""Offer and negotiation endpoints."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.middleware import AuthenticatedActor, verify_request
from app.database import get_db
from app.models.project import status_label
from app.schemas.offer import (
    AcceptOfferResponse,
    CounterOfferCreate,
    CounterOfferResponse,
    NegotiationHistoryResponse,
    OfferCreate,
    OfferResponse,
    OfferStatsResponse,
    RejectOfferPayload,
)
from app.schemas.project import ProjectResponse
from app.services import offer as offer_service

router = APIRouter(tags=["offers"])


@router.post("/projects/{project_id}/offers", response_model=OfferResponse, status_code=201)
async def submit_offer(
    project_id: uuid.UUID,
    data: OfferCreate,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> OfferResponse:
    """Handyman bids on a project, or accepts its posted budget."""
    offer = await offer_service.submit_offer(db, project_id, auth, data)
    return OfferResponse.model_validate(offer)


@router.get("/projects/{project_id}/offers", response_model=list[OfferResponse])
async def list_project_offers(
    project_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[OfferResponse]:
    offers = await offer_service.list_project_offers(db, project_id, auth)
    return [OfferResponse.model_validate(o) for o in offers]


@router.get("/projects/{project_id}/negotiation-history", response_model=NegotiationHistoryResponse)
async def get_negotiation_history(
    project_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> NegotiationHistoryResponse:
    """Every negotiation chain on the project, rebuilt from the offer links."""
    history = await offer_service.get_negotiation_history(db, project_id, auth)
    return NegotiationHistoryResponse.model_validate(history)


@router.get("/offers/stats", response_model=OfferStatsResponse)
async def get_offer_stats(
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> OfferStatsResponse:
    stats = await offer_service.get_offer_stats(db, auth)
    return OfferStatsResponse(**stats)


@router.get("/offers/{offer_id}", response_model=OfferResponse)
async def get_offer(
    offer_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> OfferResponse:
    offer = await offer_service.get_offer_for_actor(db, offer_id, auth)
    return OfferResponse.model_validate(offer)


@router.post("/offers/{offer_id}/counter", response_model=CounterOfferResponse, status_code=201)
async def counter_offer(
    offer_id: uuid.UUID,
    data: CounterOfferCreate,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> CounterOfferResponse:
    """Either party answers a pending offer with new terms."""
    original, counter = await offer_service.counter_offer(db, offer_id, auth, data)
    return CounterOfferResponse(
        original=OfferResponse.model_validate(original),
        counter=OfferResponse.model_validate(counter),
    )


@router.post("/offers/{offer_id}/accept", response_model=AcceptOfferResponse)
async def accept_offer(
    offer_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> AcceptOfferResponse:
    """Accept an offer; every other pending offer on the project is rejected."""
    offer, project = await offer_service.accept_offer(db, offer_id, auth)
    project_response = ProjectResponse.model_validate(project)
    project_response.display_status = status_label(project.status, auth.role.value)
    return AcceptOfferResponse(
        offer=OfferResponse.model_validate(offer),
        project=project_response,
    )


@router.post("/offers/{offer_id}/reject", response_model=OfferResponse)
async def reject_offer(
    offer_id: uuid.UUID,
    data: RejectOfferPayload | None = None,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> OfferResponse:
    reason = data.reason if data else None
    offer = await offer_service.reject_offer(db, offer_id, auth, reason)
    return OfferResponse.model_validate(offer)


@router.post("/offers/{offer_id}/withdraw", response_model=OfferResponse)
async def withdraw_offer(
    offer_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> OfferResponse:
    """Handyman withdraws their own pending offer."""
    offer = await offer_service.withdraw_offer(db, offer_id, auth)
    return OfferResponse.model_validate(offer)
