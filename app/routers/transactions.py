"""Ledger read endpoints."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.middleware import AuthenticatedActor, verify_request
from app.database import get_db
from app.models.transaction import TransactionType
from app.schemas.transaction import TransactionResponse, TransactionStatsResponse
from app.services import ledger as ledger_service

router = APIRouter(tags=["transactions"])


@router.get("/transactions", response_model=list[TransactionResponse])
async def list_my_transactions(
    type: TransactionType | None = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[TransactionResponse]:
    """The caller's own ledger legs, newest first."""
    legs = await ledger_service.list_user_transactions(db, auth, type=type, limit=limit, offset=offset)
    return [TransactionResponse.model_validate(leg) for leg in legs]


@router.get("/transactions/stats", response_model=TransactionStatsResponse)
async def get_transaction_stats(
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> TransactionStatsResponse:
    stats = await ledger_service.get_transaction_stats(db, auth)
    return TransactionStatsResponse(**stats)


@router.get("/projects/{project_id}/transactions", response_model=list[TransactionResponse])
async def list_project_transactions(
    project_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[TransactionResponse]:
    legs = await ledger_service.list_project_transactions(db, project_id, auth)
    return [TransactionResponse.model_validate(leg) for leg in legs]
