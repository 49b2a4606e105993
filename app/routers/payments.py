"""Deposit payment, gateway callback and refund endpoints."""

import logging
import uuid

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Form
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.middleware import AuthenticatedActor, verify_request
from app.database import get_db
from app.models.project import status_label
from app.redis import get_redis
from app.schemas.payment import (
    BillSyncResponse,
    DepositInitResponse,
    PaymentConfirmRequest,
    PaymentConfirmResponse,
    RefundCreate,
    RefundResponse,
)
from app.schemas.project import ProjectResponse
from app.schemas.transaction import TransactionResponse
from app.services import ledger as ledger_service
from app.services import payment as payment_service
from app.services.payment import PaymentOutcome
from app.services.toyyibpay import ToyyibPayGateway, get_gateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


@router.post(
    "/projects/{project_id}/payments/deposit",
    response_model=DepositInitResponse,
    status_code=201,
)
async def initiate_deposit(
    project_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    gateway: ToyyibPayGateway = Depends(get_gateway),
) -> DepositInitResponse:
    """Customer starts paying the requested deposit; redirect them to paymentUrl."""
    result = await payment_service.initiate_deposit(db, redis, gateway, project_id, auth)
    project = result.pop("project")
    project_response = ProjectResponse.model_validate(project)
    project_response.display_status = status_label(project.status, auth.role.value)
    return DepositInitResponse(project=project_response, **result)


@router.post("/payments/confirm", response_model=PaymentConfirmResponse)
async def confirm_payment(
    data: PaymentConfirmRequest,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    gateway: ToyyibPayGateway = Depends(get_gateway),
) -> PaymentConfirmResponse:
    """Return-URL handler that still holds both ledger ids."""
    result = await payment_service.confirm_by_transaction_ids(
        db, gateway,
        data.customer_transaction_id,
        data.handyman_transaction_id,
        PaymentOutcome(data.outcome),
        auth,
    )
    return PaymentConfirmResponse.model_validate(result)


@router.post("/payments/bills/{bill_code}/sync", response_model=BillSyncResponse)
async def sync_bill(
    bill_code: str,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    gateway: ToyyibPayGateway = Depends(get_gateway),
) -> BillSyncResponse:
    """Ask the gateway for the bill's status and settle it if final."""
    await payment_service.assert_bill_party(db, bill_code, auth)
    status, result = await payment_service.sync_bill_status(db, gateway, bill_code, redis)
    return BillSyncResponse(
        bill_code=bill_code,
        gateway_status=status.state.value,
        amount=status.amount,
        confirmation=PaymentConfirmResponse.model_validate(result) if result else None,
    )


@router.post("/payments/toyyibpay/callback")
async def toyyibpay_callback(
    billcode: str = Form(...),
    status_id: str | None = Form(None),
    status: str | None = Form(None),
    refno: str | None = Form(None),
    order_id: str | None = Form(None),
    transaction_id: str | None = Form(None),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    gateway: ToyyibPayGateway = Depends(get_gateway),
) -> dict:
    """Server-to-server callback from toyyibPay (form-encoded, unauthenticated)."""
    code = status_id or status or ""
    logger.info(
        "toyyibPay callback: bill %s status %s refno %s order %s", billcode, code, refno, order_id
    )
    result = await payment_service.handle_callback(
        db, gateway, billcode, code,
        gateway_transaction_id=transaction_id or refno,
        redis=redis,
    )
    if result is None:
        return {"status": "ok", "billCode": billcode, "applied": False}
    return {
        "status": "ok",
        "billCode": billcode,
        "applied": result.applied,
        "transactionStatus": result.transaction_status.value,
    }


@router.post("/projects/{project_id}/refunds", response_model=RefundResponse, status_code=201)
async def create_refund(
    project_id: uuid.UUID,
    data: RefundCreate,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> RefundResponse:
    """Assigned handyman refunds part or all of the paid deposit."""
    customer_leg, handyman_leg = await ledger_service.create_refund(
        db, project_id, auth, data.amount, data.reason
    )
    return RefundResponse(
        customer_transaction=TransactionResponse.model_validate(customer_leg),
        handyman_transaction=TransactionResponse.model_validate(handyman_leg),
    )
