"""Pydantic v2 schemas for deposits, confirmations and refunds."""

import uuid
from decimal import Decimal
from typing import Literal

from pydantic import Field, field_validator

from app.schemas.common import CamelModel, CamelResponse, enum_value
from app.schemas.project import ProjectResponse
from app.schemas.transaction import TransactionResponse


class DepositInitResponse(CamelModel):
    """Where to send the customer, and the ledger pair waiting on the payment."""
    bill_code: str
    payment_url: str
    customer_transaction_id: uuid.UUID
    handyman_transaction_id: uuid.UUID
    deposit_amount: Decimal
    service_fee: Decimal
    total_amount: Decimal
    project: ProjectResponse


class PaymentConfirmRequest(CamelModel):
    customer_transaction_id: uuid.UUID
    handyman_transaction_id: uuid.UUID
    outcome: Literal["success", "failed"]


class PaymentConfirmResponse(CamelResponse):
    reference: str
    outcome: str
    # False when the outcome had already been recorded
    applied: bool
    transaction_status: str
    project_status: str | None = None

    @field_validator("outcome", "transaction_status", "project_status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str | None:
        if v is None:
            return None
        return enum_value(v)


class BillSyncResponse(CamelModel):
    bill_code: str
    gateway_status: str
    amount: Decimal | None = None
    confirmation: PaymentConfirmResponse | None = None


class RefundCreate(CamelModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    reason: str = Field(..., min_length=1, max_length=2048)


class RefundResponse(CamelModel):
    customer_transaction: TransactionResponse
    handyman_transaction: TransactionResponse
