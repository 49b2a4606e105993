"""Pydantic v2 schemas for ledger entries."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import Field, field_validator

from app.schemas.common import CamelModel, CamelResponse, enum_value


class TransactionResponse(CamelResponse):
    id: uuid.UUID = Field(validation_alias="transaction_id")
    pair_id: uuid.UUID
    user_id: uuid.UUID
    other_party_id: uuid.UUID
    project_id: uuid.UUID
    type: str
    amount: Decimal
    status: str
    toyyib_pay_bill_code: str | None
    gateway_transaction_id: str | None
    payment_method: str | None
    description: str | None
    reason: str | None
    created_at: datetime
    updated_at: datetime
    settled_at: datetime | None

    @field_validator("type", "status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        return enum_value(v)


class TransactionStatsResponse(CamelModel):
    """Handymen get the received/paid-out view, customers the paid view."""
    total_received: Decimal | None = None
    total_paid_out: Decimal | None = None
    total_paid: Decimal | None = None
    total_refunded: Decimal
    net: Decimal
    pending_count: int
