"""Pydantic v2 schemas for project lifecycle endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import Field, field_validator

from app.schemas.common import CamelModel, CamelResponse, enum_value


class ProjectCreate(CamelModel):
    """Customer posts a project. Set requested_handyman_id for a direct hire."""
    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(None, max_length=5000)
    category: str | None = Field(None, max_length=64)
    initial_budget: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    is_negotiable: bool = True
    requested_handyman_id: uuid.UUID | None = None


class DepositRequestPayload(CamelModel):
    deposit_amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)


class MarkCompletePayload(CamelModel):
    notes: str | None = Field(None, max_length=2048)


class AdjustmentRequestPayload(CamelModel):
    """Handyman proposes a new budget after assessing the work on site."""
    new_amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    reason: str = Field(..., min_length=1, max_length=2048)


class AdjustmentResponsePayload(CamelModel):
    approve: bool


class DisputePayload(CamelModel):
    reason: str | None = Field(None, max_length=2048)


class ProjectResponse(CamelResponse):
    id: uuid.UUID = Field(validation_alias="project_id")
    customer_id: uuid.UUID
    handyman_id: uuid.UUID | None
    requested_handyman_id: uuid.UUID | None
    title: str
    description: str | None
    category: str | None
    status: str
    # Role-specific label, e.g. customers see awaiting_payment as requires_payment
    display_status: str | None = None

    initial_budget: Decimal
    is_negotiable: bool
    agreed_budget: Decimal | None
    agreed_duration: str | None
    materials_included: bool | None
    adjusted_budget: Decimal | None
    proposed_adjusted_budget: Decimal | None
    adjustment_reason: str | None
    deposit_amount: Decimal | None
    service_fee: Decimal | None
    accepted_offer_id: uuid.UUID | None
    confirmed_by: uuid.UUID | None
    completion_notes: str | None
    dispute_reason: str | None

    created_at: datetime
    updated_at: datetime
    accepted_at: datetime | None
    deposit_paid_at: datetime | None
    marked_complete_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return enum_value(v)


class ReviewEligibilityResponse(CamelModel):
    project_id: uuid.UUID
    eligible: bool
    reason: str | None = None
