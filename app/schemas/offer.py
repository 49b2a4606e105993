"""Pydantic v2 schemas for offers and negotiation."""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import Field, field_validator, model_validator

from app.schemas.common import CamelModel, CamelResponse, enum_value
from app.schemas.project import ProjectResponse


class OfferCreate(CamelModel):
    """Handyman bids on a project.

    ``offer_type = "accept"`` takes the posted budget as-is (``amount`` is
    ignored); a ``"bid"`` proposes its own amount.
    """
    offer_type: Literal["bid", "accept"] = "bid"
    amount: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)
    estimated_duration: str | None = Field(None, max_length=64)
    materials_included: bool = False
    proposed_date: date | None = None
    proposed_time: str | None = Field(None, max_length=32)
    message: str | None = Field(None, max_length=2048)

    @model_validator(mode="after")
    def require_amount_for_bids(self) -> "OfferCreate":
        if self.offer_type == "bid" and self.amount is None:
            raise ValueError("amount is required for a bid")
        return self


class CounterOfferCreate(CamelModel):
    """Either party counters a pending offer with new terms."""
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    estimated_duration: str | None = Field(None, max_length=64)
    materials_included: bool | None = None
    proposed_date: date | None = None
    proposed_time: str | None = Field(None, max_length=32)
    message: str | None = Field(None, max_length=2048)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        if v > Decimal("1000000"):
            raise ValueError("Maximum amount is RM1,000,000")
        return v


class RejectOfferPayload(CamelModel):
    reason: str | None = Field(None, max_length=2048)


class OfferResponse(CamelResponse):
    id: uuid.UUID = Field(validation_alias="offer_id")
    project_id: uuid.UUID
    handyman_id: uuid.UUID
    customer_id: uuid.UUID
    proposed_by: str
    amount: Decimal
    estimated_duration: str | None
    materials_included: bool
    proposed_date: date | None
    proposed_time: str | None
    message: str | None
    is_counter_offer: bool
    parent_offer_id: uuid.UUID | None
    counter_offer_id: uuid.UUID | None
    negotiation_round: int
    status: str
    rejection_reason: str | None
    created_at: datetime
    updated_at: datetime
    accepted_at: datetime | None
    rejected_at: datetime | None
    withdrawn_at: datetime | None
    countered_at: datetime | None

    @field_validator("status", "proposed_by", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        return enum_value(v)


class CounterOfferResponse(CamelModel):
    original: OfferResponse
    counter: OfferResponse


class AcceptOfferResponse(CamelModel):
    offer: OfferResponse
    project: ProjectResponse


class NegotiationChain(CamelResponse):
    id: uuid.UUID
    handyman_id: uuid.UUID
    offers: list[OfferResponse]
    status: str
    negotiation_rounds: int
    final_amount: Decimal
    started_at: datetime
    last_activity: datetime


class NegotiationHistoryResponse(CamelResponse):
    project_id: uuid.UUID
    total_offers: int
    negotiation_chains: list[NegotiationChain]
    active_negotiations: int
    accepted_offers: int


class OfferStatsResponse(CamelModel):
    total: int = 0
    pending: int = 0
    accepted: int = 0
    rejected: int = 0
    countered: int = 0
    withdrawn: int = 0
    average_amount: Decimal | None = None
    acceptance_rate: float = 0.0
    active_negotiations: int = 0
