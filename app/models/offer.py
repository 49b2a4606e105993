"""Offer (bid / counter-offer) model."""

import enum
import uuid
from datetime import UTC, date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class OfferStatus(enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COUNTERED = "countered"
    WITHDRAWN = "withdrawn"


class OfferParty(enum.Enum):
    CUSTOMER = "customer"
    HANDYMAN = "handyman"


ANOTHER_OFFER_ACCEPTED = "another offer was accepted"


class Offer(Base):
    __tablename__ = "offers"
    __table_args__ = (
        # At most one accepted offer per project
        Index(
            "uq_offers_one_accepted_per_project",
            "project_id",
            unique=True,
            postgresql_where=text("status = 'accepted'"),
            sqlite_where=text("status = 'accepted'"),
        ),
    )

    offer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.project_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    handyman_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    proposed_by: Mapped[OfferParty] = mapped_column(
        Enum(OfferParty, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    estimated_duration: Mapped[str | None] = mapped_column(String(64), nullable=True)
    materials_included: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    proposed_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    proposed_time: Mapped[str | None] = mapped_column(String(32), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_counter_offer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Unique: an offer can be countered at most once, so chains never branch
    parent_offer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("offers.offer_id", ondelete="RESTRICT"), nullable=True, unique=True
    )
    counter_offer_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    negotiation_round: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    status: Mapped[OfferStatus] = mapped_column(
        Enum(OfferStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=OfferStatus.PENDING,
        index=True,
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    withdrawn_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    countered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
