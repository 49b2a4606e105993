"""Project SQLAlchemy model: the full lifecycle entity."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Enum, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class ProjectStatus(enum.Enum):
    OPEN = "open"
    PENDING_HANDYMAN_REVIEW = "pending_handyman_review"
    IN_NEGOTIATION = "in_negotiation"
    HAS_OFFERS = "has_offers"
    PENDING_CUSTOMER_ACCEPTANCE = "pending_customer_acceptance"
    AGREED_SCHEDULED = "agreed_scheduled"
    AWAITING_PAYMENT = "awaiting_payment"
    PAYMENT_PROCESSING = "payment_processing"
    REQUIRES_ADJUSTMENT = "requires_adjustment"
    IN_PROGRESS = "in_progress"
    PENDING_COMPLETION = "pending_completion"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    DECLINED = "declined"


TERMINAL_STATUSES = frozenset({ProjectStatus.COMPLETED, ProjectStatus.CANCELLED})

# Statuses in which offers may still be submitted, countered or accepted
NEGOTIABLE_STATUSES = frozenset({
    ProjectStatus.HAS_OFFERS,
    ProjectStatus.IN_NEGOTIATION,
    ProjectStatus.PENDING_CUSTOMER_ACCEPTANCE,
})

# Valid state transitions. Disputes are added below for every non-terminal state.
VALID_TRANSITIONS: dict[ProjectStatus, set[ProjectStatus]] = {
    ProjectStatus.OPEN: {
        ProjectStatus.HAS_OFFERS,
        ProjectStatus.IN_NEGOTIATION,
        ProjectStatus.PENDING_CUSTOMER_ACCEPTANCE,
        ProjectStatus.CANCELLED,
    },
    ProjectStatus.PENDING_HANDYMAN_REVIEW: {
        ProjectStatus.AGREED_SCHEDULED,
        ProjectStatus.DECLINED,
        ProjectStatus.CANCELLED,
    },
    ProjectStatus.HAS_OFFERS: {
        ProjectStatus.IN_NEGOTIATION,
        ProjectStatus.PENDING_CUSTOMER_ACCEPTANCE,
        ProjectStatus.AGREED_SCHEDULED,
        ProjectStatus.OPEN,
    },
    ProjectStatus.IN_NEGOTIATION: {
        ProjectStatus.AGREED_SCHEDULED,
        ProjectStatus.OPEN,
    },
    ProjectStatus.PENDING_CUSTOMER_ACCEPTANCE: {
        ProjectStatus.IN_NEGOTIATION,
        ProjectStatus.AGREED_SCHEDULED,
        ProjectStatus.OPEN,
    },
    ProjectStatus.AGREED_SCHEDULED: {ProjectStatus.AWAITING_PAYMENT},
    ProjectStatus.AWAITING_PAYMENT: {ProjectStatus.PAYMENT_PROCESSING},
    ProjectStatus.PAYMENT_PROCESSING: {
        ProjectStatus.IN_PROGRESS,
        ProjectStatus.AWAITING_PAYMENT,
    },
    ProjectStatus.IN_PROGRESS: {
        ProjectStatus.PENDING_COMPLETION,
        ProjectStatus.REQUIRES_ADJUSTMENT,
    },
    ProjectStatus.REQUIRES_ADJUSTMENT: {ProjectStatus.IN_PROGRESS},
    ProjectStatus.PENDING_COMPLETION: {ProjectStatus.COMPLETED},
    ProjectStatus.COMPLETED: set(),
    ProjectStatus.CANCELLED: set(),
    ProjectStatus.DISPUTED: set(),
    ProjectStatus.DECLINED: {ProjectStatus.OPEN},
}
for _status, _targets in VALID_TRANSITIONS.items():
    if _status not in TERMINAL_STATUSES and _status is not ProjectStatus.DISPUTED:
        _targets.add(ProjectStatus.DISPUTED)

# Labels shown to customers where they differ from the stored status
CUSTOMER_STATUS_LABELS: dict[ProjectStatus, str] = {
    ProjectStatus.AWAITING_PAYMENT: "requires_payment",
}


def status_label(status: ProjectStatus, role: str) -> str:
    if role == "customer":
        return CUSTOMER_STATUS_LABELS.get(status, status.value)
    return status.value


class Project(Base):
    __tablename__ = "projects"

    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    handyman_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    requested_handyman_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[ProjectStatus] = mapped_column(
        Enum(ProjectStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ProjectStatus.OPEN,
        index=True,
    )

    initial_budget: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    is_negotiable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    agreed_budget: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    agreed_duration: Mapped[str | None] = mapped_column(String(64), nullable=True)
    materials_included: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    adjusted_budget: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    proposed_adjusted_budget: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    adjustment_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    deposit_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    service_fee: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    accepted_offer_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    last_offer_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    confirmed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    declined_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    disputed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    completion_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
    last_offer_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deposit_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_initiated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deposit_paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    marked_complete_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    declined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    disputed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
