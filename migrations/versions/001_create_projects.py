"""Create projects table.

Revision ID: 001
Revises:
Create Date: 2026-10-05
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("project_id", sa.Uuid(), primary_key=True),
        sa.Column("customer_id", sa.Uuid(), nullable=False),
        sa.Column("handyman_id", sa.Uuid(), nullable=True),
        sa.Column("requested_handyman_id", sa.Uuid(), nullable=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "open", "pending_handyman_review", "in_negotiation", "has_offers",
                "pending_customer_acceptance", "agreed_scheduled", "awaiting_payment",
                "payment_processing", "requires_adjustment", "in_progress",
                "pending_completion", "completed", "cancelled", "disputed", "declined",
                name="projectstatus",
            ),
            nullable=False,
            server_default="open",
        ),
        sa.Column("initial_budget", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_negotiable", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("agreed_budget", sa.Numeric(12, 2), nullable=True),
        sa.Column("agreed_duration", sa.String(64), nullable=True),
        sa.Column("materials_included", sa.Boolean(), nullable=True),
        sa.Column("adjusted_budget", sa.Numeric(12, 2), nullable=True),
        sa.Column("proposed_adjusted_budget", sa.Numeric(12, 2), nullable=True),
        sa.Column("adjustment_reason", sa.Text(), nullable=True),
        sa.Column("deposit_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("service_fee", sa.Numeric(12, 2), nullable=True),
        sa.Column("accepted_offer_id", sa.Uuid(), nullable=True),
        sa.Column("last_offer_by", sa.Uuid(), nullable=True),
        sa.Column("confirmed_by", sa.Uuid(), nullable=True),
        sa.Column("declined_by", sa.Uuid(), nullable=True),
        sa.Column("disputed_by", sa.Uuid(), nullable=True),
        sa.Column("dispute_reason", sa.Text(), nullable=True),
        sa.Column("completion_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_offer_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deposit_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_initiated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deposit_paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("marked_complete_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("declined_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disputed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_projects_customer_id", "projects", ["customer_id"])
    op.create_index("ix_projects_handyman_id", "projects", ["handyman_id"])
    op.create_index("ix_projects_status", "projects", ["status"])


def downgrade() -> None:
    op.drop_table("projects")
    op.execute("DROP TYPE IF EXISTS projectstatus")
