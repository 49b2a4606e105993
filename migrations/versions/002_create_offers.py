"""Create offers table with the one-accepted-offer and no-branching guards.

Revision ID: 002
Revises: 001
Create Date: 2026-10-05
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "offers",
        sa.Column("offer_id", sa.Uuid(), primary_key=True),
        sa.Column("project_id", sa.Uuid(), sa.ForeignKey("projects.project_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("handyman_id", sa.Uuid(), nullable=False),
        sa.Column("customer_id", sa.Uuid(), nullable=False),
        sa.Column("proposed_by", sa.Enum("customer", "handyman", name="offerparty"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("estimated_duration", sa.String(64), nullable=True),
        sa.Column("materials_included", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("proposed_date", sa.Date(), nullable=True),
        sa.Column("proposed_time", sa.String(32), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("is_counter_offer", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "parent_offer_id",
            sa.Uuid(),
            sa.ForeignKey("offers.offer_id", ondelete="RESTRICT"),
            nullable=True,
            unique=True,
        ),
        sa.Column("counter_offer_id", sa.Uuid(), nullable=True),
        sa.Column("negotiation_round", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "status",
            sa.Enum("pending", "accepted", "rejected", "countered", "withdrawn", name="offerstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("withdrawn_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("countered_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount > 0", name="ck_offers_amount_positive"),
        sa.CheckConstraint("negotiation_round >= 1", name="ck_offers_round_positive"),
    )
    op.create_index("ix_offers_project_id", "offers", ["project_id"])
    op.create_index("ix_offers_handyman_id", "offers", ["handyman_id"])
    op.create_index("ix_offers_customer_id", "offers", ["customer_id"])
    op.create_index("ix_offers_status", "offers", ["status"])
    op.create_index(
        "uq_offers_one_accepted_per_project",
        "offers",
        ["project_id"],
        unique=True,
        postgresql_where=sa.text("status = 'accepted'"),
    )


def downgrade() -> None:
    op.drop_table("offers")
    op.execute("DROP TYPE IF EXISTS offerstatus")
    op.execute("DROP TYPE IF EXISTS offerparty")
