"""Create system_messages outbox table.

Revision ID: 004
Revises: 003
Create Date: 2026-10-08
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "004"
down_revision: Union[str, None] = "003"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "system_messages",
        sa.Column("message_id", sa.Uuid(), primary_key=True),
        sa.Column("conversation_key", sa.String(128), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("metadata", JSONB, nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "delivered", "failed", name="messagestatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_system_messages_conversation_key", "system_messages", ["conversation_key"])
    op.create_index(
        "ix_system_messages_pending",
        "system_messages",
        ["created_at"],
        postgresql_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_table("system_messages")
    op.execute("DROP TYPE IF EXISTS messagestatus")
