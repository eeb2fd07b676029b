"""Create webhook_events table.

Revision ID: V0003
Revises: V0002
Create Date: 2024-01-15 00:00:02.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "V0003"
down_revision: Union[str, None] = "V0002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("dedupe_key", sa.String(512), nullable=False, unique=True),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("provider_call_id", sa.String(255), nullable=False),
        sa.Column("session_id", sa.Uuid, nullable=True),
        sa.Column(
            "call_id",
            sa.Uuid,
            sa.ForeignKey("calls.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("event", sa.String(128), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("summary", sa.Text, nullable=True),
        sa.Column("transcript_url", sa.String(1024), nullable=True),
        sa.Column("transcript", sa.Text, nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_index("ix_webhook_events_provider_call_id", "webhook_events", ["provider_call_id"])


def downgrade() -> None:
    op.drop_index("ix_webhook_events_provider_call_id", table_name="webhook_events")
    op.drop_table("webhook_events")
