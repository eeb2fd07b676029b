"""Create calls table.

Revision ID: V0002
Revises: V0001
Create Date: 2024-01-15 00:00:01.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "V0002"
down_revision: Union[str, None] = "V0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "calls",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column(
            "demo_session_id",
            sa.Uuid,
            sa.ForeignKey("demo_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("provider_call_id", sa.String(255), nullable=True),
        sa.Column("twilio_call_sid", sa.String(64), nullable=True),
        sa.Column("from_number", sa.String(32), nullable=True),
        sa.Column("to_number", sa.String(32), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="INITIATED"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_sec", sa.Integer, nullable=True),
        sa.Column("summary", sa.Text, nullable=True),
        sa.Column("transcript_url", sa.String(1024), nullable=True),
        sa.Column("rating", sa.Integer, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("provider", "provider_call_id", name="uq_calls_provider_call"),
    )

    op.create_index("ix_calls_demo_session_id", "calls", ["demo_session_id"])
    op.create_index("ix_calls_twilio_call_sid", "calls", ["twilio_call_sid"])


def downgrade() -> None:
    op.drop_index("ix_calls_twilio_call_sid", table_name="calls")
    op.drop_index("ix_calls_demo_session_id", table_name="calls")
    op.drop_table("calls")
