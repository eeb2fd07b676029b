"""
SQLAlchemy models for demo sessions, calls and the webhook event ledger.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from voicedemo.calls.state import CallStatus, SessionStatus
from voicedemo.shared.database import Base


class DemoSession(Base):
    """A visitor's demo: one business profile, one active voice provider."""

    __tablename__ = "demo_sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    status: Mapped[SessionStatus] = mapped_column(
        SQLEnum(SessionStatus, name="session_status", native_enum=False, length=16),
        nullable=False,
        default=SessionStatus.DRAFT,
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_agent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    business_profile: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ttl_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class Call(Base):
    """One attempted or completed phone interaction."""

    __tablename__ = "calls"
    __table_args__ = (
        UniqueConstraint("provider", "provider_call_id", name="uq_calls_provider_call"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    demo_session_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("demo_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_call_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    twilio_call_sid: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )
    from_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[CallStatus] = mapped_column(
        SQLEnum(CallStatus, name="call_status", native_enum=False, length=16),
        nullable=False,
        default=CallStatus.INITIATED,
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    connected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_sec: Mapped[int | None] = mapped_column(Integer, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    transcript_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class WebhookEvent(Base):
    """Ledger row for one normalized provider event, unique per dedupe key."""

    __tablename__ = "webhook_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    dedupe_key: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_call_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    session_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    call_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("calls.id", ondelete="SET NULL"),
        nullable=True,
    )
    event: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[CallStatus] = mapped_column(
        SQLEnum(CallStatus, name="call_status", native_enum=False, length=16),
        nullable=False,
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    transcript_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    transcript: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
    )
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
