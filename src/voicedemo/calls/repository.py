"""
Repositories for demo sessions, calls and the webhook event ledger.
"""

from datetime import datetime
from typing import Any, Protocol, Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from voicedemo.calls.models import Call, DemoSession, WebhookEvent
from voicedemo.calls.state import CallStatus, SessionStatus
from voicedemo.voice.interface import ProviderEvent


class CallRepositoryProtocol(Protocol):
    """Protocol for call repository operations."""

    async def get_by_id(self, call_id: UUID) -> Call | None:
        ...

    async def get_by_provider_call_id(self, provider: str, provider_call_id: str) -> Call | None:
        ...

    async def list_by_twilio_call_sid(self, call_sid: str) -> Sequence[Call]:
        ...


class DemoSessionRepository:
    """Repository for demo session rows."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        provider: str,
        ttl_expires_at: datetime | None = None,
        business_profile: dict[str, Any] | None = None,
        provider_agent_id: str | None = None,
    ) -> DemoSession:
        demo = DemoSession(
            provider=provider,
            status=SessionStatus.DRAFT,
            ttl_expires_at=ttl_expires_at,
            business_profile=business_profile,
            provider_agent_id=provider_agent_id,
        )
        self._session.add(demo)
        await self._session.flush()
        await self._session.refresh(demo)
        return demo

    async def get_by_id(self, session_id: UUID) -> DemoSession | None:
        stmt = select(DemoSession).where(DemoSession.id == session_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def expire_due(self, now: datetime) -> list[UUID]:
        """Mark sessions whose TTL has passed as EXPIRED; returns their ids."""
        stmt = select(DemoSession.id).where(
            DemoSession.ttl_expires_at < now,
            DemoSession.status != SessionStatus.EXPIRED,
        )
        result = await self._session.execute(stmt)
        expired = list(result.scalars().all())
        if not expired:
            return []

        await self._session.execute(
            update(DemoSession)
            .where(DemoSession.id.in_(expired))
            .values(status=SessionStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        return expired

    async def set_status(self, session_id: UUID, status: SessionStatus) -> DemoSession | None:
        demo = await self.get_by_id(session_id)
        if demo is None:
            return None
        demo.status = status
        await self._session.flush()
        return demo


class CallRepository:
    """Repository for call rows."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def create(
        self,
        demo_session_id: UUID,
        provider: str,
        to_number: str | None = None,
        from_number: str | None = None,
        provider_call_id: str | None = None,
        twilio_call_sid: str | None = None,
        status: CallStatus = CallStatus.INITIATED,
        started_at: datetime | None = None,
    ) -> Call:
        """Create a call record.

        Args:
            demo_session_id: Owning demo session.
            provider: Voice provider name.
            to_number: Callee number (E.164).
            from_number: Caller number (E.164).
            provider_call_id: Provider-assigned id, when already known.
            twilio_call_sid: Carrier call id, when already known.
            status: Initial status.
            started_at: When the call was initiated.

        Returns:
            Created Call instance.
        """
        call = Call(
            demo_session_id=demo_session_id,
            provider=provider,
            to_number=to_number,
            from_number=from_number,
            provider_call_id=provider_call_id,
            twilio_call_sid=twilio_call_sid,
            status=status,
            started_at=started_at,
        )
        self._session.add(call)
        await self._session.flush()
        await self._session.refresh(call)
        return call

    async def get_by_id(self, call_id: UUID) -> Call | None:
        stmt = select(Call).where(Call.id == call_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_provider_call_id(self, provider: str, provider_call_id: str) -> Call | None:
        """Get a call by its (provider, provider call id) pair."""
        stmt = select(Call).where(
            Call.provider == provider,
            Call.provider_call_id == provider_call_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_twilio_call_sid(self, call_sid: str) -> Sequence[Call]:
        """Get calls bridged over the given carrier call (usually one)."""
        stmt = select(Call).where(Call.twilio_call_sid == call_sid)
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def get_latest_for_session(self, demo_session_id: UUID) -> Call | None:
        stmt = (
            select(Call)
            .where(Call.demo_session_id == demo_session_id)
            .order_by(Call.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


class WebhookEventRepository:
    """Repository for the idempotent webhook event ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_dedupe_key(self, dedupe_key: str) -> WebhookEvent | None:
        stmt = select(WebhookEvent).where(WebhookEvent.dedupe_key == dedupe_key)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_for_call(self, provider: str, provider_call_id: str) -> int:
        stmt = select(WebhookEvent.id).where(
            WebhookEvent.provider == provider,
            WebhookEvent.provider_call_id == provider_call_id,
        )
        result = await self._session.execute(stmt)
        return len(result.scalars().all())

    @staticmethod
    def _apply_display_fields(row: WebhookEvent, event: ProviderEvent) -> None:
        row.status = event.status
        row.timestamp = event.timestamp
        row.summary = event.summary
        row.transcript_url = event.transcript_url
        row.transcript = event.transcript
        row.event_metadata = event.metadata or None

    async def upsert(
        self,
        event: ProviderEvent,
        call_id: UUID | None = None,
    ) -> tuple[WebhookEvent, bool]:
        """Insert the event or overwrite the display fields of its existing row.

        Returns:
            The ledger row and whether it was newly created.
        """
        existing = await self.get_by_dedupe_key(event.dedupe_key)
        if existing is not None:
            self._apply_display_fields(existing, event)
            await self._session.flush()
            return existing, False

        row = WebhookEvent(
            dedupe_key=event.dedupe_key,
            provider=event.provider,
            provider_call_id=event.provider_call_id,
            session_id=UUID(event.session_id) if event.session_id else None,
            call_id=call_id,
            event=event.event,
        )
        self._apply_display_fields(row, event)
        try:
            async with self._session.begin_nested():
                self._session.add(row)
                await self._session.flush()
        except IntegrityError:
            # A concurrent delivery inserted the same key first.
            existing = await self.get_by_dedupe_key(event.dedupe_key)
            if existing is None:
                raise
            self._apply_display_fields(existing, event)
            await self._session.flush()
            return existing, False
        return row, True
