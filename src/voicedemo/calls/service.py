"""
Call lifecycle service: starting provider calls and applying status changes.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from voicedemo.calls.models import Call, DemoSession
from voicedemo.calls.repository import CallRepository, DemoSessionRepository
from voicedemo.calls.state import CallStatus, SessionStatus, Transition, resolve_transition
from voicedemo.shared.exceptions import NotFoundError, TransientProviderFailure
from voicedemo.shared.logging import get_logger, redact_pii
from voicedemo.voice.interface import BusinessProfile, VoiceProvider

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallService:
    """Creates calls and moves them through the status state machine."""

    def __init__(
        self,
        session: AsyncSession,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session = session
        self._now = now
        self.calls = CallRepository(session)
        self.sessions = DemoSessionRepository(session)

    async def create_demo_session(
        self,
        provider: str,
        ttl_hours: int,
        business_profile: dict | None = None,
        provider_agent_id: str | None = None,
    ) -> DemoSession:
        demo = await self.sessions.create(
            provider=provider,
            ttl_expires_at=self._now() + timedelta(hours=ttl_hours),
            business_profile=business_profile,
            provider_agent_id=provider_agent_id,
        )
        logger.info("Demo session created", extra={"session_id": str(demo.id), "provider": provider})
        return demo

    async def require_session(self, session_id: UUID) -> DemoSession:
        demo = await self.sessions.get_by_id(session_id)
        if demo is None:
            raise NotFoundError(
                message="Demo session not found",
                details={"session_id": str(session_id)},
            )
        return demo

    async def start_call(
        self,
        session_id: UUID,
        provider: VoiceProvider,
        phone_e164: str,
        profile: BusinessProfile,
        agent_id: str | None = None,
    ) -> Call:
        """Record a Call, place it through ``provider`` and store the provider call id.

        The Call row exists before the provider is contacted so webhooks that
        race the response still find it. On provider failure the Call and its
        session are marked FAILED and the error is re-raised.
        """
        demo = await self.require_session(session_id)
        demo.business_profile = profile.model_dump(exclude_none=True)
        if agent_id:
            demo.provider_agent_id = agent_id

        call = await self.calls.create(
            demo_session_id=demo.id,
            provider=provider.name,
            to_number=phone_e164,
            status=CallStatus.INITIATED,
            started_at=self._now(),
        )

        try:
            provider_call_id = await provider.start_call(
                str(demo.id),
                phone_e164,
                profile,
                agent_id or demo.provider_agent_id,
            )
        except TransientProviderFailure:
            logger.exception(
                "Voice provider call failed",
                extra={"session_id": str(demo.id), "provider": provider.name},
            )
            call.status = CallStatus.FAILED
            call.ended_at = self._now()
            demo.status = SessionStatus.FAILED
            await self._session.flush()
            raise

        call.provider_call_id = provider_call_id
        demo.status = SessionStatus.CALLING
        await self._session.flush()

        logger.info(
            "Call started",
            extra={
                "call_id": str(call.id),
                "session_id": str(demo.id),
                "provider": provider.name,
                "provider_call_id": provider_call_id,
                "to": redact_pii(phone_e164),
            },
        )
        return call

    async def record_carrier_call(
        self,
        session_id: UUID,
        call_sid: str,
        to_number: str,
        from_number: str | None,
    ) -> Call:
        """Record an outbound carrier call placed directly through Twilio."""
        demo = await self.require_session(session_id)
        call = await self.calls.create(
            demo_session_id=demo.id,
            provider=demo.provider,
            to_number=to_number,
            from_number=from_number,
            twilio_call_sid=call_sid,
            status=CallStatus.QUEUED,
            started_at=self._now(),
        )
        demo.status = SessionStatus.CALLING
        await self._session.flush()
        return call

    async def apply_status(
        self,
        call: Call,
        incoming: CallStatus,
        at: datetime | None = None,
        summary: str | None = None,
        transcript_url: str | None = None,
        duration_sec: int | None = None,
    ) -> Transition:
        """Apply ``incoming`` to ``call`` according to the transition rules."""
        at = at or self._now()
        transition = resolve_transition(call.status, incoming)

        if transition is Transition.IGNORE:
            logger.info(
                "Call status change ignored",
                extra={
                    "call_id": str(call.id),
                    "current": call.status.value,
                    "incoming": incoming.value,
                },
            )
            return transition

        previous = call.status
        call.status = incoming
        call.last_event_at = at
        if duration_sec is not None:
            call.duration_sec = duration_sec

        if incoming is CallStatus.IN_PROGRESS and call.connected_at is None:
            call.connected_at = at

        if incoming is CallStatus.COMPLETED:
            call.completed_at = at
            if call.ended_at is None or transition is Transition.REFRESH:
                call.ended_at = at
            if summary is not None:
                call.summary = summary
            if transcript_url is not None:
                call.transcript_url = transcript_url
            await self.sessions.set_status(call.demo_session_id, SessionStatus.COMPLETED)
        elif incoming is CallStatus.FAILED:
            if call.ended_at is None:
                call.ended_at = at
            await self.sessions.set_status(call.demo_session_id, SessionStatus.FAILED)

        await self._session.flush()
        logger.info(
            "Call status updated",
            extra={
                "call_id": str(call.id),
                "from": previous.value,
                "to": incoming.value,
                "transition": transition.value,
            },
        )
        return transition

    async def apply_carrier_status(
        self,
        call_sid: str,
        incoming: CallStatus,
        duration_sec: int | None = None,
    ) -> int:
        """Apply a carrier-reported status to every call bridged over ``call_sid``."""
        calls = await self.calls.list_by_twilio_call_sid(call_sid)
        if not calls:
            logger.warning("No call found for carrier call", extra={"call_sid": call_sid})
        for call in calls:
            await self.apply_status(call, incoming, duration_sec=duration_sec)
        return len(calls)
