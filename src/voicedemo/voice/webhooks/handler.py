"""
Provider webhook event handler.

Turns a normalized ProviderEvent into ledger and Call updates:

1. locate the Call by (provider, provider_call_id); unknown calls are NotFound,
2. stamp the event with the Call's session id,
3. upsert the ledger row by dedupe key,
4. move the Call through the status state machine.
"""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from voicedemo.calls.repository import CallRepository, WebhookEventRepository
from voicedemo.calls.service import CallService
from voicedemo.calls.state import Transition
from voicedemo.shared.exceptions import NotFoundError
from voicedemo.shared.logging import get_logger
from voicedemo.voice.interface import ProviderEvent

logger = get_logger(__name__)


@dataclass(frozen=True)
class EventOutcome:
    """What handling one event did."""

    dedupe_key: str
    created: bool
    transition: Transition


class ProviderEventHandler:
    """Applies provider events to the ledger and the owning Call."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize event handler.

        Args:
            session: Async database session; the caller owns the commit.
        """
        self._session = session
        self._calls = CallRepository(session)
        self._ledger = WebhookEventRepository(session)
        self._service = CallService(session)

    async def handle_event(self, event: ProviderEvent) -> EventOutcome:
        """Record ``event`` once and apply it to its Call.

        Raises:
            NotFoundError: no Call exists for (provider, provider_call_id).
        """
        call = await self._calls.get_by_provider_call_id(event.provider, event.provider_call_id)
        if call is None:
            logger.warning(
                "Call not found for provider event",
                extra={
                    "provider": event.provider,
                    "provider_call_id": event.provider_call_id,
                    "event": event.event,
                },
            )
            raise NotFoundError(
                message="Call not found",
                details={
                    "provider": event.provider,
                    "provider_call_id": event.provider_call_id,
                },
            )

        event = event.with_session(str(call.demo_session_id))
        _, created = await self._ledger.upsert(event, call_id=call.id)

        transition = await self._service.apply_status(
            call,
            event.status,
            at=event.timestamp,
            summary=event.summary,
            transcript_url=event.transcript_url,
        )

        logger.info(
            "Provider event processed",
            extra={
                "dedupe_key": event.dedupe_key,
                "created": created,
                "status": event.status.value,
                "transition": transition.value,
                "call_id": str(call.id),
            },
        )
        return EventOutcome(dedupe_key=event.dedupe_key, created=created, transition=transition)
