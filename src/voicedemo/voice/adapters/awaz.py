"""
Awaz voice provider adapter.

Awaz also carries the live call audio over a WebSocket; that side lives in
``voicedemo.media.sockets``. This adapter covers call creation and webhooks.
"""

from datetime import datetime, timezone
from typing import Any

from voicedemo.calls.state import CallStatus
from voicedemo.shared.logging import get_logger
from voicedemo.voice.interface import (
    BusinessProfile,
    CallInitiationError,
    ProviderEvent,
    VoiceProvider,
    epoch_to_datetime,
)

logger = get_logger(__name__)

AWAZ_EVENT_MAP: dict[str, CallStatus] = {
    "call.queued": CallStatus.QUEUED,
    "call.initiated": CallStatus.INITIATED,
    "call.ringing": CallStatus.RINGING,
    "call.started": CallStatus.IN_PROGRESS,
    "call.answered": CallStatus.IN_PROGRESS,
    "call.in_progress": CallStatus.IN_PROGRESS,
    "call.completed": CallStatus.COMPLETED,
    "call.ended": CallStatus.COMPLETED,
    "call.failed": CallStatus.FAILED,
}

# Epoch values above this are milliseconds.
_EPOCH_MS_THRESHOLD = 10**11


def _normalize_event_name(event: str) -> str:
    name = event.strip().lower()
    if name.startswith("call_"):
        name = "call." + name[len("call_"):]
    return name


def map_event_status(event: str | None, status: str | None = None) -> CallStatus:
    """Explicit ``status`` wins; otherwise the event name decides."""
    if status:
        value = status.strip().lower().replace("-", "_")
        mapped = AWAZ_EVENT_MAP.get(f"call.{value}")
        if mapped is not None:
            return mapped
    if not event:
        return CallStatus.UNKNOWN
    return AWAZ_EVENT_MAP.get(_normalize_event_name(event), CallStatus.UNKNOWN)


class AwazProvider(VoiceProvider):
    """Awaz: calls via POST /v1/calls, hex HMAC-SHA256 webhook signatures."""

    name = "awaz"
    base_url = "https://api.awaz.ai"
    signature_header = "x-awaz-signature"

    def __init__(self, api_key: str, *, default_agent_id: str = "default-agent", **kwargs: Any) -> None:
        super().__init__(api_key, **kwargs)
        self._default_agent_id = default_agent_id

    async def _create_call(
        self,
        session_id: str,
        phone_e164: str,
        profile: BusinessProfile,
        agent_id: str | None,
    ) -> str:
        body = {
            "phone_number": phone_e164,
            "agent_id": agent_id or self._default_agent_id,
            "metadata": {"session_id": session_id},
            "context": {"business_profile": profile.model_dump(exclude_none=True)},
        }
        data = await self._post_json("/v1/calls", body)

        call_id = data.get("call_id")
        if not call_id:
            raise CallInitiationError(
                message="No call ID returned from Awaz API",
                provider=self.name,
                error_code="MISSING_CALL_ID",
            )
        return str(call_id)

    def _parse_timestamp(self, value: Any) -> datetime | None:
        """Epoch s/ms or ISO-8601; None for an unrepresentable epoch."""
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return epoch_to_datetime(value, millis=value > _EPOCH_MS_THRESHOLD)
        if isinstance(value, str) and value.strip():
            text = value.strip()
            if text.isdigit():
                number = int(text)
                return epoch_to_datetime(number, millis=number > _EPOCH_MS_THRESHOLD)
            try:
                return datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                logger.warning("Unparseable Awaz timestamp", extra={"timestamp": text})
        # Awaz omits the timestamp on some events; fall back to receipt time.
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def parse_event(self, payload: dict[str, Any]) -> ProviderEvent:
        event = payload.get("event") or payload.get("type")
        customer = payload.get("customer") if isinstance(payload.get("customer"), dict) else {}
        booking = payload.get("booking") if isinstance(payload.get("booking"), dict) else None

        metadata: dict[str, Any] = {
            "lead": {
                "name": customer.get("name"),
                "phone": customer.get("phone") or "",
                "email": customer.get("email"),
            },
        }
        if booking is not None:
            metadata["booking"] = {
                "start": booking.get("start_time"),
                "end": booking.get("end_time"),
                "location": booking.get("location"),
                "reference": booking.get("confirmation_code"),
                "notes": booking.get("notes"),
            }

        logger.info(
            "Parsing Awaz event",
            extra={"provider_call_id": payload.get("call_id"), "event": event},
        )

        return self._build_event(
            payload,
            provider_call_id=payload.get("call_id"),
            event=event,
            status=map_event_status(event, payload.get("status")),
            timestamp=self._parse_timestamp(payload.get("timestamp") or payload.get("created_at")),
            summary=payload.get("summary"),
            transcript_url=payload.get("transcript_url"),
            transcript=payload.get("transcript"),
            metadata=metadata,
        )
