"""
Retell AI voice provider adapter.
"""

import json
from typing import Any

from voicedemo.calls.state import CallStatus
from voicedemo.shared.logging import get_logger
from voicedemo.voice.interface import (
    BusinessProfile,
    CallInitiationError,
    ProviderEvent,
    VoiceProvider,
    epoch_to_datetime,
    summary_or_transcript,
)

logger = get_logger(__name__)

RETELL_EVENT_MAP: dict[str, CallStatus] = {
    "call_registered": CallStatus.INITIATED,
    "call_started": CallStatus.IN_PROGRESS,
    "call_ended": CallStatus.COMPLETED,
    "call_analyzed": CallStatus.COMPLETED,
}


def map_end_state(end_state: str | None) -> CallStatus | None:
    """Map a Retell end state (why the call stopped) onto CallStatus."""
    if not end_state:
        return None
    state = end_state.lower()
    if state.startswith("ended_by_"):
        return CallStatus.COMPLETED
    if state.startswith("error") or "fail" in state:
        return CallStatus.FAILED
    return CallStatus.UNKNOWN


class RetellProvider(VoiceProvider):
    """Retell: calls via /v2/create-phone-call, timestamps in epoch seconds."""

    name = "retell"
    base_url = "https://api.retellai.com"
    signature_header = "x-retell-signature"

    default_agent_id = "agent-default"
    default_phone_number_id = "phone-default"

    async def _create_call(
        self,
        session_id: str,
        phone_e164: str,
        profile: BusinessProfile,
        agent_id: str | None,
    ) -> str:
        body = {
            "phone_number_id": self.default_phone_number_id,
            "agent_id": agent_id or self.default_agent_id,
            "to_number": phone_e164,
            "metadata": {"session_id": session_id},
            "override_agent_config": {
                "dynamic_variables": build_business_context(profile),
            },
        }
        data = await self._post_json("/v2/create-phone-call", body)

        call_id = data.get("call_id")
        if not call_id:
            phone_calls = data.get("phone_calls") or []
            if phone_calls and isinstance(phone_calls[0], dict):
                call_id = phone_calls[0].get("call_id")
        if not call_id:
            raise CallInitiationError(
                message="No call ID returned from Retell API",
                provider=self.name,
                error_code="MISSING_CALL_ID",
            )
        return str(call_id)

    def parse_event(self, payload: dict[str, Any]) -> ProviderEvent:
        end_state = payload.get("end_state")
        event = payload.get("event")
        status = map_end_state(end_state)
        if status is None:
            status = RETELL_EVENT_MAP.get(str(event or "").lower(), CallStatus.UNKNOWN)

        analysis = payload.get("analysis") if isinstance(payload.get("analysis"), dict) else {}
        transcript = payload.get("transcript") or analysis.get("transcript")

        logger.info(
            "Parsing Retell event",
            extra={"provider_call_id": payload.get("call_id"), "event": event, "end_state": end_state},
        )

        return self._build_event(
            payload,
            provider_call_id=payload.get("call_id"),
            event=event,
            status=status,
            timestamp=epoch_to_datetime(payload.get("timestamp"), millis=False),
            summary=summary_or_transcript(analysis.get("summary"), transcript),
            transcript_url=payload.get("recording_url"),
            transcript=transcript,
            metadata={"end_state": end_state, "analysis": analysis or None},
        )


def build_business_context(profile: BusinessProfile) -> dict[str, str]:
    """Dynamic variables Retell substitutes into the agent prompt."""
    return {
        "business_name": profile.business_name or "Business",
        "services": ", ".join(profile.services) or "General services",
        "hours": json.dumps(profile.hours) if profile.hours else "Contact for hours",
        "pricing_notes": ", ".join(profile.pricing_notes) or "Contact for pricing",
        "faq_questions": " | ".join(profile.faqs),
        "qualifying_questions": " | ".join(profile.qualifying_questions),
        "prohibited_claims": ", ".join(profile.prohibited_claims),
        "coverage_area": profile.coverage_area or "Local area",
    }
