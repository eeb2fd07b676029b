"""
Vapi voice provider adapter.
"""

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

VAPI_STATUS_MAP: dict[str, CallStatus] = {
    "queued": CallStatus.QUEUED,
    "ringing": CallStatus.RINGING,
    "in-progress": CallStatus.IN_PROGRESS,
    "forwarding": CallStatus.IN_PROGRESS,
    "completed": CallStatus.COMPLETED,
    "failed": CallStatus.FAILED,
}

_ERROR_REASON_MARKERS = ("error", "failed", "fault")


def map_call_status(status: str | None, ended_reason: str | None = None) -> CallStatus:
    """Map a Vapi call status (and ended reason, for ``ended``) onto CallStatus."""
    value = (status or "").lower()
    if value == "ended":
        reason = (ended_reason or "").lower()
        if any(marker in reason for marker in _ERROR_REASON_MARKERS):
            return CallStatus.FAILED
        return CallStatus.COMPLETED
    return VAPI_STATUS_MAP.get(value, CallStatus.UNKNOWN)


class VapiProvider(VoiceProvider):
    """Vapi: calls via POST /call, timestamps in epoch milliseconds."""

    name = "vapi"
    base_url = "https://api.vapi.ai"
    signature_header = "x-vapi-signature"

    default_assistant_id = "asst-default"
    default_phone_number_id = "phone-default"
    max_duration_seconds = 300

    async def _create_call(
        self,
        session_id: str,
        phone_e164: str,
        profile: BusinessProfile,
        agent_id: str | None,
    ) -> str:
        business_name = profile.business_name or "our business"
        body = {
            "phoneNumberId": self.default_phone_number_id,
            "assistantId": agent_id or self.default_assistant_id,
            "customer": {"number": phone_e164},
            "metadata": {"session_id": session_id},
            "assistantOverrides": {
                "firstMessage": (
                    f"Hello! I'm calling from {business_name}. How can I help you today?"
                ),
                "voicemailDetection": True,
                "maxDurationSeconds": self.max_duration_seconds,
                "systemMessage": build_system_message(profile),
            },
        }
        data = await self._post_json("/call", body)

        call_id = data.get("id")
        if not call_id:
            raise CallInitiationError(
                message="No call ID returned from Vapi API",
                provider=self.name,
                error_code="MISSING_CALL_ID",
            )
        return str(call_id)

    def parse_event(self, payload: dict[str, Any]) -> ProviderEvent:
        call = payload.get("call") if isinstance(payload.get("call"), dict) else {}
        messages = call.get("messages") or []
        analysis = call.get("analysis") if isinstance(call.get("analysis"), dict) else {}

        transcript = call.get("transcript") or ""
        if not transcript and messages:
            transcript = "\n".join(
                f"{m.get('role', '')}: {m.get('message', '')}"
                for m in messages
                if isinstance(m, dict)
            )

        logger.info(
            "Parsing Vapi event",
            extra={
                "provider_call_id": call.get("id"),
                "type": payload.get("type"),
                "status": call.get("status"),
            },
        )

        return self._build_event(
            payload,
            provider_call_id=call.get("id"),
            event=payload.get("type"),
            status=map_call_status(call.get("status"), call.get("endedReason")),
            timestamp=epoch_to_datetime(payload.get("timestamp"), millis=True),
            summary=summary_or_transcript(analysis.get("summary"), transcript),
            transcript_url=call.get("recordingUrl"),
            transcript=transcript or None,
            metadata={
                "status": call.get("status"),
                "endedReason": call.get("endedReason"),
                "analysis": analysis or None,
                "messageCount": len(messages),
            },
        )


def build_system_message(profile: BusinessProfile) -> str:
    """System prompt for the Vapi assistant built from the business profile."""
    business_name = profile.business_name or "our business"
    lines = [
        f"You are a professional AI assistant calling on behalf of {business_name}.",
        "",
        "Business Information:",
        f"- Services: {', '.join(profile.services) or 'general services'}",
        f"- Coverage Area: {profile.coverage_area or 'the local area'}",
        f"- Brand Voice: {profile.brand_voice}",
        "",
        "Guidelines:",
        "- Be professional and helpful",
        "- Ask qualifying questions to understand customer needs",
        "- If appropriate, offer to schedule a consultation or service",
        "- Keep the conversation focused and concise",
    ]
    if profile.qualifying_questions:
        lines += ["", f"Sample questions to ask: {', '.join(profile.qualifying_questions)}"]
    if profile.prohibited_claims:
        lines += ["", f"Things to avoid: {', '.join(profile.prohibited_claims)}"]
    return "\n".join(lines)
