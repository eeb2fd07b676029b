"""
Voice provider abstraction.

A voice provider is a conversational AI backend (Retell, Vapi, Awaz) that
places calls and reports their progress through webhooks. Every backend
implements the same three operations:

- ``start_call``: place an AI-driven call and return the provider's call id.
- ``verify_webhook``: authenticate an inbound webhook body.
- ``parse_event``: map the provider's webhook payload onto ``ProviderEvent``.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from voicedemo.calls.state import CallStatus
from voicedemo.shared.exceptions import TransientProviderFailure, ValidationFailure
from voicedemo.shared.logging import get_logger, redact_pii, truncate_payload

logger = get_logger(__name__)

# Header names providers use for their webhook signature, checked in order.
SIGNATURE_HEADERS: tuple[str, ...] = (
    "x-signature",
    "x-retell-signature",
    "x-vapi-signature",
    "x-awaz-signature",
)

SUMMARY_FALLBACK_CHARS = 500


class CallInitiationError(TransientProviderFailure):
    """A provider's call-creation API failed or returned no call id."""

    def __init__(
        self,
        message: str,
        provider: str,
        error_code: str = "CALL_INITIATION_FAILED",
        provider_response: Any = None,
    ) -> None:
        super().__init__(
            message=message,
            provider=provider,
            code=error_code,
            details={"provider_response": provider_response} if provider_response else None,
        )
        self.error_code = error_code
        self.provider_response = provider_response


class BusinessProfile(BaseModel):
    """Business profile handed to the voice agent as call context."""

    model_config = ConfigDict(extra="allow")

    brand_voice: str = Field(..., min_length=1)
    services: list[str] = Field(default_factory=list)
    coverage_area: str | None = None
    hours: dict[str, str] | None = None
    pricing_notes: list[str] = Field(default_factory=list)
    booking_rules: list[str] = Field(default_factory=list)
    faqs: list[str] = Field(default_factory=list)
    qualifying_questions: list[str] = Field(default_factory=list)
    prohibited_claims: list[str] = Field(default_factory=list)

    @property
    def business_name(self) -> str | None:
        """Brand voices are written as "<Name>: <tone>"; the name is the prefix."""
        name = self.brand_voice.split(":", 1)[0].strip()
        return name or None


class ProviderEvent(BaseModel):
    """Canonical shape of one provider webhook notification."""

    provider: str = Field(..., min_length=1)
    provider_call_id: str = Field(..., min_length=1)
    session_id: str | None = None
    event: str = Field(..., min_length=1)
    status: CallStatus = CallStatus.UNKNOWN
    timestamp: datetime
    summary: str | None = None
    transcript_url: str | None = None
    transcript: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @property
    def timestamp_iso(self) -> str:
        """ISO-8601 UTC with millisecond precision, e.g. 2024-01-15T10:30:00.000Z."""
        return self.timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    @property
    def dedupe_key(self) -> str:
        return f"{self.provider}:{self.provider_call_id}:{self.event}:{self.timestamp_iso}"

    def with_session(self, session_id: str) -> ProviderEvent:
        return self.model_copy(update={"session_id": session_id})


def signature_from_headers(
    headers: Mapping[str, str],
    preferred: tuple[str, ...] = (),
) -> str | None:
    """Return the first signature header present, trying ``preferred`` names first."""
    for name in (*preferred, *SIGNATURE_HEADERS):
        value = headers.get(name)
        if value:
            return value
    return None


def hmac_sha256_matches(signature: str, raw_body: bytes, secret: str) -> bool:
    """Constant-time check of a hex HMAC-SHA256 signature (optional ``sha256=`` prefix)."""
    candidate = signature.strip()
    if candidate.lower().startswith("sha256="):
        candidate = candidate[len("sha256="):]
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, candidate.lower())


def epoch_to_datetime(value: Any, *, millis: bool) -> datetime | None:
    """Convert an epoch number (seconds or milliseconds) to an aware datetime.

    Returns None for values that are not a representable epoch.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if millis:
        number /= 1000.0
    try:
        return datetime.fromtimestamp(number, tz=timezone.utc)
    except (OverflowError, ValueError, OSError):
        # inf, nan and out-of-range epochs
        return None


class VoiceProvider(ABC):
    """Base class for voice backends.

    Outside production ``start_call`` returns a synthetic id without touching
    the network and ``verify_webhook`` accepts every request.
    """

    name: str = ""
    base_url: str = ""
    signature_header: str = "x-signature"

    def __init__(
        self,
        api_key: str,
        *,
        production: bool = False,
        http_client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        clock: Callable[[], float] = time.time,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._production = production
        self._http_client = http_client
        self._owns_client = http_client is None
        self._clock = clock
        self._timeout = timeout_seconds
        if base_url:
            self.base_url = base_url.rstrip("/")

    @property
    def production(self) -> bool:
        return self._production

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))
        return self._http_client

    async def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def synthetic_call_id(self, session_id: str) -> str:
        return f"{self.name}-dev-{session_id}-{int(self._clock() * 1000)}"

    async def start_call(
        self,
        session_id: str,
        phone_e164: str,
        profile: BusinessProfile,
        agent_id: str | None = None,
    ) -> str:
        """Place an AI-driven call and return the provider-assigned call id."""
        logger.info(
            "Starting voice provider call",
            extra={
                "provider": self.name,
                "session_id": session_id,
                "phone": redact_pii(phone_e164),
            },
        )
        if not self._production:
            call_id = self.synthetic_call_id(session_id)
            logger.info(
                "Using synthetic provider call id outside production",
                extra={"provider": self.name, "provider_call_id": call_id},
            )
            return call_id

        call_id = await self._create_call(session_id, phone_e164, profile, agent_id)
        logger.info(
            "Voice provider call started",
            extra={"provider": self.name, "provider_call_id": call_id, "session_id": session_id},
        )
        return call_id

    @abstractmethod
    async def _create_call(
        self,
        session_id: str,
        phone_e164: str,
        profile: BusinessProfile,
        agent_id: str | None,
    ) -> str:
        """Call the backend's REST API; return the new call id."""

    def verify_webhook(self, signature: str | None, raw_body: bytes, secret: str | None) -> bool:
        """Authenticate a webhook body with hex HMAC-SHA256 over the raw bytes."""
        if not self._production:
            logger.debug(
                "Skipping webhook signature verification outside production",
                extra={"provider": self.name},
            )
            return True

        if not secret:
            logger.error(
                "No webhook secret configured; rejecting webhook",
                extra={"provider": self.name},
            )
            return False

        if not signature:
            logger.warning("Webhook signature header missing", extra={"provider": self.name})
            return False

        return hmac_sha256_matches(signature, raw_body, secret)

    @abstractmethod
    def parse_event(self, payload: dict[str, Any]) -> ProviderEvent:
        """Map a provider webhook payload onto ProviderEvent."""

    def _build_event(self, payload: Any, **data: Any) -> ProviderEvent:
        """Validate ``data`` as a ProviderEvent; schema errors become ValidationFailure."""
        try:
            return ProviderEvent(provider=self.name, **data)
        except ValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            field = ".".join(str(loc) for loc in first.get("loc", ())) or None
            logger.warning(
                "Rejected malformed provider webhook",
                extra={
                    "provider": self.name,
                    "field": field,
                    "payload": truncate_payload(payload),
                },
            )
            raise ValidationFailure(
                message=f"Invalid {self.name} webhook payload: {first.get('msg', 'schema mismatch')}",
                field=field,
            ) from e

    async def _post_json(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        client = self._get_client()
        try:
            response = await client.post(
                f"{self.base_url}{path}",
                json=body,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            logger.exception("HTTP error during call initiation", extra={"provider": self.name})
            raise CallInitiationError(
                message=f"HTTP error: {e!s}",
                provider=self.name,
                error_code="HTTP_ERROR",
            ) from e

        if response.status_code >= 400:
            logger.error(
                "Voice provider call initiation failed",
                extra={
                    "provider": self.name,
                    "status_code": response.status_code,
                    "response": truncate_payload(response.text),
                },
            )
            raise CallInitiationError(
                message=f"{self.name} API error: {response.status_code}",
                provider=self.name,
                error_code=str(response.status_code),
                provider_response=truncate_payload(response.text),
            )

        try:
            data = response.json()
        except ValueError as e:
            raise CallInitiationError(
                message=f"{self.name} API returned a non-JSON body",
                provider=self.name,
                error_code="BAD_RESPONSE",
            ) from e
        return data if isinstance(data, dict) else {}


def summary_or_transcript(summary: str | None, transcript: str | None) -> str | None:
    if summary:
        return summary
    if transcript:
        return transcript[:SUMMARY_FALLBACK_CHARS]
    return None
