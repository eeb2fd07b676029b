"""
Twilio carrier adapter.

Places outbound calls through the Twilio REST API and validates
X-Twilio-Signature on carrier webhooks.
"""

from __future__ import annotations

import hashlib
import hmac
from base64 import b64encode
from urllib.parse import parse_qs, urlencode

import anyio
import httpx

from voicedemo.calls.state import CallStatus
from voicedemo.shared.exceptions import TransientProviderFailure
from voicedemo.shared.logging import get_logger, redact_pii
from voicedemo.telephony.config import WEBHOOK_PREFIX, TelephonyConfig, get_telephony_config

logger = get_logger(__name__)

TWILIO_STATUS_MAP: dict[str, CallStatus] = {
    "queued": CallStatus.QUEUED,
    "initiated": CallStatus.INITIATED,
    "ringing": CallStatus.RINGING,
    "in-progress": CallStatus.IN_PROGRESS,
    "answered": CallStatus.IN_PROGRESS,
    "completed": CallStatus.COMPLETED,
    "busy": CallStatus.FAILED,
    "no-answer": CallStatus.FAILED,
    "failed": CallStatus.FAILED,
    "canceled": CallStatus.FAILED,
}


def map_twilio_status(value: str | None) -> CallStatus:
    return TWILIO_STATUS_MAP.get((value or "").strip().lower(), CallStatus.UNKNOWN)


class CarrierCallError(TransientProviderFailure):
    """Twilio refused or failed to place a call."""

    def __init__(self, message: str, error_code: str, provider_response: dict | None = None) -> None:
        super().__init__(
            message=message,
            provider="twilio",
            code=error_code,
            details={"provider_response": provider_response} if provider_response else None,
        )
        self.error_code = error_code
        self.provider_response = provider_response or {}


class TwilioAdapter:
    """Twilio REST client (sync httpx, exposed to async callers via a worker thread)."""

    def __init__(
        self,
        config: TelephonyConfig | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._config = config or get_telephony_config()
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def config(self) -> TelephonyConfig:
        return self._config

    def _get_client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=httpx.Timeout(30.0))
        return self._http_client

    def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    def _get_auth(self) -> tuple[str, str]:
        return (self._config.twilio_account_sid, self._config.twilio_auth_token)

    def _get_api_url(self, endpoint: str) -> str:
        account_sid = self._config.twilio_account_sid
        return f"https://api.twilio.com/2010-04-01/Accounts/{account_sid}{endpoint}"

    async def place_outbound_call(
        self,
        to: str,
        from_number: str | None = None,
        session_id: str | None = None,
    ) -> str:
        """Place an outbound call; returns the Twilio CallSid."""
        return await anyio.to_thread.run_sync(
            self.place_outbound_call_sync,
            to,
            from_number,
            session_id,
        )

    def place_outbound_call_sync(
        self,
        to: str,
        from_number: str | None = None,
        session_id: str | None = None,
    ) -> str:
        client = self._get_client()
        query = f"?{urlencode({'sessionId': session_id})}" if session_id else ""
        payload = {
            "To": to,
            "From": from_number or self._config.twilio_from_number,
            "Url": self._config.get_webhook_url() + query,
            "Method": "POST",
            "StatusCallback": self._config.get_webhook_url(f"{WEBHOOK_PREFIX}/status"),
            "StatusCallbackEvent": ["initiated", "ringing", "answered", "completed"],
            "StatusCallbackMethod": "POST",
            "Timeout": self._config.call_timeout_seconds,
        }

        logger.info(
            "Placing Twilio outbound call",
            extra={"to": redact_pii(to), "session_id": session_id},
        )

        try:
            response = client.post(
                self._get_api_url("/Calls.json"),
                data=payload,
                auth=self._get_auth(),
            )
        except httpx.HTTPError as e:
            logger.exception("HTTP error during Twilio call initiation", extra={"session_id": session_id})
            raise CarrierCallError(message=f"HTTP error: {e!s}", error_code="HTTP_ERROR") from e

        if response.status_code >= 400:
            error_data = response.json() if response.content else {}
            logger.error(
                "Twilio call initiation failed",
                extra={"status_code": response.status_code, "error": error_data, "session_id": session_id},
            )
            raise CarrierCallError(
                message=error_data.get("message", "Call initiation failed"),
                error_code=str(error_data.get("code", response.status_code)),
                provider_response=error_data,
            )

        data = response.json()
        call_sid = data.get("sid")
        if not call_sid:
            raise CarrierCallError(message="Twilio returned no call sid", error_code="MISSING_CALL_SID")
        logger.info("Twilio call queued", extra={"call_sid": call_sid, "status": data.get("status")})
        return call_sid

    def validate_webhook_signature(self, payload: bytes, signature: str, url: str) -> bool:
        """Check X-Twilio-Signature: base64 HMAC-SHA1 of the URL plus sorted form params."""
        if not self._config.twilio_auth_token:
            logger.warning("No auth token configured, skipping signature validation")
            return True
        if not signature:
            return False

        try:
            params = parse_qs(payload.decode("utf-8"), keep_blank_values=True)
        except UnicodeDecodeError:
            logger.warning("Twilio webhook body is not UTF-8")
            return False
        data_str = url
        for key in sorted(params):
            for value in params[key]:
                data_str += key + value

        computed = hmac.new(
            self._config.twilio_auth_token.encode("utf-8"),
            data_str.encode("utf-8"),
            hashlib.sha1,
        ).digest()
        computed_sig = b64encode(computed).decode("utf-8")
        return hmac.compare_digest(computed_sig, signature)
