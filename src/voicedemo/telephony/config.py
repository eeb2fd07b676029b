"""
Telephony (Twilio) configuration.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

WEBHOOK_PREFIX = "/api/voice/webhooks/twilio"


class TelephonyConfig(BaseSettings):
    """Twilio carrier configuration from environment."""

    model_config = SettingsConfigDict(
        env_prefix="TELEPHONY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Provider credentials
    twilio_account_sid: str = Field(default="")
    twilio_auth_token: str = Field(default="")
    twilio_from_number: str = Field(default="")

    # Public base URL Twilio uses to reach this service
    webhook_base_url: str = Field(default="http://localhost:8000")

    # wss:// URL Twilio streams call audio to; derived from webhook_base_url when empty
    media_stream_url: str = Field(
        default="",
        description="Public WSS URL for Twilio <Connect><Stream>.",
    )

    call_timeout_seconds: int = Field(default=60, ge=10, le=300)

    validate_signatures: bool = Field(
        default=False,
        description="Check X-Twilio-Signature on carrier webhooks.",
    )

    def get_webhook_url(self, path: str = WEBHOOK_PREFIX) -> str:
        base = self.webhook_base_url.rstrip("/")
        return f"{base}{path}"

    def get_media_stream_url(self) -> str:
        if self.media_stream_url:
            return self.media_stream_url
        base = self.webhook_base_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}{WEBHOOK_PREFIX}/stream"


@lru_cache(maxsize=1)
def get_telephony_config() -> TelephonyConfig:
    return TelephonyConfig()
