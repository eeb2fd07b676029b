"""
FastAPI router for voice provider webhooks (JSON bodies, signed).

Errors are raised as AppException subclasses and rendered by the
application's exception handlers:
401 bad signature, 400 malformed payload, 404 unknown call.
"""

from __future__ import annotations

import json
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from voicedemo.config import Settings
from voicedemo.dependencies import get_app_settings, get_voice_registry
from voicedemo.shared.correlation import request_id_for
from voicedemo.shared.database import get_db_session
from voicedemo.shared.exceptions import AuthenticationFailure, ValidationFailure
from voicedemo.shared.logging import get_logger, truncate_payload
from voicedemo.voice.interface import VoiceProvider, signature_from_headers
from voicedemo.voice.registry import VoiceProviderRegistry
from voicedemo.voice.webhooks.handler import ProviderEventHandler

logger = get_logger(__name__)

router = APIRouter(prefix="/api/voice/webhooks", tags=["voice-webhooks"])


def get_active_provider(
    registry: Annotated[VoiceProviderRegistry, Depends(get_voice_registry)],
) -> VoiceProvider:
    return registry.get_active_provider()


def get_awaz_provider(
    registry: Annotated[VoiceProviderRegistry, Depends(get_voice_registry)],
) -> VoiceProvider:
    return registry.get("awaz")


def get_event_handler(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> ProviderEventHandler:
    return ProviderEventHandler(session=session)


async def process_provider_webhook(
    request: Request,
    provider: VoiceProvider,
    settings: Settings,
    handler: ProviderEventHandler,
) -> dict[str, Any]:
    """Verify, parse and apply one provider webhook."""
    raw_body = await request.body()
    signature = signature_from_headers(request.headers, (provider.signature_header,))

    if not provider.verify_webhook(signature, raw_body, settings.webhook_secret_for(provider.name)):
        logger.warning(
            "Webhook signature rejected",
            extra={"provider": provider.name, "has_signature": bool(signature)},
        )
        raise AuthenticationFailure(details={"provider": provider.name})

    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError as e:
        logger.warning(
            "Webhook body is not JSON",
            extra={"provider": provider.name, "payload": truncate_payload(raw_body)},
        )
        raise ValidationFailure(message="Webhook body is not valid JSON", field="body") from e
    if not isinstance(payload, dict):
        raise ValidationFailure(message="Webhook body must be a JSON object", field="body")

    event = provider.parse_event(payload)
    outcome = await handler.handle_event(event)

    return {
        "success": True,
        "requestId": request_id_for(request),
        "dedupeKey": outcome.dedupe_key,
        "created": outcome.created,
    }


@router.post("", status_code=status.HTTP_200_OK)
async def receive_provider_webhook(
    request: Request,
    provider: Annotated[VoiceProvider, Depends(get_active_provider)],
    settings: Annotated[Settings, Depends(get_app_settings)],
    handler: Annotated[ProviderEventHandler, Depends(get_event_handler)],
) -> dict[str, Any]:
    """Webhook for the active voice provider."""
    return await process_provider_webhook(request, provider, settings, handler)


@router.post("/awaz", status_code=status.HTTP_200_OK)
async def receive_awaz_webhook(
    request: Request,
    provider: Annotated[VoiceProvider, Depends(get_awaz_provider)],
    settings: Annotated[Settings, Depends(get_app_settings)],
    handler: Annotated[ProviderEventHandler, Depends(get_event_handler)],
) -> dict[str, Any]:
    """Webhook endpoint registered in the Awaz dashboard."""
    return await process_provider_webhook(request, provider, settings, handler)
