"""
Demo flow API: create a session, place calls, poll status.

Calls are recorded here before any provider webhook can arrive, so the
webhook pipeline always has a row to update.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Body, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from voicedemo.calls.service import CallService
from voicedemo.config import Settings
from voicedemo.dependencies import get_app_settings, get_twilio_adapter, get_voice_registry
from voicedemo.demo.schemas import (
    CallResponse,
    CarrierCallRequest,
    DemoSessionResponse,
    DemoStatusResponse,
    PlaceCallRequest,
    StartDemoRequest,
)
from voicedemo.shared.database import SessionScope, get_db_session, get_session_scope
from voicedemo.shared.exceptions import TransientProviderFailure
from voicedemo.shared.logging import get_logger, redact_pii
from voicedemo.telephony.twilio_adapter import TwilioAdapter
from voicedemo.voice.registry import VoiceProviderRegistry

logger = get_logger(__name__)

router = APIRouter(prefix="/api/demo", tags=["demo"])


def get_call_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> CallService:
    return CallService(session)


@router.post("/start", response_model=DemoSessionResponse, status_code=status.HTTP_201_CREATED)
async def start_demo(
    settings: Annotated[Settings, Depends(get_app_settings)],
    service: Annotated[CallService, Depends(get_call_service)],
    body: Annotated[StartDemoRequest | None, Body()] = None,
) -> DemoSessionResponse:
    """Create a DRAFT demo session for the active provider."""
    body = body or StartDemoRequest()
    demo = await service.create_demo_session(
        provider=settings.voice_provider,
        ttl_hours=settings.demo_ttl_hours,
        business_profile=body.profile.model_dump(exclude_none=True) if body.profile else None,
        provider_agent_id=body.agent_id,
    )
    return DemoSessionResponse.model_validate(demo)


@router.post(
    "/{session_id}/call",
    response_model=CallResponse,
    responses={
        404: {"description": "Demo session not found"},
        502: {"description": "Voice provider refused the call"},
    },
)
async def place_call(
    session_id: UUID,
    body: PlaceCallRequest,
    registry: Annotated[VoiceProviderRegistry, Depends(get_voice_registry)],
    session_scope: Annotated[SessionScope, Depends(get_session_scope)],
) -> CallResponse:
    """Place a call through the active voice provider.

    The FAILED call and session are committed before the provider error
    is reported, so status polling sees the failure.
    """
    provider = registry.get_active_provider()
    failure: TransientProviderFailure | None = None

    async with session_scope() as session:
        try:
            call = await CallService(session).start_call(
                session_id,
                provider,
                body.phone_e164,
                body.profile,
                body.agent_id,
            )
        except TransientProviderFailure as e:
            failure = e
        else:
            response = CallResponse.model_validate(call)

    if failure is not None:
        raise failure
    return response


@router.post(
    "/{session_id}/test-call",
    response_model=CallResponse,
    responses={
        404: {"description": "Demo session not found"},
        502: {"description": "Carrier refused the call"},
    },
)
async def place_test_call(
    session_id: UUID,
    body: CarrierCallRequest,
    adapter: Annotated[TwilioAdapter, Depends(get_twilio_adapter)],
    service: Annotated[CallService, Depends(get_call_service)],
) -> CallResponse:
    """Ring a number through Twilio; the carrier webhooks bridge it to the agent."""
    await service.require_session(session_id)
    from_number = body.from_number or adapter.config.twilio_from_number or None

    logger.info(
        "Test call requested",
        extra={"session_id": str(session_id), "to": redact_pii(body.phone_e164)},
    )
    call_sid = await adapter.place_outbound_call(body.phone_e164, from_number, str(session_id))
    call = await service.record_carrier_call(session_id, call_sid, body.phone_e164, from_number)
    return CallResponse.model_validate(call)


@router.get("/status/{session_id}", response_model=DemoStatusResponse)
async def get_demo_status(
    session_id: UUID,
    service: Annotated[CallService, Depends(get_call_service)],
) -> DemoStatusResponse:
    """Session status plus its most recent call."""
    demo = await service.require_session(session_id)
    call = await service.calls.get_latest_for_session(demo.id)
    return DemoStatusResponse(
        session=DemoSessionResponse.model_validate(demo),
        call=CallResponse.model_validate(call) if call is not None else None,
    )
