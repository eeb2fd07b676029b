"""
FastAPI router for Twilio carrier webhooks.

Twilio disables numbers that keep answering with non-2xx, so every form
endpoint here answers 200 (TwiML or "OK") even when processing fails;
failures are logged instead. The audio poll endpoint is for our own
playback component and reports 400/404 normally.
"""

from __future__ import annotations

import base64
import binascii
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field, ValidationError

from voicedemo.calls.repository import CallRepository, DemoSessionRepository
from voicedemo.calls.service import CallService
from voicedemo.calls.state import CallStatus
from voicedemo.config import Settings
from voicedemo.dependencies import (
    get_app_settings,
    get_media_bridge,
    get_socket_manager,
    get_telephony_settings,
    get_twilio_adapter,
)
from voicedemo.media.sockets import AudioSocketManager
from voicedemo.media.streams import MediaStreamBridge
from voicedemo.shared.database import SessionScope, get_session_scope
from voicedemo.shared.exceptions import TransientProviderFailure, ValidationFailure
from voicedemo.shared.logging import get_logger
from voicedemo.telephony import twiml
from voicedemo.telephony.config import WEBHOOK_PREFIX, TelephonyConfig
from voicedemo.telephony.twilio_adapter import TwilioAdapter, map_twilio_status

logger = get_logger(__name__)

router = APIRouter(prefix=WEBHOOK_PREFIX, tags=["twilio-webhooks"])


async def _read_form(request: Request, adapter: TwilioAdapter) -> dict[str, Any] | None:
    """Form fields of a carrier post, or None when its signature is rejected."""
    raw_body = await request.body()
    config = adapter.config
    if config.validate_signatures:
        url = config.get_webhook_url(request.url.path)
        if request.url.query:
            url = f"{url}?{request.url.query}"
        signature = request.headers.get("x-twilio-signature", "")
        if not adapter.validate_webhook_signature(raw_body, signature, url):
            logger.warning("Twilio signature rejected", extra={"path": request.url.path})
            return None

    try:
        return dict(await request.form())
    except Exception:
        logger.warning("Unreadable Twilio form body", extra={"path": request.url.path})
        return {}


async def _lookup_call_context(
    session_scope: SessionScope,
    call_sid: str,
) -> tuple[str | None, str | None]:
    """(session id, provider agent id) of the call bridged over ``call_sid``."""
    async with session_scope() as session:
        calls = await CallRepository(session).list_by_twilio_call_sid(call_sid)
        if not calls:
            return None, None
        demo = await DemoSessionRepository(session).get_by_id(calls[0].demo_session_id)
        agent_id = demo.provider_agent_id if demo is not None else None
        return str(calls[0].demo_session_id), agent_id


async def _stream_response(
    request: Request,
    form: dict[str, Any],
    settings: Settings,
    telephony: TelephonyConfig,
    session_scope: SessionScope,
    greeting: str,
) -> Response:
    call_sid = str(form.get("CallSid") or "")
    session_id = request.query_params.get("sessionId")
    agent_id = None
    try:
        found_session, agent_id = await _lookup_call_context(session_scope, call_sid)
        session_id = session_id or found_session
    except Exception:
        logger.exception("Call lookup failed; using default agent", extra={"call_sid": call_sid})

    return twiml.twiml_response(
        twiml.say(greeting),
        twiml.connect_stream(
            telephony.get_media_stream_url(),
            {
                "callSid": call_sid,
                "sessionId": session_id or call_sid,
                "agentId": agent_id or settings.awaz_agent_id,
            },
        ),
    )


@router.post("")
async def twilio_voice_webhook(
    request: Request,
    adapter: Annotated[TwilioAdapter, Depends(get_twilio_adapter)],
    settings: Annotated[Settings, Depends(get_app_settings)],
    telephony: Annotated[TelephonyConfig, Depends(get_telephony_settings)],
    session_scope: Annotated[SessionScope, Depends(get_session_scope)],
) -> Response:
    """Call lifecycle webhook; answers TwiML."""
    try:
        form = await _read_form(request, adapter)
        if form is None:
            return twiml.twiml_response()

        call_sid = form.get("CallSid")
        call_status = str(form.get("CallStatus") or "").lower()
        direction = str(form.get("Direction") or "").lower()
        logger.info(
            "Twilio lifecycle webhook",
            extra={"call_sid": call_sid, "call_status": call_status, "direction": direction},
        )

        match call_status:
            case "ringing":
                return twiml.twiml_response(twiml.say(twiml.HOLD_MESSAGE))
            case "in-progress" if direction == "inbound":
                return await _stream_response(
                    request, form, settings, telephony, session_scope, twiml.INBOUND_GREETING
                )
            case "in-progress":
                gather_url = telephony.get_webhook_url(f"{WEBHOOK_PREFIX}/gather")
                if request.url.query:
                    gather_url = f"{gather_url}?{request.url.query}"
                return twiml.twiml_response(
                    twiml.say(twiml.OUTBOUND_GREETING),
                    twiml.gather(gather_url, twiml.GATHER_PROMPT),
                    twiml.say(twiml.GOODBYE_MESSAGE),
                )
            case "completed":
                logger.info("Call completed", extra={"call_sid": call_sid})
                return twiml.plain_ok()
            case _:
                return twiml.twiml_response(twiml.say(twiml.RETRY_MESSAGE))
    except Exception:
        logger.exception("Twilio lifecycle webhook failed (answering 200)")
        return twiml.twiml_response(twiml.say(twiml.APOLOGY_MESSAGE))


@router.post("/gather")
async def twilio_gather_webhook(
    request: Request,
    adapter: Annotated[TwilioAdapter, Depends(get_twilio_adapter)],
    settings: Annotated[Settings, Depends(get_app_settings)],
    telephony: Annotated[TelephonyConfig, Depends(get_telephony_settings)],
    session_scope: Annotated[SessionScope, Depends(get_session_scope)],
) -> Response:
    """Digit menu result: 1 connects the AI agent, anything else hangs up."""
    try:
        form = await _read_form(request, adapter)
        if form is None:
            return twiml.twiml_response()

        digits = str(form.get("Digits") or "")
        logger.info("Twilio gather webhook", extra={"call_sid": form.get("CallSid"), "digits": digits})
        if digits == "1":
            return await _stream_response(
                request, form, settings, telephony, session_scope, twiml.CONNECT_MESSAGE
            )
        return twiml.twiml_response(twiml.say(twiml.GOODBYE_MESSAGE), twiml.hangup())
    except Exception:
        logger.exception("Twilio gather webhook failed (answering 200)")
        return twiml.twiml_response(twiml.say(twiml.APOLOGY_MESSAGE))


@router.post("/status")
async def twilio_status_callback(
    request: Request,
    adapter: Annotated[TwilioAdapter, Depends(get_twilio_adapter)],
    session_scope: Annotated[SessionScope, Depends(get_session_scope)],
) -> Response:
    """Status callback: apply the carrier status to the bridged call."""
    try:
        form = await _read_form(request, adapter)
        if form is None:
            return twiml.plain_ok()

        call_sid = str(form.get("CallSid") or "")
        raw_status = str(form.get("CallStatus") or "")
        status = map_twilio_status(raw_status)
        duration = form.get("CallDuration")
        logger.info(
            "Twilio status callback",
            extra={"call_sid": call_sid, "call_status": raw_status, "duration": duration},
        )
        if not call_sid or status is CallStatus.UNKNOWN:
            return twiml.plain_ok()

        duration_sec = int(duration) if duration and str(duration).isdigit() else None
        async with session_scope() as session:
            await CallService(session).apply_carrier_status(call_sid, status, duration_sec)
    except Exception:
        logger.exception("Twilio status callback failed (answering 200)")
    return twiml.plain_ok()


@router.post("/stream")
async def twilio_stream_webhook(
    request: Request,
    adapter: Annotated[TwilioAdapter, Depends(get_twilio_adapter)],
    settings: Annotated[Settings, Depends(get_app_settings)],
    bridge: Annotated[MediaStreamBridge, Depends(get_media_bridge)],
    sockets: Annotated[AudioSocketManager, Depends(get_socket_manager)],
    session_scope: Annotated[SessionScope, Depends(get_session_scope)],
) -> Response:
    """Media stream events: start opens the bridge, media forwards audio, stop tears down."""
    try:
        form = await _read_form(request, adapter)
        if form is None:
            return twiml.plain_ok()

        call_sid = str(form.get("CallSid") or "")
        stream_sid = str(form.get("StreamSid") or "")
        event = str(form.get("Event") or "").lower()
        if not call_sid or not stream_sid:
            logger.warning("Stream event without CallSid/StreamSid", extra={"event": event})
            return twiml.plain_ok()

        match event:
            case "start":
                await _on_stream_start(call_sid, stream_sid, settings, bridge, sockets, session_scope)
            case "media":
                await _on_stream_media(call_sid, stream_sid, form, sockets)
            case "stop":
                await _on_stream_stop(call_sid, stream_sid, sockets, session_scope)
            case _:
                logger.info("Unknown stream event", extra={"call_sid": call_sid, "event": event})
    except Exception:
        logger.exception("Twilio stream webhook failed (answering 200)")
    return twiml.plain_ok()


async def _on_stream_start(
    call_sid: str,
    stream_sid: str,
    settings: Settings,
    bridge: MediaStreamBridge,
    sockets: AudioSocketManager,
    session_scope: SessionScope,
) -> None:
    agent_id = settings.awaz_agent_id
    try:
        _, found_agent = await _lookup_call_context(session_scope, call_sid)
        agent_id = found_agent or agent_id
    except Exception:
        logger.exception("Call lookup failed; using default agent", extra={"call_sid": call_sid})

    logger.info(
        "Media stream started",
        extra={"call_sid": call_sid, "stream_sid": stream_sid, "agent_id": agent_id},
    )
    bridge.create_stream(call_sid, stream_sid)
    try:
        await sockets.create_connection(call_sid, stream_sid, agent_id)
    except TransientProviderFailure as e:
        # The call continues without an agent; stop or timeout cleans up.
        logger.error(
            "Voice backend unreachable for stream",
            extra={"call_sid": call_sid, "stream_sid": stream_sid, "error": e.message},
        )


async def _on_stream_media(
    call_sid: str,
    stream_sid: str,
    form: dict[str, Any],
    sockets: AudioSocketManager,
) -> None:
    payload = form.get("MediaPayload")
    if not payload:
        return
    try:
        frame = base64.b64decode(str(payload), validate=True)
    except (binascii.Error, ValueError):
        logger.error(
            "Undecodable media payload",
            extra={"call_sid": call_sid, "sequence": form.get("SequenceNumber")},
        )
        return
    await sockets.send_audio(call_sid, stream_sid, frame)


async def _on_stream_stop(
    call_sid: str,
    stream_sid: str,
    sockets: AudioSocketManager,
    session_scope: SessionScope,
) -> None:
    logger.info("Media stream stopped", extra={"call_sid": call_sid, "stream_sid": stream_sid})
    await sockets.teardown(call_sid, stream_sid)
    async with session_scope() as session:
        await CallService(session).apply_carrier_status(call_sid, CallStatus.COMPLETED)


class QueueAudioRequest(BaseModel):
    callSid: str = Field(..., min_length=1)
    streamSid: str = Field(..., min_length=1)
    audioData: str = Field(..., min_length=1)


@router.get("/audio")
async def poll_stream_audio(
    bridge: Annotated[MediaStreamBridge, Depends(get_media_bridge)],
    callSid: str | None = None,
    streamSid: str | None = None,
) -> dict[str, Any]:
    """Drain agent audio waiting for playback on a stream."""
    if not callSid or not streamSid:
        raise ValidationFailure(
            message="callSid and streamSid are required",
            field="callSid" if not callSid else "streamSid",
        )
    frames = bridge.get_queued_audio(callSid, streamSid)
    return {"audio": frames, "hasAudio": bool(frames), "count": len(frames)}


@router.post("/audio")
async def enqueue_stream_audio(
    request: Request,
    bridge: Annotated[MediaStreamBridge, Depends(get_media_bridge)],
) -> dict[str, Any]:
    """Queue base64 audio for playback on a stream."""
    try:
        body = QueueAudioRequest.model_validate_json(await request.body())
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        field = ".".join(str(loc) for loc in first.get("loc", ())) or None
        raise ValidationFailure(message="callSid, streamSid and audioData are required", field=field) from e

    try:
        frame = base64.b64decode(body.audioData, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationFailure(message="audioData is not valid base64", field="audioData") from e
    queued = bridge.queue_audio(body.callSid, body.streamSid, frame)
    return {"success": True, "queued": queued}
