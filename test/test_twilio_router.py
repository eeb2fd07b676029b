"""
API tests for the Twilio carrier webhooks and the stream audio endpoints.
"""

import base64
import xml.etree.ElementTree as ET
from typing import Any

import pytest
from fastapi import FastAPI, status
from httpx import AsyncClient

from voicedemo.calls.models import Call, DemoSession
from voicedemo.calls.repository import CallRepository
from voicedemo.calls.state import CallStatus, SessionStatus
from voicedemo.telephony import twiml

BASE = "/api/voice/webhooks/twilio"


def _twiml(response: Any) -> ET.Element:
    return ET.fromstring(response.content)


async def _reload(session_scope: Any, call: Call) -> tuple[Call, DemoSession]:
    async with session_scope() as session:
        fresh = await CallRepository(session).get_by_id(call.id)
        demo = await session.get(DemoSession, call.demo_session_id)
        return fresh, demo


class TestLifecycleWebhook:
    @pytest.mark.asyncio
    async def test_ringing_holds(self, async_client: AsyncClient) -> None:
        response = await async_client.post(BASE, data={"CallSid": "CA1", "CallStatus": "ringing"})

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"].startswith("text/xml")
        assert twiml.HOLD_MESSAGE in response.text

    @pytest.mark.asyncio
    async def test_inbound_in_progress_connects_stream(self, async_client: AsyncClient, demo_call: Call) -> None:
        response = await async_client.post(
            BASE,
            data={"CallSid": "CA_STREAM_1", "CallStatus": "in-progress", "Direction": "inbound"},
        )

        root = _twiml(response)
        stream = root.find("Connect/Stream")
        params = {p.get("name"): p.get("value") for p in stream.findall("Parameter")}
        assert response.status_code == status.HTTP_200_OK
        assert root.find("Say").text == twiml.INBOUND_GREETING
        assert stream.get("url") == f"wss://example.com{BASE}/stream"
        assert stream.get("track") == "both_tracks"
        assert params == {
            "callSid": "CA_STREAM_1",
            "sessionId": str(demo_call.demo_session_id),
            "agentId": "agent-from-session",
        }

    @pytest.mark.asyncio
    async def test_inbound_unknown_call_uses_defaults(self, async_client: AsyncClient) -> None:
        response = await async_client.post(
            BASE,
            data={"CallSid": "CA_NEW", "CallStatus": "in-progress", "Direction": "inbound"},
        )

        stream = _twiml(response).find("Connect/Stream")
        params = {p.get("name"): p.get("value") for p in stream.findall("Parameter")}
        assert params["sessionId"] == "CA_NEW"
        assert params["agentId"] == "agent-default-test"

    @pytest.mark.asyncio
    async def test_outbound_in_progress_gathers_digit(self, async_client: AsyncClient) -> None:
        response = await async_client.post(
            f"{BASE}?sessionId=sess-1",
            data={"CallSid": "CA1", "CallStatus": "in-progress", "Direction": "outbound-api"},
        )

        root = _twiml(response)
        gather = root.find("Gather")
        assert twiml.OUTBOUND_GREETING in response.text
        assert gather.get("action") == f"https://example.com{BASE}/gather?sessionId=sess-1"
        assert gather.get("numDigits") == "1"
        assert gather.find("Say").text == twiml.GATHER_PROMPT
        assert twiml.GOODBYE_MESSAGE in response.text

    @pytest.mark.asyncio
    async def test_completed_answers_ok(self, async_client: AsyncClient) -> None:
        response = await async_client.post(BASE, data={"CallSid": "CA1", "CallStatus": "completed"})

        assert response.status_code == status.HTTP_200_OK
        assert response.text == "OK"

    @pytest.mark.asyncio
    async def test_other_status_asks_to_retry(self, async_client: AsyncClient) -> None:
        response = await async_client.post(BASE, data={"CallSid": "CA1", "CallStatus": "busy"})

        assert twiml.RETRY_MESSAGE in response.text

    @pytest.mark.asyncio
    async def test_bad_signature_acknowledged_without_processing(
        self,
        app: FastAPI,
        async_client: AsyncClient,
    ) -> None:
        app.state.twilio_adapter.config.validate_signatures = True

        response = await async_client.post(
            BASE,
            data={"CallSid": "CA1", "CallStatus": "ringing"},
            headers={"X-Twilio-Signature": "forged"},
        )

        assert response.status_code == status.HTTP_200_OK
        root = _twiml(response)
        assert root.tag == "Response"
        assert len(root) == 0


class TestGatherWebhook:
    @pytest.mark.asyncio
    async def test_digit_one_connects(self, async_client: AsyncClient) -> None:
        response = await async_client.post(f"{BASE}/gather", data={"CallSid": "CA1", "Digits": "1"})

        assert twiml.CONNECT_MESSAGE in response.text
        assert _twiml(response).find("Connect/Stream") is not None

    @pytest.mark.asyncio
    async def test_other_digit_hangs_up(self, async_client: AsyncClient) -> None:
        response = await async_client.post(f"{BASE}/gather", data={"CallSid": "CA1", "Digits": "9"})

        assert twiml.GOODBYE_MESSAGE in response.text
        assert _twiml(response).find("Hangup") is not None


class TestStatusCallback:
    @pytest.mark.asyncio
    async def test_completed_updates_call(
        self,
        async_client: AsyncClient,
        demo_call: Call,
        session_scope: Any,
    ) -> None:
        await async_client.post(f"{BASE}/status", data={"CallSid": "CA_STREAM_1", "CallStatus": "in-progress"})
        response = await async_client.post(
            f"{BASE}/status",
            data={"CallSid": "CA_STREAM_1", "CallStatus": "completed", "CallDuration": "42"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.text == "OK"
        call, demo = await _reload(session_scope, demo_call)
        assert call.status == CallStatus.COMPLETED
        assert call.duration_sec == 42
        assert call.connected_at is not None
        assert demo.status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_no_answer_fails_call(
        self,
        async_client: AsyncClient,
        demo_call: Call,
        session_scope: Any,
    ) -> None:
        await async_client.post(f"{BASE}/status", data={"CallSid": "CA_STREAM_1", "CallStatus": "no-answer"})

        call, demo = await _reload(session_scope, demo_call)
        assert call.status == CallStatus.FAILED
        assert demo.status == SessionStatus.FAILED

    @pytest.mark.asyncio
    async def test_unknown_call_still_ok(self, async_client: AsyncClient) -> None:
        response = await async_client.post(f"{BASE}/status", data={"CallSid": "CA_NOPE", "CallStatus": "completed"})

        assert response.status_code == status.HTTP_200_OK


class TestStreamWebhook:
    @pytest.mark.asyncio
    async def test_start_media_stop(
        self,
        app: FastAPI,
        async_client: AsyncClient,
        socket_connector,
        demo_call: Call,
        session_scope: Any,
    ) -> None:
        bridge = app.state.media_bridge
        sockets = app.state.socket_manager
        ids = {"CallSid": "CA_STREAM_1", "StreamSid": "MZ1"}

        start = await async_client.post(f"{BASE}/stream", data={**ids, "Event": "start"})
        assert start.status_code == status.HTTP_200_OK
        assert bridge.is_stream_active("CA_STREAM_1", "MZ1")
        assert sockets.is_connected("CA_STREAM_1", "MZ1")
        ws = socket_connector.last
        assert ws.sent[0]["data"]["agentId"] == "agent-from-session"

        payload = base64.b64encode(b"\x7f\x7f").decode()
        await async_client.post(
            f"{BASE}/stream",
            data={**ids, "Event": "media", "MediaPayload": payload, "SequenceNumber": "1"},
        )
        assert ws.sent[-1]["type"] == "audio"
        assert ws.sent[-1]["data"]["audio"] == payload

        stop = await async_client.post(f"{BASE}/stream", data={**ids, "Event": "stop"})
        assert stop.status_code == status.HTTP_200_OK
        assert ws.closed is True
        assert sockets.get_connection("CA_STREAM_1", "MZ1") is None
        assert not bridge.is_stream_active("CA_STREAM_1", "MZ1")

        call, _ = await _reload(session_scope, demo_call)
        assert call.status == CallStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_bad_media_payload_is_dropped(
        self,
        app: FastAPI,
        async_client: AsyncClient,
        socket_connector,
    ) -> None:
        ids = {"CallSid": "CA1", "StreamSid": "MZ1"}
        await async_client.post(f"{BASE}/stream", data={**ids, "Event": "start"})
        sent_before = len(socket_connector.last.sent)

        response = await async_client.post(
            f"{BASE}/stream",
            data={**ids, "Event": "media", "MediaPayload": "%%%not-base64"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert len(socket_connector.last.sent) == sent_before

    @pytest.mark.asyncio
    async def test_backend_unreachable_still_ok(
        self,
        app: FastAPI,
        async_client: AsyncClient,
        socket_connector,
    ) -> None:
        socket_connector.fail = True

        response = await async_client.post(
            f"{BASE}/stream",
            data={"CallSid": "CA1", "StreamSid": "MZ1", "Event": "start"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert app.state.media_bridge.is_stream_active("CA1", "MZ1")
        assert not app.state.socket_manager.is_connected("CA1", "MZ1")


class TestAudioEndpoints:
    @pytest.mark.asyncio
    async def test_enqueue_then_poll(self, app: FastAPI, async_client: AsyncClient) -> None:
        app.state.media_bridge.create_stream("CA1", "MZ1")
        chunk = base64.b64encode(b"agent-audio").decode()

        queued = await async_client.post(
            f"{BASE}/audio",
            json={"callSid": "CA1", "streamSid": "MZ1", "audioData": chunk},
        )
        polled = await async_client.get(f"{BASE}/audio", params={"callSid": "CA1", "streamSid": "MZ1"})
        empty = await async_client.get(f"{BASE}/audio", params={"callSid": "CA1", "streamSid": "MZ1"})

        assert queued.status_code == status.HTTP_200_OK
        assert queued.json()["success"] is True
        assert polled.json() == {"audio": [chunk], "hasAudio": True, "count": 1}
        assert empty.json() == {"audio": [], "hasAudio": False, "count": 0}

    @pytest.mark.asyncio
    async def test_poll_requires_both_ids(self, async_client: AsyncClient) -> None:
        response = await async_client.get(f"{BASE}/audio", params={"callSid": "CA1"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["details"]["field"] == "streamSid"

    @pytest.mark.asyncio
    async def test_poll_unknown_stream_is_404(self, async_client: AsyncClient) -> None:
        response = await async_client.get(f"{BASE}/audio", params={"callSid": "CA1", "streamSid": "MZ1"})

        assert response.status_code == status.HTTP_404_NOT_FOUND

    @pytest.mark.asyncio
    async def test_enqueue_validation(self, app: FastAPI, async_client: AsyncClient) -> None:
        app.state.media_bridge.create_stream("CA1", "MZ1")

        missing = await async_client.post(f"{BASE}/audio", json={"callSid": "CA1", "streamSid": "MZ1"})
        bad = await async_client.post(
            f"{BASE}/audio",
            json={"callSid": "CA1", "streamSid": "MZ1", "audioData": "@@@"},
        )
        unknown = await async_client.post(
            f"{BASE}/audio",
            json={"callSid": "CA2", "streamSid": "MZ2", "audioData": "AAAA"},
        )

        assert missing.status_code == status.HTTP_400_BAD_REQUEST
        assert missing.json()["details"]["field"] == "audioData"
        assert bad.status_code == status.HTTP_400_BAD_REQUEST
        assert unknown.status_code == status.HTTP_404_NOT_FOUND
