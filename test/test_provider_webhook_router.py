"""
API tests for the voice provider webhook endpoints.
"""

import hashlib
import hmac
import json
from typing import Any

import pytest
from fastapi import FastAPI, status
from httpx import AsyncClient

from voicedemo.calls.models import Call
from voicedemo.calls.repository import CallRepository, WebhookEventRepository
from voicedemo.calls.state import CallStatus
from voicedemo.config import Settings
from voicedemo.voice.registry import build_voice_registry

WEBHOOK_URL = "/api/voice/webhooks"


def _retell_body(event: str = "call_started", **extra: Any) -> bytes:
    payload = {"event": event, "call_id": "call_abc123", "timestamp": 1705312800, **extra}
    return json.dumps(payload).encode()


async def _call_and_ledger_count(session_scope: Any, call: Call, provider_call_id: str) -> tuple[Call, int]:
    async with session_scope() as session:
        fresh = await CallRepository(session).get_by_id(call.id)
        count = await WebhookEventRepository(session).count_for_call("retell", provider_call_id)
        return fresh, count


def _use_production(app: FastAPI, test_settings: Settings) -> None:
    prod = test_settings.model_copy(
        update={"app_env": "prod", "retell_webhook_secret": "retell-secret", "awaz_webhook_secret": ""}
    )
    app.state.settings = prod
    app.state.voice_registry = build_voice_registry(prod)


class TestProviderWebhook:
    @pytest.mark.asyncio
    async def test_applies_event_and_echoes_request_id(
        self,
        async_client: AsyncClient,
        demo_call: Call,
        session_scope: Any,
    ) -> None:
        response = await async_client.post(
            WEBHOOK_URL,
            content=_retell_body(),
            headers={"Content-Type": "application/json", "X-Request-ID": "req-123"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["X-Request-ID"] == "req-123"
        data = response.json()
        assert data == {
            "success": True,
            "requestId": "req-123",
            "dedupeKey": "retell:call_abc123:call_started:2024-01-15T10:00:00.000Z",
            "created": True,
        }

        async with session_scope() as session:
            call = await CallRepository(session).get_by_id(demo_call.id)
        assert call.status == CallStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_duplicate_delivery_reports_not_created(
        self,
        async_client: AsyncClient,
        demo_call: Call,
    ) -> None:
        first = await async_client.post(WEBHOOK_URL, content=_retell_body("call_ended"))
        second = await async_client.post(WEBHOOK_URL, content=_retell_body("call_ended"))

        assert first.json()["created"] is True
        assert second.status_code == status.HTTP_200_OK
        assert second.json()["created"] is False
        assert second.json()["dedupeKey"] == first.json()["dedupeKey"]

    @pytest.mark.asyncio
    async def test_unknown_call_is_404_without_mutation(
        self,
        async_client: AsyncClient,
        demo_call: Call,
        session_scope: Any,
    ) -> None:
        body = json.dumps(
            {"event": "call_ended", "call_id": "call_other", "timestamp": 1705312800, "end_state": "ended_by_user"}
        ).encode()

        response = await async_client.post(WEBHOOK_URL, content=body)

        assert response.status_code == status.HTTP_404_NOT_FOUND
        data = response.json()
        assert data["error"] == "NOT_FOUND"
        assert data["details"]["provider_call_id"] == "call_other"
        assert data["requestId"]

        call, other_rows = await _call_and_ledger_count(session_scope, demo_call, "call_other")
        assert other_rows == 0
        assert call.status == CallStatus.INITIATED
        assert call.last_event_at is None
        assert call.completed_at is None

    @pytest.mark.asyncio
    async def test_malformed_json_is_400(self, async_client: AsyncClient) -> None:
        response = await async_client.post(WEBHOOK_URL, content=b"{not json")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "VALIDATION_ERROR"
        assert response.json()["details"]["field"] == "body"

    @pytest.mark.asyncio
    async def test_missing_required_field_is_400(self, async_client: AsyncClient) -> None:
        body = json.dumps({"event": "call_started", "timestamp": 1705312800}).encode()

        response = await async_client.post(WEBHOOK_URL, content=body)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["details"]["field"] == "provider_call_id"

    @pytest.mark.asyncio
    async def test_out_of_range_timestamp_is_400(self, async_client: AsyncClient, demo_call: Call) -> None:
        response = await async_client.post(WEBHOOK_URL, content=_retell_body(timestamp=1e20))

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["details"]["field"] == "timestamp"

    @pytest.mark.asyncio
    async def test_awaz_endpoint_uses_awaz_adapter(self, async_client: AsyncClient) -> None:
        body = json.dumps({"event": "call.started", "call_id": "awaz-unknown"}).encode()

        response = await async_client.post(f"{WEBHOOK_URL}/awaz", content=body)

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["details"]["provider"] == "awaz"


class TestProviderWebhookSignatures:
    @pytest.mark.asyncio
    async def test_production_rejects_bad_signature(
        self,
        app: FastAPI,
        async_client: AsyncClient,
        test_settings: Settings,
        demo_call: Call,
        session_scope: Any,
    ) -> None:
        _use_production(app, test_settings)

        response = await async_client.post(
            WEBHOOK_URL,
            content=_retell_body(),
            headers={"x-retell-signature": "deadbeef"},
        )

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error"] == "AUTHENTICATION_FAILED"

        call, rows = await _call_and_ledger_count(session_scope, demo_call, "call_abc123")
        assert rows == 0
        assert call.status == CallStatus.INITIATED
        assert call.last_event_at is None

    @pytest.mark.asyncio
    async def test_production_accepts_valid_signature(
        self,
        app: FastAPI,
        async_client: AsyncClient,
        test_settings: Settings,
        demo_call: Call,
    ) -> None:
        _use_production(app, test_settings)
        body = _retell_body()
        signature = hmac.new(b"retell-secret", body, hashlib.sha256).hexdigest()

        response = await async_client.post(WEBHOOK_URL, content=body, headers={"x-retell-signature": signature})

        assert response.status_code == status.HTTP_200_OK

    @pytest.mark.asyncio
    async def test_production_without_secret_fails_closed(
        self,
        app: FastAPI,
        async_client: AsyncClient,
        test_settings: Settings,
    ) -> None:
        _use_production(app, test_settings)
        body = json.dumps({"event": "call.started", "call_id": "awaz-1"}).encode()

        response = await async_client.post(
            f"{WEBHOOK_URL}/awaz",
            content=body,
            headers={"x-awaz-signature": "abc"},
        )

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_unconfigured_active_provider_is_500(
        self,
        app: FastAPI,
        async_client: AsyncClient,
        test_settings: Settings,
    ) -> None:
        app.state.voice_registry = build_voice_registry(
            test_settings.model_copy(update={"retell_api_key": ""})
        )

        response = await async_client.post(WEBHOOK_URL, content=_retell_body())

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json()["error"] == "CONFIGURATION_ERROR"
