"""
Tests for provider event handling against the database.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from voicedemo.calls.models import Call, DemoSession
from voicedemo.calls.repository import CallRepository, WebhookEventRepository
from voicedemo.calls.state import CallStatus, SessionStatus, Transition
from voicedemo.shared.exceptions import NotFoundError
from voicedemo.voice.interface import ProviderEvent
from voicedemo.voice.webhooks.handler import ProviderEventHandler

T0 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def _event(event: str, status: CallStatus, at: datetime = T0, **kwargs: Any) -> ProviderEvent:
    return ProviderEvent(
        provider="retell",
        provider_call_id="call_abc123",
        event=event,
        status=status,
        timestamp=at,
        **kwargs,
    )


async def _handle(session_scope: Any, event: ProviderEvent):
    async with session_scope() as session:
        return await ProviderEventHandler(session).handle_event(event)


async def _reload(session_scope: Any, call: Call) -> tuple[Call, DemoSession]:
    async with session_scope() as session:
        fresh = await CallRepository(session).get_by_id(call.id)
        demo = await session.get(DemoSession, call.demo_session_id)
        return fresh, demo


class TestProviderEventHandler:
    @pytest.mark.asyncio
    async def test_unknown_call_is_not_found(self, session_scope: Any) -> None:
        with pytest.raises(NotFoundError):
            await _handle(session_scope, _event("call_started", CallStatus.IN_PROGRESS))

    @pytest.mark.asyncio
    async def test_not_found_leaves_calls_and_ledger_untouched(self, session_scope: Any, demo_call: Call) -> None:
        stray = ProviderEvent(
            provider="retell",
            provider_call_id="call_other",
            event="call_ended",
            status=CallStatus.COMPLETED,
            timestamp=T0,
            summary="should not land",
        )

        with pytest.raises(NotFoundError):
            await _handle(session_scope, stray)

        call, demo = await _reload(session_scope, demo_call)
        assert call.status == CallStatus.INITIATED
        assert call.last_event_at is None
        assert call.summary is None
        assert demo.status == SessionStatus.CALLING
        async with session_scope() as session:
            ledger = WebhookEventRepository(session)
            assert await ledger.count_for_call("retell", "call_other") == 0
            assert await ledger.get_by_dedupe_key(stray.dedupe_key) is None

    @pytest.mark.asyncio
    async def test_event_recorded_and_applied(self, session_scope: Any, demo_call: Call) -> None:
        outcome = await _handle(session_scope, _event("call_started", CallStatus.IN_PROGRESS))

        assert outcome.created is True
        assert outcome.transition is Transition.APPLY
        assert outcome.dedupe_key == "retell:call_abc123:call_started:2024-01-15T10:00:00.000Z"

        call, _ = await _reload(session_scope, demo_call)
        assert call.status == CallStatus.IN_PROGRESS
        assert call.connected_at is not None

        async with session_scope() as session:
            row = await WebhookEventRepository(session).get_by_dedupe_key(outcome.dedupe_key)
        assert row is not None
        assert row.call_id == demo_call.id
        assert row.session_id == demo_call.demo_session_id

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, session_scope: Any, demo_call: Call) -> None:
        first = _event("call_ended", CallStatus.COMPLETED, summary="first")
        again = _event("call_ended", CallStatus.COMPLETED, summary="updated summary")

        created = await _handle(session_scope, first)
        repeated = await _handle(session_scope, again)

        assert created.created is True
        assert repeated.created is False
        assert repeated.transition is Transition.REFRESH

        async with session_scope() as session:
            ledger = WebhookEventRepository(session)
            assert await ledger.count_for_call("retell", "call_abc123") == 1
            row = await ledger.get_by_dedupe_key(created.dedupe_key)
        assert row.summary == "updated summary"

    @pytest.mark.asyncio
    async def test_out_of_order_ringing_does_not_regress(self, session_scope: Any, demo_call: Call) -> None:
        await _handle(session_scope, _event("call_started", CallStatus.IN_PROGRESS, T0))
        late = await _handle(
            session_scope,
            _event("call_ringing", CallStatus.RINGING, T0 - timedelta(seconds=5)),
        )

        assert late.created is True
        assert late.transition is Transition.IGNORE
        call, _ = await _reload(session_scope, demo_call)
        assert call.status == CallStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_completion_updates_call_and_session(self, session_scope: Any, demo_call: Call) -> None:
        await _handle(
            session_scope,
            _event(
                "call_ended",
                CallStatus.COMPLETED,
                T0 + timedelta(minutes=3),
                summary="Booked",
                transcript_url="https://cdn.example.com/t.txt",
            ),
        )

        call, demo = await _reload(session_scope, demo_call)
        assert call.status == CallStatus.COMPLETED
        assert call.summary == "Booked"
        assert call.transcript_url == "https://cdn.example.com/t.txt"
        assert call.completed_at is not None
        assert call.ended_at is not None
        assert demo.status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failure_after_completion_is_ignored(self, session_scope: Any, demo_call: Call) -> None:
        await _handle(session_scope, _event("call_ended", CallStatus.COMPLETED))
        outcome = await _handle(session_scope, _event("call_failed", CallStatus.FAILED, T0 + timedelta(seconds=1)))

        assert outcome.transition is Transition.IGNORE
        call, demo = await _reload(session_scope, demo_call)
        assert call.status == CallStatus.COMPLETED
        assert demo.status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_status_only_reaches_ledger(self, session_scope: Any, demo_call: Call) -> None:
        outcome = await _handle(session_scope, _event("transcript_update", CallStatus.UNKNOWN))

        assert outcome.created is True
        assert outcome.transition is Transition.IGNORE
        call, _ = await _reload(session_scope, demo_call)
        assert call.status == CallStatus.INITIATED
