"""
Pytest configuration and shared fixtures.

API tests run the real application against an in-memory SQLite database
(aiosqlite) with the DB dependencies overridden, a Twilio adapter backed by
a mocked httpx client, and a fake provider WebSocket.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import voicedemo.calls.models  # noqa: F401
from voicedemo.calls.models import Call, DemoSession
from voicedemo.calls.state import CallStatus, SessionStatus
from voicedemo.config import Settings
from voicedemo.main import create_app
from voicedemo.shared.database import Base, get_db_session, get_session_scope
from voicedemo.telephony.config import TelephonyConfig
from voicedemo.telephony.twilio_adapter import TwilioAdapter


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self._inbox: asyncio.Queue[str | None] = asyncio.Queue()

    async def send(self, message: str) -> None:
        if self.closed:
            raise OSError("socket closed")
        self.sent.append(json.loads(message))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        self._inbox.put_nowait(None)

    def feed(self, message: dict[str, Any] | str) -> None:
        """Queue a message as if the backend had sent it."""
        self._inbox.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def end(self) -> None:
        """Simulate the backend closing the connection."""
        self._inbox.put_nowait(None)

    def sent_types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def __aiter__(self) -> FakeWebSocket:
        return self

    async def __anext__(self) -> str:
        message = await self._inbox.get()
        if message is None:
            raise StopAsyncIteration
        return message


class FakeConnector:
    """Replacement for ``websockets.connect`` recording every socket it opens."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sockets: list[FakeWebSocket] = []
        self.calls: list[tuple[str, dict[str, str]]] = []

    async def __call__(self, url: str, additional_headers: dict[str, str] | None = None) -> FakeWebSocket:
        self.calls.append((url, dict(additional_headers or {})))
        if self.fail:
            raise OSError("connection refused")
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws

    @property
    def last(self) -> FakeWebSocket:
        return self.sockets[-1]


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        app_env="test",
        debug=True,
        database_url="sqlite+aiosqlite:///:memory:",
        voice_provider="retell",
        retell_api_key="retell-test-key",
        vapi_api_key="vapi-test-key",
        awaz_api_key="awaz-test-key",
        awaz_agent_id="agent-default-test",
        awaz_stream_url="wss://voice.example.com/v1/stream",
        cors_origins="http://localhost:3000",
    )


@pytest.fixture
def twilio_config() -> TelephonyConfig:
    return TelephonyConfig(
        twilio_account_sid="AC_TEST_ACCOUNT_SID",
        twilio_auth_token="test_auth_token_12345",
        twilio_from_number="+14155550000",
        webhook_base_url="https://example.com",
        media_stream_url="",
        call_timeout_seconds=60,
        validate_signatures=False,
    )


@pytest.fixture
def twilio_http_client() -> MagicMock:
    client = MagicMock(spec=httpx.Client)
    client.post.return_value = httpx.Response(
        status_code=201,
        json={"sid": "CA_TEST_CALL_SID_123", "status": "queued"},
    )
    return client


@pytest.fixture
def twilio_adapter(twilio_config: TelephonyConfig, twilio_http_client: MagicMock) -> TwilioAdapter:
    return TwilioAdapter(config=twilio_config, http_client=twilio_http_client)


@pytest.fixture
def socket_connector() -> FakeConnector:
    return FakeConnector()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[Any, None]:
    """Create test database engine (one shared in-memory connection)."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: Any) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def session_scope(session_factory: async_sessionmaker[AsyncSession]):
    """Commit-on-success session context, like DatabaseManager.session."""

    @asynccontextmanager
    async def scope() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return scope


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def demo_call(session_scope: Any) -> Call:
    """A CALLING demo session with one Retell call in progress of being placed."""
    async with session_scope() as session:
        demo = DemoSession(
            provider="retell",
            status=SessionStatus.CALLING,
            provider_agent_id="agent-from-session",
        )
        session.add(demo)
        await session.flush()
        call = Call(
            demo_session_id=demo.id,
            provider="retell",
            provider_call_id="call_abc123",
            twilio_call_sid="CA_STREAM_1",
            to_number="+14155551234",
            status=CallStatus.INITIATED,
            started_at=datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc),
        )
        session.add(call)
        await session.flush()
        await session.refresh(call)
        return call


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@pytest.fixture
def app(
    test_settings: Settings,
    twilio_adapter: TwilioAdapter,
    socket_connector: FakeConnector,
    session_scope: Any,
) -> FastAPI:
    application = create_app(
        test_settings,
        twilio_adapter=twilio_adapter,
        socket_connect=socket_connector,
        session_scope=session_scope,
    )

    async def _override_get_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_scope() as session:
            yield session

    application.dependency_overrides[get_db_session] = _override_get_db_session
    application.dependency_overrides[get_session_scope] = lambda: session_scope
    return application


@pytest_asyncio.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    await app.state.socket_manager.shutdown()
