"""
Voice-provider audio socket manager.

Holds at most one WebSocket per (call_sid, stream_sid) to the voice backend.
Caller audio from the carrier goes out as ``audio`` envelopes; agent audio
coming back is queued on the MediaStreamBridge for playback.

Every socket has a reader task that dispatches inbound messages by type.
A message that fails to dispatch is logged and dropped; the socket stays up.
Cancelling the reader task is how a connection is torn down. A sweep task
closes sockets whose backend heartbeat is older than the timeout and pings
the rest. When the backend closes a socket itself, that call leg is torn
down as well: its map entry and its media stream are both dropped.

Wire envelope (JSON text frames, both directions)::

    {"type": "audio" | "text" | "control" | "heartbeat",
     "data": {...}, "timestamp": <epoch ms>, "callId": <call_sid>}
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

import websockets
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK, WebSocketException

from voicedemo.media.streams import MediaStreamBridge, StreamKey
from voicedemo.shared.exceptions import NotFoundError, TransientProviderFailure
from voicedemo.shared.logging import get_logger

logger = get_logger(__name__)

AUDIO_FORMAT = "mulaw"
SAMPLE_RATE = 8000
NORMAL_CLOSURE = 1000
PENDING_AUDIO_LIMIT = 50

Connector = Callable[..., Awaitable[Any]]


class SocketMessageType(str, Enum):
    AUDIO = "audio"
    TEXT = "text"
    CONTROL = "control"
    HEARTBEAT = "heartbeat"


@dataclass
class VoiceSocketConnection:
    """One live socket to the voice backend for a carrier stream."""

    call_sid: str
    stream_sid: str
    agent_id: str
    websocket: Any
    connected: bool = False
    last_heartbeat: float = 0.0
    # Agent audio the bridge could not accept yet; replayed on the next frame.
    pending_audio: deque[bytes] = field(default_factory=lambda: deque(maxlen=PENDING_AUDIO_LIMIT))
    reader_task: asyncio.Task[None] | None = None

    @property
    def key(self) -> StreamKey:
        return (self.call_sid, self.stream_sid)


class AudioSocketManager:
    """Owns provider sockets keyed by (call_sid, stream_sid)."""

    def __init__(
        self,
        bridge: MediaStreamBridge,
        url: str,
        api_key: str,
        default_agent_id: str = "default-agent",
        *,
        heartbeat_interval: float = 10.0,
        heartbeat_timeout: float = 30.0,
        connect_timeout: float = 10.0,
        connect: Connector | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._bridge = bridge
        self._url = url
        self._api_key = api_key
        self._default_agent_id = default_agent_id
        self._heartbeat_interval = heartbeat_interval
        self._heartbeat_timeout = heartbeat_timeout
        self._connect_timeout = connect_timeout
        self._connect = connect
        self._clock = clock
        self._wall_clock = wall_clock
        self._connections: dict[StreamKey, VoiceSocketConnection] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_connection(self, call_sid: str, stream_sid: str) -> VoiceSocketConnection | None:
        return self._connections.get((call_sid, stream_sid))

    def is_connected(self, call_sid: str, stream_sid: str) -> bool:
        conn = self._connections.get((call_sid, stream_sid))
        return bool(conn and conn.connected)

    def active_connections(self) -> list[StreamKey]:
        return list(self._connections)

    def __len__(self) -> int:
        return len(self._connections)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def _open_socket(self) -> Any:
        connect = self._connect or websockets.connect
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "User-Agent": "voicedemo-twilio-bridge/1.0",
        }
        return await asyncio.wait_for(
            connect(self._url, additional_headers=headers),
            timeout=self._connect_timeout,
        )

    async def create_connection(
        self,
        call_sid: str,
        stream_sid: str,
        agent_id: str | None = None,
    ) -> VoiceSocketConnection:
        """Open the provider socket for a stream, replacing any existing one.

        Raises:
            TransientProviderFailure: the socket could not be opened.
        """
        key = (call_sid, stream_sid)
        if key in self._connections:
            logger.info(
                "Replacing existing provider socket",
                extra={"call_sid": call_sid, "stream_sid": stream_sid},
            )
            await self.close_connection(call_sid, stream_sid)

        agent = agent_id or self._default_agent_id
        logger.info(
            "Opening provider socket",
            extra={"call_sid": call_sid, "stream_sid": stream_sid, "agent_id": agent},
        )

        try:
            websocket = await self._open_socket()
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error(
                "Provider socket connection failed",
                extra={"call_sid": call_sid, "stream_sid": stream_sid, "error": str(e)},
            )
            raise TransientProviderFailure(
                message=f"Could not connect to voice backend: {e!s}",
                provider="awaz",
                code="SOCKET_CONNECT_FAILED",
            ) from e

        conn = VoiceSocketConnection(
            call_sid=call_sid,
            stream_sid=stream_sid,
            agent_id=agent,
            websocket=websocket,
            connected=True,
            last_heartbeat=self._clock(),
        )
        self._connections[key] = conn

        try:
            await self._send(
                conn,
                SocketMessageType.CONTROL,
                {
                    "action": "initialize",
                    "callId": call_sid,
                    "agentId": agent,
                    "sessionId": call_sid,
                    "audioFormat": AUDIO_FORMAT,
                    "sampleRate": SAMPLE_RATE,
                },
            )
        except TransientProviderFailure:
            await self.close_connection(call_sid, stream_sid)
            raise

        conn.reader_task = asyncio.create_task(
            self._read_loop(conn),
            name=f"voice-socket-reader:{call_sid}:{stream_sid}",
        )
        logger.info("Provider socket connected", extra={"call_sid": call_sid, "stream_sid": stream_sid})
        return conn

    async def close_connection(self, call_sid: str, stream_sid: str) -> bool:
        """Disconnect and forget the socket for a stream.

        The map entry is always removed. Returns False if there was none.
        """
        conn = self._connections.pop((call_sid, stream_sid), None)
        if conn is None:
            return False

        logger.info("Closing provider socket", extra={"call_sid": call_sid, "stream_sid": stream_sid})
        if conn.connected:
            try:
                await self._send(conn, SocketMessageType.CONTROL, {"action": "disconnect"})
            except TransientProviderFailure:
                logger.warning(
                    "Disconnect message not delivered",
                    extra={"call_sid": call_sid, "stream_sid": stream_sid},
                )
            try:
                await conn.websocket.close(code=NORMAL_CLOSURE, reason="Call ended")
            except (OSError, WebSocketException):
                logger.warning(
                    "Provider socket close failed",
                    extra={"call_sid": call_sid, "stream_sid": stream_sid},
                    exc_info=True,
                )
        conn.connected = False
        conn.pending_audio.clear()

        task = conn.reader_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        return True

    async def teardown(self, call_sid: str, stream_sid: str) -> None:
        """Close the socket and the media stream of one call leg.

        Stream stop, heartbeat timeout and shutdown all end up here; a
        remote close does the same from the reader task.
        """
        await self.close_connection(call_sid, stream_sid)
        self._bridge.close_stream(call_sid, stream_sid)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _envelope(self, conn: VoiceSocketConnection, kind: SocketMessageType, data: dict[str, Any]) -> str:
        return json.dumps(
            {
                "type": kind.value,
                "data": data,
                "timestamp": int(self._wall_clock() * 1000),
                "callId": conn.call_sid,
            }
        )

    async def _send(self, conn: VoiceSocketConnection, kind: SocketMessageType, data: dict[str, Any]) -> None:
        if not conn.connected:
            raise TransientProviderFailure(
                message="Provider socket not connected",
                provider="awaz",
                code="SOCKET_NOT_CONNECTED",
            )
        try:
            await conn.websocket.send(self._envelope(conn, kind, data))
        except (OSError, WebSocketException) as e:
            conn.connected = False
            raise TransientProviderFailure(
                message=f"Provider socket send failed: {e!s}",
                provider="awaz",
                code="SOCKET_SEND_FAILED",
            ) from e

    async def send_audio(self, call_sid: str, stream_sid: str, frame: bytes) -> bool:
        """Forward one caller audio frame. Never raises; returns whether it was sent."""
        conn = self._connections.get((call_sid, stream_sid))
        if conn is None or not conn.connected:
            logger.warning(
                "No connected provider socket for audio",
                extra={"call_sid": call_sid, "stream_sid": stream_sid},
            )
            return False

        try:
            await self._send(
                conn,
                SocketMessageType.AUDIO,
                {
                    "audio": base64.b64encode(frame).decode("ascii"),
                    "format": AUDIO_FORMAT,
                    "sampleRate": SAMPLE_RATE,
                },
            )
        except TransientProviderFailure as e:
            logger.error(
                "Failed to send audio to provider",
                extra={"call_sid": call_sid, "stream_sid": stream_sid, "error": e.message},
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _read_loop(self, conn: VoiceSocketConnection) -> None:
        try:
            async for raw in conn.websocket:
                try:
                    self.handle_message(conn, raw)
                except Exception:
                    logger.exception(
                        "Failed to handle provider message",
                        extra={"call_sid": conn.call_sid, "stream_sid": conn.stream_sid},
                    )
        except ConnectionClosedOK:
            logger.info("Provider socket closed", extra={"call_sid": conn.call_sid, "stream_sid": conn.stream_sid})
        except ConnectionClosedError as e:
            logger.warning(
                "Provider socket closed with error",
                extra={"call_sid": conn.call_sid, "stream_sid": conn.stream_sid, "code": getattr(e.rcvd, "code", None)},
            )
        except (OSError, WebSocketException):
            logger.exception(
                "Provider socket read failed",
                extra={"call_sid": conn.call_sid, "stream_sid": conn.stream_sid},
            )
        finally:
            conn.connected = False
            # Remote close: tear down the leg unless a newer socket replaced it.
            if self._connections.get(conn.key) is conn:
                self._connections.pop(conn.key, None)
                conn.pending_audio.clear()
                self._bridge.close_stream(conn.call_sid, conn.stream_sid)

    def handle_message(self, conn: VoiceSocketConnection, raw: str | bytes) -> None:
        """Dispatch one inbound message by its ``type`` tag."""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.error(
                "Failed to parse provider message",
                extra={"call_sid": conn.call_sid, "stream_sid": conn.stream_sid},
            )
            return
        if not isinstance(message, dict):
            logger.error("Provider message is not an object", extra={"call_sid": conn.call_sid})
            return

        kind = message.get("type")
        data = message.get("data") if isinstance(message.get("data"), dict) else {}

        match kind:
            case SocketMessageType.AUDIO.value:
                self._handle_audio(conn, data)
            case SocketMessageType.TEXT.value:
                logger.info("Provider text message", extra={"call_sid": conn.call_sid, "text": data.get("text")})
            case SocketMessageType.CONTROL.value:
                self._handle_control(conn, data)
            case SocketMessageType.HEARTBEAT.value:
                conn.last_heartbeat = self._clock()
            case _:
                logger.warning("Unknown provider message type", extra={"call_sid": conn.call_sid, "type": kind})

    def _handle_audio(self, conn: VoiceSocketConnection, data: dict[str, Any]) -> None:
        payload = data.get("audio") or ""
        if not isinstance(payload, str):
            logger.error(
                "Audio payload from provider is not a string",
                extra={"call_sid": conn.call_sid, "payload_type": type(payload).__name__},
            )
            return
        try:
            frame = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError, TypeError):
            logger.error("Invalid audio payload from provider", extra={"call_sid": conn.call_sid})
            return
        if not frame:
            return

        try:
            while conn.pending_audio:
                self._bridge.queue_audio(conn.call_sid, conn.stream_sid, conn.pending_audio[0])
                conn.pending_audio.popleft()
            self._bridge.queue_audio(conn.call_sid, conn.stream_sid, frame)
        except NotFoundError:
            conn.pending_audio.append(frame)
            logger.warning(
                "Media stream not active; holding agent audio",
                extra={"call_sid": conn.call_sid, "stream_sid": conn.stream_sid, "pending": len(conn.pending_audio)},
            )

    def _handle_control(self, conn: VoiceSocketConnection, data: dict[str, Any]) -> None:
        action = data.get("action")
        if action == "ready":
            logger.info("Provider agent ready", extra={"call_sid": conn.call_sid, "agent_id": conn.agent_id})
        elif action == "error":
            logger.error("Provider reported error", extra={"call_sid": conn.call_sid, "error": data.get("error")})
        else:
            logger.info("Provider control message", extra={"call_sid": conn.call_sid, "action": action})

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    async def sweep_once(self) -> list[StreamKey]:
        """Close stale sockets and ping live ones. Returns the keys closed."""
        now = self._clock()
        closed: list[StreamKey] = []
        for conn in list(self._connections.values()):
            # An earlier teardown may have yielded while this key was reconnected.
            if self._connections.get(conn.key) is not conn:
                continue
            if now - conn.last_heartbeat >= self._heartbeat_timeout:
                logger.warning(
                    "Provider socket heartbeat timeout",
                    extra={
                        "call_sid": conn.call_sid,
                        "stream_sid": conn.stream_sid,
                        "silence_seconds": round(now - conn.last_heartbeat, 1),
                    },
                )
                await self.teardown(conn.call_sid, conn.stream_sid)
                closed.append(conn.key)
            elif conn.connected:
                try:
                    await self._send(
                        conn,
                        SocketMessageType.HEARTBEAT,
                        {"timestamp": int(self._wall_clock() * 1000)},
                    )
                except TransientProviderFailure:
                    logger.warning("Heartbeat send failed", extra={"call_sid": conn.call_sid})
        return closed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Provider socket sweep failed")

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="voice-socket-sweep")
            logger.info(
                "Provider socket sweep started",
                extra={"interval_seconds": self._heartbeat_interval, "timeout_seconds": self._heartbeat_timeout},
            )

    async def stop(self) -> None:
        task = self._sweep_task
        self._sweep_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def shutdown(self) -> None:
        """Stop the sweep, close every socket and clear every media stream."""
        await self.stop()
        for call_sid, stream_sid in list(self._connections):
            await self.teardown(call_sid, stream_sid)
        self._bridge.clear()
