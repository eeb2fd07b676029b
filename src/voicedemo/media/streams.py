"""
Telephony media stream bridge.

Twilio delivers a call's media stream as discrete webhook posts
(start, media..., stop). The bridge keeps one MediaStream per
(call_sid, stream_sid) with a FIFO of agent audio frames waiting to be
played back to the caller. Reads are destructive: each drain empties the
queue.

All state lives on the event loop thread; operations on different streams
never interleave inside a call, and callers serialize operations on the
same stream.
"""

import base64
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from voicedemo.shared.exceptions import NotFoundError
from voicedemo.shared.logging import get_logger

logger = get_logger(__name__)

StreamKey = tuple[str, str]


@dataclass
class MediaStream:
    """One carrier audio channel and its outbound frame queue."""

    call_sid: str
    stream_sid: str
    queue: deque[bytes] = field(default_factory=deque)
    active: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> StreamKey:
        return (self.call_sid, self.stream_sid)


class MediaStreamBridge:
    """Registry of live media streams keyed by (call_sid, stream_sid)."""

    def __init__(self) -> None:
        self._streams: dict[StreamKey, MediaStream] = {}

    def create_stream(self, call_sid: str, stream_sid: str) -> MediaStream:
        key = (call_sid, stream_sid)
        previous = self._streams.get(key)
        if previous is not None:
            logger.warning(
                "Media stream restarted; dropping queued audio",
                extra={"call_sid": call_sid, "stream_sid": stream_sid, "dropped": len(previous.queue)},
            )
            previous.active = False
            previous.queue.clear()

        stream = MediaStream(call_sid=call_sid, stream_sid=stream_sid)
        self._streams[key] = stream
        logger.info("Media stream created", extra={"call_sid": call_sid, "stream_sid": stream_sid})
        return stream

    def _require_active(self, call_sid: str, stream_sid: str) -> MediaStream:
        stream = self._streams.get((call_sid, stream_sid))
        if stream is None or not stream.active:
            raise NotFoundError(
                message="Media stream not active",
                details={"call_sid": call_sid, "stream_sid": stream_sid},
            )
        return stream

    def queue_audio(self, call_sid: str, stream_sid: str, frame: bytes) -> int:
        """Append a frame for later playback; returns the new queue length.

        Raises:
            NotFoundError: the stream is unknown or closed.
        """
        stream = self._require_active(call_sid, stream_sid)
        stream.queue.append(bytes(frame))
        logger.debug(
            "Audio queued for carrier",
            extra={"call_sid": call_sid, "stream_sid": stream_sid, "queue_length": len(stream.queue)},
        )
        return len(stream.queue)

    def get_queued_audio(self, call_sid: str, stream_sid: str) -> list[str]:
        """Drain the queue and return its frames, oldest first, base64 encoded.

        Raises:
            NotFoundError: the stream is unknown or closed.
        """
        stream = self._require_active(call_sid, stream_sid)
        frames = [base64.b64encode(frame).decode("ascii") for frame in stream.queue]
        stream.queue.clear()
        return frames

    def close_stream(self, call_sid: str, stream_sid: str) -> bool:
        """Deactivate and forget a stream. Returns False if it did not exist."""
        stream = self._streams.pop((call_sid, stream_sid), None)
        if stream is None:
            return False
        stream.active = False
        stream.queue.clear()
        logger.info("Media stream closed", extra={"call_sid": call_sid, "stream_sid": stream_sid})
        return True

    def is_stream_active(self, call_sid: str, stream_sid: str) -> bool:
        stream = self._streams.get((call_sid, stream_sid))
        return bool(stream and stream.active)

    def active_streams(self) -> list[StreamKey]:
        return [key for key, stream in self._streams.items() if stream.active]

    def clear(self) -> None:
        """Close every stream (process shutdown)."""
        if self._streams:
            logger.info("Clearing media streams", extra={"count": len(self._streams)})
        for stream in self._streams.values():
            stream.active = False
            stream.queue.clear()
        self._streams.clear()

    def __len__(self) -> int:
        return len(self._streams)
