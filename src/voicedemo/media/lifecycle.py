"""
Process shutdown for live calls.

On lifespan shutdown (uvicorn maps SIGINT/SIGTERM onto it) or an unhandled
error surfacing on the event loop, every provider socket is closed and every
media stream cleared before the process exits.
"""

from __future__ import annotations

import asyncio
import os
import signal
from typing import Any, Callable

from voicedemo.media.sockets import AudioSocketManager
from voicedemo.media.streams import MediaStreamBridge
from voicedemo.shared.logging import get_logger

logger = get_logger(__name__)


def _terminate_process() -> None:
    os.kill(os.getpid(), signal.SIGTERM)


class ShutdownCoordinator:
    """Runs the live-call cleanup exactly once."""

    def __init__(
        self,
        sockets: AudioSocketManager,
        bridge: MediaStreamBridge,
        terminate: Callable[[], None] = _terminate_process,
    ) -> None:
        self._sockets = sockets
        self._bridge = bridge
        self._terminate = terminate
        self._done = False
        self._fatal_task: asyncio.Task[None] | None = None
        self._previous_handler: Any = None

    @property
    def done(self) -> bool:
        return self._done

    async def shutdown(self, reason: str) -> bool:
        """Close all sockets and streams. Returns False if already done."""
        if self._done:
            return False
        self._done = True
        logger.info(
            "Shutting down live calls",
            extra={
                "reason": reason,
                "connections": len(self._sockets),
                "streams": len(self._bridge),
            },
        )
        try:
            await self._sockets.shutdown()
        finally:
            self._bridge.clear()
        logger.info("Live call cleanup complete", extra={"reason": reason})
        return True

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        """Route unhandled loop errors into a shutdown."""
        self._previous_handler = loop.get_exception_handler()
        loop.set_exception_handler(self.handle_loop_exception)

    def uninstall(self, loop: asyncio.AbstractEventLoop) -> None:
        loop.set_exception_handler(self._previous_handler)

    def handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exc = context.get("exception")
        logger.error(
            "Unhandled error on event loop",
            extra={"loop_message": context.get("message"), "error": repr(exc) if exc else None},
        )
        if self._done or self._fatal_task is not None:
            return
        self._fatal_task = loop.create_task(self._fatal_shutdown(context.get("message") or "fatal error"))

    async def _fatal_shutdown(self, reason: str) -> None:
        await self.shutdown(f"fatal: {reason}")
        self._terminate()
