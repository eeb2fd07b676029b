"""
Background expiry of demo sessions.

Sessions carry ``ttl_expires_at``; once it has passed they are marked
EXPIRED. Runs hourly by default alongside the application.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Callable
from uuid import UUID

from voicedemo.calls.repository import DemoSessionRepository
from voicedemo.shared.database import SessionScope
from voicedemo.shared.logging import get_logger

logger = get_logger(__name__)


class DemoExpiryScheduler:
    """Periodically marks demo sessions past their TTL as EXPIRED."""

    def __init__(
        self,
        session_scope: SessionScope,
        interval_seconds: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session_scope = session_scope
        self._interval = interval_seconds
        self._clock = clock
        self._running = False
        self._task: asyncio.Task[None] | None = None

    async def run_once(self) -> list[UUID]:
        """Expire every overdue session. Returns the ids marked EXPIRED."""
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        async with self._session_scope() as session:
            expired = await DemoSessionRepository(session).expire_due(now)

        if expired:
            logger.info("Demo sessions expired", extra={"count": len(expired)})
        else:
            logger.debug("No expired demo sessions")
        return expired

    def start(self) -> None:
        """Start the expiry background task."""
        if self._running:
            logger.warning("Demo expiry scheduler already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="demo-expiry")
        logger.info("Demo expiry scheduler started", extra={"interval_seconds": self._interval})

    async def stop(self) -> None:
        """Stop the expiry background task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Demo expiry scheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Demo expiry iteration failed")
            await asyncio.sleep(self._interval)
