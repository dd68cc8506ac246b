"""
Session reaper: evicts sessions whose last activity is older than the idle timeout.

This is the only automatic cleanup path for sessions the client never stopped
(closed tab, crashed client). Eviction is lossy: anything buffered for the
session and not yet published is discarded, not flushed.
"""
from __future__ import annotations

import asyncio
import logging

from livecast.config import Settings, get_settings
from livecast.session_store import SessionStore

logger = logging.getLogger(__name__)


class SessionReaper:
    """Background sweep over the session store on a fixed interval."""

    def __init__(
        self,
        store: SessionStore,
        interval: float | None = None,
        idle_timeout: float | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self.interval = settings.REAPER_INTERVAL_SECONDS if interval is None else interval
        self.idle_timeout = settings.SESSION_IDLE_TIMEOUT_SECONDS if idle_timeout is None else idle_timeout
        self._task: asyncio.Task | None = None

    async def sweep(self) -> list[str]:
        """One pass: remove every session idle longer than idle_timeout. Returns evicted ids."""
        evicted: list[str] = []
        for session_id in self._store.idle_session_ids(self.idle_timeout):
            # Re-check: the session may have been touched or removed while we awaited a previous removal
            session = self._store.get(session_id)
            if session is None or self._store.now() - session.last_activity <= self.idle_timeout:
                continue
            if await self._store.remove(session_id, only=session):
                evicted.append(session_id)
        if evicted:
            logger.info("Reaper evicted %d idle session(s): %s", len(evicted), ", ".join(evicted))
        return evicted

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Reaper sweep failed")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="session-reaper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
