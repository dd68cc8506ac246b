"""
In-memory session store: session_id -> live Session (one upstream connection each).

The store is an object injected into the orchestrator, reaper and HTTP layer;
nothing reaches for a module-level dict.

Serialization: create and remove for the same id run under a per-id lock, so a
creation can never resurrect an id that is mid-removal. Distinct ids never
share a lock. A removed Session object is never reused; get_or_create after
remove builds a new Session with a new connection.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable

from livecast.asr.base import TranscriptionConnection, TranscriptionConnector, UpstreamHandlers
from livecast.errors import NotConnected, SessionClosed, UpstreamUnavailable
from livecast.transcript.models import WordToken

logger = logging.getLogger(__name__)


def generate_session_id() -> str:
    """Server-assigned session id (UUID hex, 12 chars) for clients that do not bring one."""
    return uuid.uuid4().hex[:12]


@dataclass(eq=False)
class Session:
    """
    One recording attempt.

    last_activity: updated on every audio chunk sent and every engine event.
    tokens: finalized words so far (segments are recomputed from these).
    chars_since_analysis: new transcript characters since the last analysis fired.
    """

    id: str
    created_at: float
    last_activity: float
    connection: TranscriptionConnection | None = None
    closed_at: float | None = None
    tokens: list[WordToken] = field(default_factory=list)
    chars_since_analysis: int = 0
    analysis_task: asyncio.Task | None = None

    @property
    def closed(self) -> bool:
        return self.closed_at is not None

    def send(self, chunk: bytes) -> None:
        """Forward audio upstream. Raises SessionClosed once the session is torn down."""
        if self.closed or self.connection is None:
            raise SessionClosed(self.id)
        try:
            self.connection.send(chunk)
        except NotConnected as e:
            raise SessionClosed(self.id) from e


HandlersFactory = Callable[[Session], UpstreamHandlers]
RemovalListener = Callable[[Session], Awaitable[None]]


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class _KeyedLocks:
    """One lock per key, dropped when nobody holds or waits on it."""

    def __init__(self) -> None:
        self._entries: dict[str, _LockEntry] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _LockEntry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._entries[key]


def _no_handlers(session: Session) -> UpstreamHandlers:
    return UpstreamHandlers(on_tokens=lambda tokens: None, on_error=lambda cause: None, on_close=lambda: None)


class SessionStore:
    """Registry of live sessions. Owns creation, lookup and eviction."""

    def __init__(
        self,
        connector: TranscriptionConnector,
        handlers_factory: HandlersFactory | None = None,
        clock: Callable[[], float] = time.time,
        retired_max: int = 10000,
    ) -> None:
        self._connector = connector
        self._handlers_factory = handlers_factory or _no_handlers
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._locks = _KeyedLocks()
        self._retired: OrderedDict[str, float] = OrderedDict()
        self._retired_max = retired_max
        self._removal_listeners: list[RemovalListener] = []

    def bind_handlers(self, factory: HandlersFactory) -> None:
        """Set how upstream events for new sessions are routed (orchestrator does this)."""
        self._handlers_factory = factory

    def add_removal_listener(self, listener: RemovalListener) -> None:
        self._removal_listeners.append(listener)

    def now(self) -> float:
        return self._clock()

    async def get_or_create(self, session_id: str) -> Session:
        """Existing session, or a new one with a freshly opened upstream. Raises UpstreamUnavailable."""
        async with self._locks.hold(session_id):
            session = self._sessions.get(session_id)
            if session is not None:
                return session
            now = self._clock()
            session = Session(id=session_id, created_at=now, last_activity=now)
            try:
                session.connection = await self._connector.connect(session_id, self._handlers_factory(session))
            except UpstreamUnavailable as e:
                logger.warning("Session %s: upstream unavailable: %s", session_id, e)
                raise
            self._sessions[session_id] = session
            self._retired.pop(session_id, None)
            logger.info("Session %s created (%d live)", session_id, len(self._sessions))
            return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def touch(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.last_activity = self._clock()

    async def remove(self, session_id: str, only: Session | None = None) -> bool:
        """
        Close the upstream and drop the entry. Idempotent: absent id -> False, no error.
        only: remove only if the live entry is this exact Session (late close events
        from an old connection must not evict a newer session under the same id).
        """
        async with self._locks.hold(session_id):
            session = self._sessions.get(session_id)
            if session is None or (only is not None and session is not only):
                return False
            del self._sessions[session_id]
            session.closed_at = self._clock()
            self._remember_retired(session_id, session.closed_at)
            if session.connection is not None:
                try:
                    await session.connection.close()
                except Exception:
                    logger.exception("Session %s: upstream close failed", session_id)
            logger.info("Session %s removed (%d live)", session_id, len(self._sessions))

        for listener in list(self._removal_listeners):
            try:
                await listener(session)
            except Exception:
                logger.exception("Session %s: removal listener failed", session_id)
        return True

    def _remember_retired(self, session_id: str, closed_at: float) -> None:
        self._retired[session_id] = closed_at
        self._retired.move_to_end(session_id)
        while len(self._retired) > self._retired_max:
            self._retired.popitem(last=False)

    def is_retired(self, session_id: str) -> bool:
        """True if this id was closed recently and has not been started again."""
        return session_id in self._retired and session_id not in self._sessions

    def sessions(self) -> list[Session]:
        """Snapshot of live sessions."""
        return list(self._sessions.values())

    def idle_session_ids(self, idle_timeout: float, now: float | None = None) -> list[str]:
        now = self._clock() if now is None else now
        return [s.id for s in self._sessions.values() if now - s.last_activity > idle_timeout]

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.remove(session_id)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions
