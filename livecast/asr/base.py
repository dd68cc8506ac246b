"""
Upstream transcription connection: abstract interface + lifecycle state machine.

One connection per session. Implementations: DeepgramConnection (websockets).

States and allowed transitions:

    CONNECTING -> OPEN | CLOSING | CLOSED
    OPEN       -> CLOSING | CLOSED
    CLOSING    -> CLOSED
    CLOSED     -> (terminal)

send() is only valid in OPEN. on_close fires exactly once for a connection
that reached OPEN; a failed handshake goes straight to CLOSED and raises instead.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from livecast.transcript.models import WordToken

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.OPEN, ConnectionState.CLOSING, ConnectionState.CLOSED}
    ),
    ConnectionState.OPEN: frozenset({ConnectionState.CLOSING, ConnectionState.CLOSED}),
    ConnectionState.CLOSING: frozenset({ConnectionState.CLOSED}),
    ConnectionState.CLOSED: frozenset(),
}


@dataclass
class UpstreamHandlers:
    """
    Callbacks a connection reports to. Called on the event loop, in event order.

    on_tokens: newly finalized words (never empty).
    on_error: non-fatal problem; the connection stays open unless on_close follows.
    on_close: connection ended; called exactly once.
    """

    on_tokens: Callable[[list[WordToken]], None]
    on_error: Callable[[BaseException], None]
    on_close: Callable[[], None]


class TranscriptionConnection(ABC):
    """Abstract streaming connection to a transcription engine."""

    def __init__(self, session_id: str, handlers: UpstreamHandlers) -> None:
        self.session_id = session_id
        self._handlers = handlers
        self._state = ConnectionState.CONNECTING

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    def _transition(self, new_state: ConnectionState) -> bool:
        """Move to new_state if the table allows it. Returns False (and stays put) otherwise."""
        if new_state not in _TRANSITIONS[self._state]:
            logger.debug(
                "Session %s: ignoring transition %s -> %s",
                self.session_id, self._state.value, new_state.value,
            )
            return False
        self._state = new_state
        return True

    def _finish(self) -> None:
        """Enter CLOSED and notify on_close once."""
        if not self._transition(ConnectionState.CLOSED):
            return
        try:
            self._handlers.on_close()
        except Exception:
            logger.exception("Session %s: on_close handler failed", self.session_id)

    def _emit_tokens(self, tokens: list[WordToken]) -> None:
        if not tokens:
            return
        try:
            self._handlers.on_tokens(tokens)
        except Exception:
            logger.exception("Session %s: on_tokens handler failed", self.session_id)

    def _emit_error(self, cause: BaseException) -> None:
        try:
            self._handlers.on_error(cause)
        except Exception:
            logger.exception("Session %s: on_error handler failed", self.session_id)

    @abstractmethod
    async def open(self) -> None:
        """
        Perform the handshake. CONNECTING -> OPEN on success.
        Raises UpstreamUnavailable (and ends CLOSED) on failure.
        """
        ...

    @abstractmethod
    def send(self, chunk: bytes) -> None:
        """
        Queue raw PCM for the engine. Never blocks.
        Raises NotConnected unless OPEN. May drop (with a warning) under backpressure.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Idempotent. Releases the socket and ends in CLOSED; double close is a no-op."""
        ...


class TranscriptionConnector(ABC):
    """Factory that opens one connection per session."""

    @abstractmethod
    async def connect(self, session_id: str, handlers: UpstreamHandlers) -> TranscriptionConnection:
        """Return an OPEN connection or raise UpstreamUnavailable."""
        ...
