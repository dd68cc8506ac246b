"""
Error taxonomy for the streaming core.

- UpstreamUnavailable: transcription connection cannot be established or kept.
- SessionClosed: operation on a session that was already torn down; start a new one.
- NotConnected: adapter-level send before open or after close.
- ModelCallFailed: LLM request failed; analysis is skipped, transcription continues.
- MalformedUpstreamEvent: engine event missing expected fields; logged and discarded.
"""
from __future__ import annotations


class LivecastError(Exception):
    """Base class for all livecast errors."""


class UpstreamUnavailable(LivecastError):
    """The transcription engine could not be reached (connect failure, handshake rejected, timeout)."""


class SessionClosed(LivecastError):
    """The session has been removed; callers must start a new session instead of retrying."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session {session_id!r} is closed")
        self.session_id = session_id


class NotConnected(LivecastError):
    """Audio was sent to an upstream connection that is not open."""


class ModelCallFailed(LivecastError):
    """Language-model call returned non-success or failed on the network."""


class MalformedUpstreamEvent(LivecastError):
    """Transcription engine event is missing fields the parser needs."""
