from __future__ import annotations

import json
from typing import Callable

import httpx
import pytest

from livecast.asr.base import (
    ConnectionState,
    TranscriptionConnection,
    TranscriptionConnector,
    UpstreamHandlers,
)
from livecast.config import Settings
from livecast.errors import NotConnected, UpstreamUnavailable
from livecast.transcript.models import WordToken


class FakeConnection(TranscriptionConnection):
    """In-process stand-in for an engine stream. Tests drive events through emit()/drop()."""

    def __init__(self, session_id: str, handlers: UpstreamHandlers) -> None:
        super().__init__(session_id, handlers)
        self.sent: list[bytes] = []
        self.close_calls = 0

    async def open(self) -> None:
        self._transition(ConnectionState.OPEN)

    def send(self, chunk: bytes) -> None:
        if not self.is_open:
            raise NotConnected(f"session {self.session_id}: upstream is {self.state.value}")
        self.sent.append(chunk)

    async def close(self) -> None:
        self.close_calls += 1
        if not self._transition(ConnectionState.CLOSING):
            return
        self._finish()

    def emit(self, tokens: list[WordToken]) -> None:
        self._emit_tokens(tokens)

    def drop(self) -> None:
        """Engine hangs up on its own."""
        self._finish()


class FakeConnector(TranscriptionConnector):
    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []
        self.fail = False

    async def connect(self, session_id: str, handlers: UpstreamHandlers) -> FakeConnection:
        if self.fail:
            raise UpstreamUnavailable("engine unreachable")
        connection = FakeConnection(session_id, handlers)
        await connection.open()
        self.connections.append(connection)
        return connection

    def last(self) -> FakeConnection:
        return self.connections[-1]


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**overrides) -> Settings:
    values = {
        "DEEPGRAM_API_KEY": "",
        "LLM_API_KEY": "test-key",
        "LLM_BASE_URL": "https://llm.test/openai/v1",
        "ANALYSIS_ENABLED": True,
        "ANALYSIS_MIN_CHARS": 10,
        "DIARIZATION_PAUSE_FALLBACK": False,
        "LOG_LEVEL": "WARNING",
        "LOG_FILE": "",
    }
    values.update(overrides)
    return Settings(**values)


def chat_reply(content: str | None) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class RecordingChatTransport(httpx.MockTransport):
    """MockTransport that records every chat request body."""

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(json.loads(request.content))
            return responder(request)

        super().__init__(handler)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    return make_settings


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def chat_transport() -> Callable[..., RecordingChatTransport]:
    """Factory: chat_transport("EMOJI: ...") or chat_transport(status=500)."""

    def build(content: str | None = "MESSAGE: ok", status: int = 200) -> RecordingChatTransport:
        def respond(request: httpx.Request) -> httpx.Response:
            if status != 200:
                return httpx.Response(status, json={"error": {"message": "boom"}})
            return httpx.Response(200, json=chat_reply(content))

        return RecordingChatTransport(respond)

    return build
