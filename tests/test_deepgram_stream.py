from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager

import pytest
from websockets.asyncio.server import serve

from livecast.asr.base import ConnectionState, UpstreamHandlers
from livecast.asr.deepgram import DeepgramConnection, DeepgramConnector
from livecast.errors import NotConnected, UpstreamUnavailable

FINAL_RESULTS = {
    "type": "Results",
    "is_final": True,
    "start": 0.0,
    "duration": 1.0,
    "channel": {
        "alternatives": [
            {
                "transcript": "last words",
                "words": [
                    {"word": "last", "start": 0.1, "end": 0.4, "speaker": 0},
                    {"word": "words", "start": 0.5, "end": 0.9, "speaker": 0},
                ],
            }
        ]
    },
}


class EngineStub:
    """Local stand-in for the live endpoint: records what arrives, answers CloseStream."""

    def __init__(self, drop_after_first_chunk: bool = False) -> None:
        self.drop_after_first_chunk = drop_after_first_chunk
        self.audio: list[bytes] = []
        self.control: list[dict] = []
        self.auth: str | None = None
        self.path: str | None = None

    async def handler(self, ws) -> None:
        self.auth = ws.request.headers.get("Authorization")
        self.path = ws.request.path
        async for message in ws:
            if isinstance(message, bytes):
                self.audio.append(message)
                if self.drop_after_first_chunk:
                    await ws.close(code=1011, reason="engine failure")
                    return
                continue
            payload = json.loads(message)
            self.control.append(payload)
            if payload.get("type") == "CloseStream":
                await ws.send(json.dumps(FINAL_RESULTS))
                await ws.close()
                return


@asynccontextmanager
async def running_engine(stub: EngineStub):
    async with serve(stub.handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        yield f"ws://127.0.0.1:{port}/v1/listen"


class Recorder:
    def __init__(self) -> None:
        self.tokens: list = []
        self.errors: list[BaseException] = []
        self.closes = 0

    def handlers(self) -> UpstreamHandlers:
        return UpstreamHandlers(
            on_tokens=self.tokens.extend,
            on_error=self.errors.append,
            on_close=self._closed,
        )

    def _closed(self) -> None:
        self.closes += 1


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def test_close_flushes_final_results_and_closes_once(settings_factory):
    stub = EngineStub()
    recorder = Recorder()

    async def scenario():
        async with running_engine(stub) as url:
            settings = settings_factory(DEEPGRAM_URL=url, DEEPGRAM_API_KEY="dg-key")
            connection = await DeepgramConnector(settings).connect("s1", recorder.handlers())
            assert connection.state is ConnectionState.OPEN
            connection.send(b"\x00\x01")
            connection.send(b"\x02\x03")
            await connection.close()
            assert connection.state is ConnectionState.CLOSED
            await connection.close()
            with pytest.raises(NotConnected):
                connection.send(b"\x04\x05")

    asyncio.run(scenario())
    assert stub.auth == "Token dg-key"
    assert "diarize=true" in stub.path
    assert stub.audio == [b"\x00\x01", b"\x02\x03"]
    assert stub.control[-1] == {"type": "CloseStream"}
    assert [t.text for t in recorder.tokens] == ["last", "words"]
    assert recorder.closes == 1
    assert recorder.errors == []


def test_engine_dropping_the_socket_reports_error_and_one_close(settings_factory):
    stub = EngineStub(drop_after_first_chunk=True)
    recorder = Recorder()

    async def scenario():
        async with running_engine(stub) as url:
            settings = settings_factory(DEEPGRAM_URL=url, DEEPGRAM_API_KEY="dg-key")
            connection = await DeepgramConnector(settings).connect("s1", recorder.handlers())
            connection.send(b"\x00\x01")
            await _wait_until(lambda: connection.state is ConnectionState.CLOSED)
            with pytest.raises(NotConnected):
                connection.send(b"\x00\x01")
            await connection.close()

    asyncio.run(scenario())
    assert recorder.closes == 1
    assert len(recorder.errors) == 1
    assert isinstance(recorder.errors[0], UpstreamUnavailable)


def test_full_send_queue_drops_chunks_without_blocking(settings_factory):
    stub = EngineStub()
    recorder = Recorder()

    async def scenario():
        async with running_engine(stub) as url:
            settings = settings_factory(DEEPGRAM_URL=url, DEEPGRAM_API_KEY="dg-key", UPSTREAM_SEND_QUEUE_CHUNKS=2)
            connection = await DeepgramConnector(settings).connect("s1", recorder.handlers())
            # No await between sends: the writer cannot drain, so the queue overflows
            for i in range(10):
                connection.send(bytes([i, i]))
            dropped = connection._dropped_chunks
            # Queue is still full here; close waits for room and flushes what was kept
            await connection.close()
            return dropped

    assert asyncio.run(scenario()) == 8
    assert stub.audio == [b"\x00\x00", b"\x01\x01"]
    assert stub.control[-1] == {"type": "CloseStream"}
    assert [t.text for t in recorder.tokens] == ["last", "words"]
    assert recorder.closes == 1


def test_idle_stream_sends_keepalive(settings_factory):
    stub = EngineStub()

    async def scenario():
        async with running_engine(stub) as url:
            settings = settings_factory(DEEPGRAM_URL=url, DEEPGRAM_API_KEY="dg-key", DEEPGRAM_KEEPALIVE_SECONDS=0.05)
            connection = await DeepgramConnector(settings).connect("s1", Recorder().handlers())
            await _wait_until(lambda: {"type": "KeepAlive"} in stub.control)
            await connection.close()

    asyncio.run(scenario())
    assert stub.control[-1] == {"type": "CloseStream"}


def test_connect_to_unreachable_engine_is_upstream_unavailable(settings_factory):
    recorder = Recorder()

    async def scenario():
        async with running_engine(EngineStub()) as url:
            pass
        settings = settings_factory(DEEPGRAM_URL=url, DEEPGRAM_API_KEY="dg-key", UPSTREAM_CONNECT_TIMEOUT_SECONDS=2)
        connection = DeepgramConnection("s1", recorder.handlers(), settings=settings)
        with pytest.raises(UpstreamUnavailable):
            await connection.open()
        assert connection.state is ConnectionState.CLOSED

    asyncio.run(scenario())
    assert recorder.closes == 0
