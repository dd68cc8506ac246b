"""
DeepgramConnection: one live-transcription websocket per session.

- Query: model, punctuate, diarize, min/max speakers, linear16 @ 16kHz mono.
- send() never blocks: chunks go through a bounded queue drained by a writer task.
  When Deepgram is slower than the client, the queue fills and new chunks are
  dropped with a warning.
- Writer sends {"type": "KeepAlive"} when no audio went out for a while, so the
  engine does not time out a paused client (the reaper owns idle eviction).
- Reader parses Results messages; only finalized events produce tokens.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any
from urllib.parse import urlencode

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException

from livecast.asr.base import (
    ConnectionState,
    TranscriptionConnection,
    TranscriptionConnector,
    UpstreamHandlers,
)
from livecast.config import Settings, get_settings
from livecast.errors import MalformedUpstreamEvent, NotConnected, UpstreamUnavailable
from livecast.transcript.models import FALLBACK_SPEAKER, WordToken

logger = logging.getLogger(__name__)

_KEEPALIVE_MESSAGE = json.dumps({"type": "KeepAlive"})
_CLOSE_STREAM_MESSAGE = json.dumps({"type": "CloseStream"})
# After CloseStream, Deepgram flushes final results and closes; wait this long before forcing it
_CLOSE_GRACE_SECONDS = 5.0


def build_listen_url(settings: Settings) -> str:
    """Live endpoint URL with transcription options as query parameters."""
    params = {
        "model": settings.DEEPGRAM_MODEL,
        "punctuate": "true",
        "diarize": "true",
        "min_speakers": settings.DIARIZATION_MIN_SPEAKERS,
        "max_speakers": settings.DIARIZATION_MAX_SPEAKERS,
        "encoding": settings.ENCODING,
        "sample_rate": settings.SAMPLE_RATE,
        "channels": settings.CHANNELS,
    }
    return f"{settings.DEEPGRAM_URL}?{urlencode(params)}"


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_speaker(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value) if value >= 0 else None


def is_final_event(payload: Any) -> bool:
    """Interim results carry is_final=false; messages without the flag count as final."""
    return not isinstance(payload, dict) or payload.get("is_final", True) is not False


def parse_transcript_event(payload: Any) -> list[WordToken]:
    """
    Convert one engine event into word tokens.

    - channel absent/null, or empty/whitespace transcript: [] (nothing said yet).
    - words absent or empty with a non-empty transcript: one token for the whole
      transcript, speaker 0, spanning the event's start..start+duration.
    - Words without a speaker field keep speaker=None (the segment builder maps it to 0).
    Raises MalformedUpstreamEvent when the structure is not what the engine documents.
    """
    if not isinstance(payload, dict):
        raise MalformedUpstreamEvent(f"event is not an object: {type(payload).__name__}")
    channel = payload.get("channel")
    if channel is None:
        return []
    if not isinstance(channel, dict):
        raise MalformedUpstreamEvent("channel is not an object")
    alternatives = channel.get("alternatives")
    if not isinstance(alternatives, list):
        raise MalformedUpstreamEvent("channel.alternatives missing")
    if not alternatives:
        return []
    best = alternatives[0]
    if not isinstance(best, dict):
        raise MalformedUpstreamEvent("alternative is not an object")
    transcript = best.get("transcript") or ""
    if not isinstance(transcript, str):
        raise MalformedUpstreamEvent("transcript is not a string")
    if not transcript.strip():
        return []

    words = best.get("words")
    if not words:
        start = _as_float(payload.get("start"))
        duration = _as_float(payload.get("duration"))
        return [WordToken(text=transcript.strip(), start=start, end=start + duration, speaker=FALLBACK_SPEAKER)]
    if not isinstance(words, list):
        raise MalformedUpstreamEvent("words is not a list")

    tokens: list[WordToken] = []
    for word in words:
        if not isinstance(word, dict):
            raise MalformedUpstreamEvent("word is not an object")
        text = word.get("punctuated_word") or word.get("word")
        if not isinstance(text, str):
            raise MalformedUpstreamEvent("word text missing")
        text = text.strip()
        if not text:
            continue
        try:
            start = float(word["start"])
            end = float(word["end"])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedUpstreamEvent(f"word timing missing for {text!r}") from e
        tokens.append(WordToken(text=text, start=start, end=end, speaker=_as_speaker(word.get("speaker"))))
    return tokens


class DeepgramConnection(TranscriptionConnection):
    """Live websocket to Deepgram for one session."""

    def __init__(
        self,
        session_id: str,
        handlers: UpstreamHandlers,
        settings: Settings | None = None,
    ) -> None:
        super().__init__(session_id, handlers)
        self._settings = settings or get_settings()
        self._ws: ClientConnection | None = None
        self._outbound: asyncio.Queue[bytes | None] = asyncio.Queue(
            maxsize=max(1, self._settings.UPSTREAM_SEND_QUEUE_CHUNKS)
        )
        self._reader_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None
        self._dropped_chunks = 0

    async def open(self) -> None:
        api_key = (self._settings.DEEPGRAM_API_KEY or "").strip()
        if not api_key:
            self._transition(ConnectionState.CLOSED)
            raise UpstreamUnavailable("DEEPGRAM_API_KEY is not configured")

        url = build_listen_url(self._settings)
        try:
            self._ws = await connect(
                url,
                additional_headers={"Authorization": f"Token {api_key}"},
                open_timeout=self._settings.UPSTREAM_CONNECT_TIMEOUT_SECONDS,
                max_size=None,
            )
        except (OSError, TimeoutError, WebSocketException) as e:
            self._transition(ConnectionState.CLOSED)
            raise UpstreamUnavailable(f"Deepgram connect failed: {e}") from e

        self._transition(ConnectionState.OPEN)
        logger.info("Session %s: Deepgram stream open", self.session_id)
        self._reader_task = asyncio.create_task(self._reader(), name=f"deepgram-reader-{self.session_id}")
        self._writer_task = asyncio.create_task(self._writer(), name=f"deepgram-writer-{self.session_id}")

    def send(self, chunk: bytes) -> None:
        if self._state is not ConnectionState.OPEN:
            raise NotConnected(f"session {self.session_id}: upstream is {self._state.value}")
        if not chunk:
            return
        try:
            self._outbound.put_nowait(chunk)
        except asyncio.QueueFull:
            self._dropped_chunks += 1
            logger.warning(
                "Session %s: upstream not keeping up, dropped audio chunk (%d bytes, %d dropped so far)",
                self.session_id, len(chunk), self._dropped_chunks,
            )

    async def _writer(self) -> None:
        """Drain outbound queue. None = finish: send CloseStream so Deepgram flushes and closes."""
        keepalive = self._settings.DEEPGRAM_KEEPALIVE_SECONDS
        ws = self._ws
        try:
            while True:
                try:
                    if keepalive > 0:
                        chunk = await asyncio.wait_for(self._outbound.get(), timeout=keepalive)
                    else:
                        chunk = await self._outbound.get()
                except asyncio.TimeoutError:
                    await ws.send(_KEEPALIVE_MESSAGE)
                    continue
                if chunk is None:
                    await ws.send(_CLOSE_STREAM_MESSAGE)
                    return
                await ws.send(chunk)
        except ConnectionClosed:
            # Reader sees the same close and finishes the connection
            return

    async def _reader(self) -> None:
        ws = self._ws
        try:
            async for message in ws:
                self._handle_message(message)
        except ConnectionClosedError as e:
            logger.warning("Session %s: Deepgram stream closed abnormally: %s", self.session_id, e)
            self._emit_error(UpstreamUnavailable(f"Deepgram stream closed: {e}"))
        finally:
            if self._writer_task is not None and not self._writer_task.done():
                self._writer_task.cancel()
            logger.info("Session %s: Deepgram stream closed", self.session_id)
            self._finish()

    def _handle_message(self, message: str | bytes) -> None:
        if isinstance(message, bytes):
            logger.debug("Session %s: ignoring binary message from Deepgram", self.session_id)
            return
        try:
            payload = json.loads(message)
        except ValueError:
            logger.warning("Session %s: discarding non-JSON message from Deepgram", self.session_id)
            return
        if isinstance(payload, dict) and payload.get("type") == "Error":
            self._emit_error(UpstreamUnavailable(str(payload.get("description") or payload.get("message") or payload)))
            return
        if not is_final_event(payload):
            return
        try:
            tokens = parse_transcript_event(payload)
        except MalformedUpstreamEvent as e:
            logger.warning("Session %s: discarding malformed Deepgram event: %s", self.session_id, e)
            return
        self._emit_tokens(tokens)

    async def close(self) -> None:
        if not self._transition(ConnectionState.CLOSING):
            return
        # Let queued audio go out, then CloseStream; fall back to a hard close when stuck.
        if self._writer_task is not None and not self._writer_task.done():
            try:
                await asyncio.wait_for(self._outbound.put(None), timeout=_CLOSE_GRACE_SECONDS)
            except asyncio.TimeoutError:
                self._writer_task.cancel()
            await self._wait_or_cancel(self._writer_task)

        # Deepgram answers CloseStream with the last finalized results, then closes.
        await self._wait_or_cancel(self._reader_task, cancel=False)
        if self._ws is not None:
            try:
                await self._ws.close()
            except WebSocketException as e:
                logger.debug("Session %s: websocket close failed: %s", self.session_id, e)
        await self._wait_or_cancel(self._reader_task)
        self._finish()

    async def _wait_or_cancel(self, task: asyncio.Task | None, cancel: bool = True) -> None:
        """Wait up to the close grace period for a background task; cancel it if it overruns."""
        if task is None or task.done() or task is asyncio.current_task():
            return
        done, _ = await asyncio.wait({task}, timeout=_CLOSE_GRACE_SECONDS)
        if done or not cancel:
            if not done:
                logger.warning("Session %s: Deepgram did not close in time; forcing", self.session_id)
            return
        task.cancel()
        await asyncio.wait({task})


class DeepgramConnector(TranscriptionConnector):
    """Opens DeepgramConnection per session."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    async def connect(self, session_id: str, handlers: UpstreamHandlers) -> DeepgramConnection:
        connection = DeepgramConnection(session_id, handlers, settings=self._settings)
        await connection.open()
        return connection
