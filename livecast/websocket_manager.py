"""
WebSocket handlers.

AudioStreamHandler (producer side): one socket = one recording session.
  Client sends binary PCM 16-bit mono 16kHz; the first binary frame is the
  session's first chunk. Text {"type": "stop"} or a disconnect stops the session.
  Server sends {"type": "session", "session_id"} once, and {"type": "error", ...}
  before closing when the session cannot continue.

EventSubscriberHandler (viewer side): forwards transcription / analysis /
  session_ended messages from the broadcast hub, optionally filtered to one session.
"""
from __future__ import annotations

import asyncio
import json
import logging

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from livecast.broadcast import InMemoryBroadcast, Message
from livecast.errors import SessionClosed, UpstreamUnavailable
from livecast.orchestrator import StreamOrchestrator

logger = logging.getLogger(__name__)


def _is_stop_command(text: str | None) -> bool:
    if not text:
        return False
    try:
        data = json.loads(text)
    except ValueError:
        return text.strip().lower() == "stop"
    return isinstance(data, dict) and data.get("type") in ("stop", "close")


class AudioStreamHandler:
    """Relays one client's audio socket into the orchestrator."""

    def __init__(self, websocket: WebSocket, orchestrator: StreamOrchestrator, session_id: str) -> None:
        self._ws = websocket
        self._orchestrator = orchestrator
        self.session_id = session_id
        self._chunks = 0

    async def _send_json(self, payload: dict) -> None:
        try:
            await self._ws.send_text(json.dumps(payload))
        except (WebSocketDisconnect, RuntimeError):
            logger.debug("Session %s: client gone before %s", self.session_id, payload.get("type"))

    async def run(self) -> None:
        await self._send_json({"type": "session", "session_id": self.session_id})
        try:
            while True:
                msg = await self._ws.receive()
                if msg.get("type") == "websocket.disconnect":
                    break
                data = msg.get("bytes")
                if data is None:
                    if _is_stop_command(msg.get("text")):
                        break
                    continue
                try:
                    await self._orchestrator.handle_audio(self.session_id, data, is_first_chunk=self._chunks == 0)
                except SessionClosed:
                    await self._send_json({"type": "error", "code": "session_closed", "message": "Session ended; start a new one"})
                    break
                except UpstreamUnavailable as e:
                    logger.warning("Session %s: %s", self.session_id, e)
                    await self._send_json({"type": "error", "code": "upstream_unavailable", "message": "Transcription service unavailable"})
                    break
                self._chunks += 1
        finally:
            await self._orchestrator.stop_session(self.session_id)
            logger.info("Session %s: audio socket finished after %d chunk(s)", self.session_id, self._chunks)


class EventSubscriberHandler:
    """Pumps broadcast messages to one viewer socket until it disconnects."""

    def __init__(
        self,
        websocket: WebSocket,
        hub: InMemoryBroadcast,
        topics: tuple[str, ...],
        session_id: str | None = None,
        default_emoji: str | None = None,
    ) -> None:
        self._ws = websocket
        self._hub = hub
        self._topics = topics
        self._session_id = session_id
        self._default_emoji = default_emoji

    def _prepare(self, message: Message) -> Message | None:
        if self._session_id and message.get("sessionId") != self._session_id:
            return None
        if message.get("type") == "analysis" and not message.get("emoji") and self._default_emoji:
            message = {**message, "emoji": self._default_emoji}
        return message

    async def _pump(self, subscription) -> None:
        while True:
            message = self._prepare(await subscription.get())
            if message is None:
                continue
            await self._ws.send_text(json.dumps(message, ensure_ascii=False))
            if self._session_id and message.get("type") == "session_ended":
                # Nothing more will come for the one session this viewer follows
                return

    async def _wait_disconnect(self) -> None:
        while True:
            msg = await self._ws.receive()
            if msg.get("type") == "websocket.disconnect":
                return

    async def run(self) -> None:
        with self._hub.subscribe(*self._topics) as subscription:
            pump = asyncio.create_task(self._pump(subscription))
            listener = asyncio.create_task(self._wait_disconnect())
            done, pending = await asyncio.wait({pump, listener}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                exc = task.exception()
                if exc is not None and not isinstance(exc, (WebSocketDisconnect, RuntimeError)):
                    logger.warning("Subscriber socket ended with error: %s", exc)
