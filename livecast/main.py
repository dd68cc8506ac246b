"""
FastAPI app: live transcription with speaker segments and running LLM commentary.

Producers (browser microphones):
- WebSocket /ws/transcribe?session_id=...  binary PCM 16-bit mono 16kHz
- POST /api/audio  { session_id, audio_chunk (base64), is_first_chunk }
- POST /api/sessions/{session_id}/stop

Viewers:
- WebSocket /ws/events?session_id=...  JSON
  { "type": "transcription", "sessionId", "segments": [{text, speaker, start, end}], "timestamp" }
  { "type": "analysis", "sessionId", "analysis", "emoji", "transcript", "timestamp" }
  { "type": "session_ended", "sessionId", "reason", "timestamp" }
"""
from __future__ import annotations

import base64
import binascii
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from livecast.asr.base import TranscriptionConnector
from livecast.asr.deepgram import DeepgramConnector
from livecast.broadcast import BroadcastPublisher, InMemoryBroadcast
from livecast.config import Settings, get_settings
from livecast.errors import SessionClosed, UpstreamUnavailable
from livecast.logging_setup import configure_logging
from livecast.orchestrator import StreamOrchestrator
from livecast.reaper import SessionReaper
from livecast.schemas.audio import (
    AudioChunkRequest,
    AudioChunkResponse,
    SessionInfo,
    SessionListResponse,
    StopResponse,
)
from livecast.services.analysis import AnalysisTrigger
from livecast.services.llm_client import ChatCompletionClient
from livecast.session_store import SessionStore, generate_session_id
from livecast.websocket_manager import AudioStreamHandler, EventSubscriberHandler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything one worker process needs; sessions never leave this process."""

    settings: Settings
    hub: InMemoryBroadcast
    publisher: BroadcastPublisher
    store: SessionStore
    trigger: AnalysisTrigger
    orchestrator: StreamOrchestrator
    reaper: SessionReaper


def build_services(
    settings: Settings,
    connector: TranscriptionConnector | None = None,
    llm_transport: httpx.AsyncBaseTransport | None = None,
) -> Services:
    hub = InMemoryBroadcast(subscriber_queue_size=settings.BROADCAST_SUBSCRIBER_QUEUE_SIZE)
    publisher = BroadcastPublisher(hub, settings=settings)
    store = SessionStore(
        connector or DeepgramConnector(settings),
        retired_max=settings.RETIRED_SESSION_IDS_MAX,
    )
    trigger = AnalysisTrigger(ChatCompletionClient(settings, transport=llm_transport), settings=settings)
    orchestrator = StreamOrchestrator(store, publisher, trigger, settings=settings)
    reaper = SessionReaper(store, settings=settings)
    return Services(
        settings=settings,
        hub=hub,
        publisher=publisher,
        store=store,
        trigger=trigger,
        orchestrator=orchestrator,
        reaper=reaper,
    )


def create_app(
    settings: Settings | None = None,
    connector: TranscriptionConnector | None = None,
    llm_transport: httpx.AsyncBaseTransport | None = None,
    start_reaper: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    services = build_services(settings, connector=connector, llm_transport=llm_transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        if settings.ANALYSIS_ENABLED and not services.trigger.enabled:
            logger.warning("LLM_API_KEY is not set; live analysis is disabled")
        if start_reaper:
            services.reaper.start()
        yield
        await services.reaper.stop()
        await services.orchestrator.shutdown()

    app = FastAPI(
        title="Live transcription and commentary",
        description="Streams audio to a diarizing STT engine and broadcasts speaker segments and LLM commentary",
        lifespan=lifespan,
    )
    app.state.services = services

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "sessions": len(services.store)}

    @app.post("/api/audio", response_model=AudioChunkResponse)
    async def post_audio(body: AudioChunkRequest) -> AudioChunkResponse:
        try:
            chunk = base64.b64decode(body.audio_chunk, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(status_code=400, detail="audio_chunk is not valid base64")
        try:
            await services.orchestrator.handle_audio(body.session_id, chunk, is_first_chunk=body.is_first_chunk)
        except SessionClosed:
            raise HTTPException(status_code=409, detail="Session is closed; start a new session")
        except UpstreamUnavailable as e:
            logger.warning("Session %s: %s", body.session_id, e)
            raise HTTPException(status_code=502, detail="Transcription service unavailable")
        return AudioChunkResponse(session_id=body.session_id)

    @app.post("/api/sessions/{session_id}/stop", response_model=StopResponse)
    async def stop_session(session_id: str) -> StopResponse:
        stopped = await services.orchestrator.stop_session(session_id)
        return StopResponse(session_id=session_id, stopped=stopped)

    @app.get("/api/sessions", response_model=SessionListResponse)
    async def list_sessions() -> SessionListResponse:
        now = services.store.now()
        return SessionListResponse(
            sessions=[
                SessionInfo(
                    session_id=s.id,
                    created_at=s.created_at,
                    last_activity=s.last_activity,
                    idle_seconds=max(0.0, now - s.last_activity),
                    connection_state=s.connection.state.value if s.connection else "none",
                    words=len(s.tokens),
                )
                for s in services.store.sessions()
            ]
        )

    @app.websocket("/ws/transcribe")
    async def websocket_transcribe(websocket: WebSocket, session_id: str | None = None) -> None:
        await websocket.accept()
        handler = AudioStreamHandler(
            websocket,
            services.orchestrator,
            (session_id or "").strip() or generate_session_id(),
        )
        try:
            await handler.run()
        except WebSocketDisconnect:
            pass
        await _close_quietly(websocket)

    @app.websocket("/ws/events")
    async def websocket_events(websocket: WebSocket, session_id: str | None = None) -> None:
        await websocket.accept()
        handler = EventSubscriberHandler(
            websocket,
            services.hub,
            topics=(services.publisher.transcription_topic, services.publisher.analysis_topic),
            session_id=(session_id or "").strip() or None,
            default_emoji=settings.ANALYSIS_DEFAULT_EMOJI,
        )
        await handler.run()
        await _close_quietly(websocket)

    return app


async def _close_quietly(websocket: WebSocket) -> None:
    if websocket.client_state is WebSocketState.DISCONNECTED:
        return
    try:
        await websocket.close()
    except (RuntimeError, OSError):
        # Client went away while we were closing
        pass


app = create_app()
