"""
StreamOrchestrator: wires the per-session data flow.

    audio chunk -> SessionStore (lookup/create) -> upstream send
    upstream tokens -> segment builder -> publish transcription
                    -> analysis trigger -> (model) -> publish analysis
    upstream close / client stop / reaper -> SessionStore.remove -> session_ended

Per session, token handling is strictly sequential: tokens are appended,
grouped and published inside the upstream callback, before the next engine
event is read. Analysis runs as a background task (one at a time per session)
so a slow model never stalls transcription.
"""
from __future__ import annotations

import asyncio
import logging
from itertools import groupby

from livecast.asr.base import UpstreamHandlers
from livecast.broadcast import BroadcastPublisher
from livecast.config import Settings, get_settings
from livecast.errors import SessionClosed
from livecast.services.analysis import AnalysisTrigger
from livecast.session_store import Session, SessionStore
from livecast.transcript.models import FALLBACK_SPEAKER, WordToken
from livecast.transcript.segments import assign_pause_speakers, build_segments, has_speaker_info

logger = logging.getLogger(__name__)


class StreamOrchestrator:
    def __init__(
        self,
        store: SessionStore,
        publisher: BroadcastPublisher,
        trigger: AnalysisTrigger,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._publisher = publisher
        self._trigger = trigger
        self._background: set[asyncio.Task] = set()
        store.bind_handlers(self._handlers_for)
        store.add_removal_listener(self._on_session_removed)

    @property
    def store(self) -> SessionStore:
        return self._store

    # --- ingress ---

    async def start_session(self, session_id: str) -> Session:
        """Explicit start signal: open the upstream now instead of on the first chunk."""
        return await self._store.get_or_create(session_id)

    async def handle_audio(self, session_id: str, chunk: bytes, is_first_chunk: bool = False) -> Session:
        """
        Route one audio chunk. Unknown ids (or is_first_chunk) create the session.
        Raises SessionClosed for an id that was torn down and is not being restarted,
        UpstreamUnavailable if a new upstream cannot be opened.
        """
        session = self._store.get(session_id)
        if session is None:
            if not is_first_chunk and self._store.is_retired(session_id):
                raise SessionClosed(session_id)
            session = await self._store.get_or_create(session_id)
        session.send(chunk)
        self._store.touch(session_id)
        return session

    async def stop_session(self, session_id: str) -> bool:
        """Client stop. Idempotent; False if the session was already gone."""
        return await self._store.remove(session_id)

    async def shutdown(self) -> None:
        await self._store.close_all()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # --- upstream events ---

    def _handlers_for(self, session: Session) -> UpstreamHandlers:
        return UpstreamHandlers(
            on_tokens=lambda tokens: self._on_tokens(session, tokens),
            on_error=lambda cause: self._on_upstream_error(session, cause),
            on_close=lambda: self._on_upstream_close(session),
        )

    def _on_tokens(self, session: Session, tokens: list[WordToken]) -> None:
        if not session.closed:
            session.last_activity = self._store.now()
        if self._settings.DIARIZATION_PAUSE_FALLBACK and not has_speaker_info(tokens):
            tokens = self._relabel_by_pauses(session, tokens)
        segments = build_segments(tokens)
        published = self._publisher.publish_transcription(session.id, segments)
        if not published:
            return
        # Keep only words of segments that went out; re-reported ranges stay out of the transcript
        fresh = {id(s) for s in published}
        runs = (list(run) for _, run in groupby(tokens, key=_speaker_of))
        for segment, run in zip(segments, runs):
            if id(segment) in fresh:
                session.tokens.extend(run)

        new_text = " ".join(s.text for s in published)
        if not session.closed and self._trigger.record_new_text(session, new_text):
            self._schedule_analysis(session)

    def _relabel_by_pauses(self, session: Session, tokens: list[WordToken]) -> list[WordToken]:
        """Approximate speakers from pauses, continuing from the previous event's last word."""
        previous = session.tokens[-1:]
        first_speaker = previous[0].speaker if previous and previous[0].speaker is not None else FALLBACK_SPEAKER
        relabelled = assign_pause_speakers(
            previous + tokens,
            gap_seconds=self._settings.DIARIZATION_PAUSE_GAP_SEC,
            max_speakers=self._settings.DIARIZATION_MAX_SPEAKERS,
            first_speaker=first_speaker,
        )
        return relabelled[len(previous):]

    def _on_upstream_error(self, session: Session, cause: BaseException) -> None:
        logger.warning("Session %s: upstream error: %s", session.id, cause)

    def _on_upstream_close(self, session: Session) -> None:
        if session.closed:
            return
        logger.info("Session %s: upstream closed; removing session", session.id)
        self._spawn(self._store.remove(session.id, only=session), name=f"remove-{session.id}")

    # --- analysis ---

    def _schedule_analysis(self, session: Session) -> None:
        transcript = self._trigger.transcript_for(session.tokens)
        session.analysis_task = self._spawn(
            self._run_analysis(session, transcript), name=f"analysis-{session.id}"
        )

    async def _run_analysis(self, session: Session, transcript: str) -> None:
        event = await self._trigger.analyze(session.id, transcript)
        if session.closed:
            return
        if event is not None:
            self._publisher.publish_analysis(session.id, event)

        # Text that arrived while the model was busy gets its own analysis
        if session.analysis_task is asyncio.current_task():
            session.analysis_task = None
        if self._trigger.record_new_text(session, ""):
            self._schedule_analysis(session)

    # --- teardown ---

    async def _on_session_removed(self, session: Session) -> None:
        task = session.analysis_task
        if task is not None and not task.done():
            task.cancel()
        self._publisher.forget(session.id)
        self._publisher.publish_session_ended(session.id)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task


def _speaker_of(token: WordToken) -> int:
    return FALLBACK_SPEAKER if token.speaker is None else token.speaker
