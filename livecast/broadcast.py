"""
Broadcast publisher: transcription and analysis events to every subscriber.

- Two topics (transcription, analysis); every message carries sessionId so a
  subscriber that listens to many sessions filters for itself.
- Fire-and-forget, at-most-once. publish_* never awaits subscribers.
- Per topic, each subscriber sees messages in publish order (one FIFO queue each).
- Segments already published for a session are not published again
  (engine events can re-report overlapping ranges).
"""
from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Iterable

from livecast.config import Settings, get_settings
from livecast.transcript.dedup import SegmentDeduplicator
from livecast.transcript.models import Segment

logger = logging.getLogger(__name__)

Message = dict[str, Any]


def _unix_ms() -> int:
    return int(time.time() * 1000)


class BroadcastTransport(ABC):
    """Topic publish primitive. publish() must not block the caller."""

    @abstractmethod
    def publish(self, topic: str, message: Message) -> None:
        ...


class Subscription:
    """One subscriber's view of a set of topics. Iterate with get()."""

    def __init__(self, hub: "InMemoryBroadcast", topics: tuple[str, ...], maxsize: int) -> None:
        self._hub = hub
        self.topics = topics
        self.queue: asyncio.Queue[Message] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    async def get(self) -> Message:
        return await self.queue.get()

    def get_nowait(self) -> Message:
        return self.queue.get_nowait()

    def close(self) -> None:
        self._hub.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class InMemoryBroadcast(BroadcastTransport):
    """
    In-process pub/sub hub. Subscribers get a bounded queue; when a slow
    subscriber's queue is full the message is dropped for that subscriber only.
    """

    def __init__(self, subscriber_queue_size: int = 256) -> None:
        self._queue_size = subscriber_queue_size
        self._subscribers: dict[str, list[Subscription]] = {}

    def subscribe(self, *topics: str) -> Subscription:
        subscription = Subscription(self, topics, self._queue_size)
        for topic in topics:
            self._subscribers.setdefault(topic, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        for topic in subscription.topics:
            subs = self._subscribers.get(topic)
            if subs and subscription in subs:
                subs.remove(subscription)
                if not subs:
                    del self._subscribers[topic]

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    def publish(self, topic: str, message: Message) -> None:
        for subscription in list(self._subscribers.get(topic, ())):
            try:
                subscription.queue.put_nowait(message)
            except asyncio.QueueFull:
                subscription.dropped += 1
                logger.warning(
                    "Subscriber queue full on topic %s; dropped %s for session %s",
                    topic, message.get("type"), message.get("sessionId"),
                )


class BroadcastPublisher:
    """Builds event messages and hands them to the transport."""

    def __init__(
        self,
        transport: BroadcastTransport,
        settings: Settings | None = None,
        deduplicator: SegmentDeduplicator | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._transport = transport
        self.transcription_topic = settings.BROADCAST_TRANSCRIPTION_TOPIC
        self.analysis_topic = settings.BROADCAST_ANALYSIS_TOPIC
        self._dedup = deduplicator or SegmentDeduplicator()

    def _publish(self, topic: str, message: Message) -> None:
        try:
            self._transport.publish(topic, message)
        except Exception:
            # At-most-once: a transport failure loses this message, never the session
            logger.exception("Publish to %s failed for session %s", topic, message.get("sessionId"))

    def publish_transcription(self, session_id: str, segments: Iterable[Segment]) -> list[Segment]:
        """Publish segments not yet sent for this session. Returns what was actually published."""
        fresh = self._dedup.filter_new(session_id, segments)
        if not fresh:
            return []
        self._publish(
            self.transcription_topic,
            {
                "type": "transcription",
                "sessionId": session_id,
                "segments": [s.to_dict() for s in fresh],
                "timestamp": _unix_ms(),
            },
        )
        return fresh

    def publish_analysis(self, session_id: str, event: Any) -> None:
        """event: AnalysisEvent (anything with to_payload()) or an already-built dict."""
        payload = event.to_payload() if hasattr(event, "to_payload") else dict(event)
        payload.update({"type": "analysis", "sessionId": session_id, "timestamp": _unix_ms()})
        self._publish(self.analysis_topic, payload)

    def publish_session_ended(self, session_id: str, reason: str = "closed") -> None:
        """Optional notice that no further events will come for this session."""
        self._publish(
            self.transcription_topic,
            {"type": "session_ended", "sessionId": session_id, "reason": reason, "timestamp": _unix_ms()},
        )

    def forget(self, session_id: str) -> None:
        """Drop per-session de-duplication state once the session is gone."""
        self._dedup.forget(session_id)
