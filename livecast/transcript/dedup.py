"""
Duplicate-segment suppression across engine events.

One grouping pass never yields duplicates. Duplicates only appear when the
engine re-reports an overlapping time range in a later event, so the check
lives on the publishing side: a segment already published for a session
(same speaker, same bounds within jitter, same normalized text) is skipped.
"""
from __future__ import annotations

import re
from collections import deque
from typing import Iterable

from livecast.transcript.models import Segment

# Timestamps are compared at 10ms resolution to absorb float jitter between events
_TIME_RESOLUTION = 100


def _normalize_text(text: str) -> str:
    """Lowercase, drop punctuation, collapse spaces so re-punctuated repeats still match."""
    text = re.sub(r"[.,;:!?]", " ", (text or "").lower())
    return re.sub(r"\s+", " ", text).strip()


def segment_key(segment: Segment) -> tuple[int, int, int, str]:
    return (
        segment.speaker,
        round(segment.start * _TIME_RESOLUTION),
        round(segment.end * _TIME_RESOLUTION),
        _normalize_text(segment.text),
    )


class _SeenKeys:
    """Bounded set of keys: oldest are forgotten first."""

    def __init__(self, max_keys: int) -> None:
        self._max_keys = max_keys
        self._order: deque[tuple] = deque()
        self._keys: set[tuple] = set()

    def add(self, key: tuple) -> bool:
        """Record key; False if it was already present."""
        if key in self._keys:
            return False
        self._keys.add(key)
        self._order.append(key)
        while len(self._order) > self._max_keys:
            self._keys.discard(self._order.popleft())
        return True


class SegmentDeduplicator:
    """Per-session memory of published segments."""

    def __init__(self, max_keys_per_session: int = 2048) -> None:
        self._max_keys = max_keys_per_session
        self._sessions: dict[str, _SeenKeys] = {}

    def filter_new(self, session_id: str, segments: Iterable[Segment]) -> list[Segment]:
        """Return only segments not yet published for this session (and remember them)."""
        seen = self._sessions.get(session_id)
        if seen is None:
            seen = self._sessions[session_id] = _SeenKeys(self._max_keys)
        return [s for s in segments if s.text.strip() and seen.add(segment_key(s))]

    def forget(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
