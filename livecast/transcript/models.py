"""
Word and segment structures for the transcript pipeline.

Each WordToken is one finalized unit from the transcription engine:
- text (one or more words, as emitted)
- start, end (seconds, session-relative; non-decreasing within a session)
- speaker (non-negative int; 0 when the engine gave no attribution)

A Segment is a run of consecutive same-speaker tokens.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass

FALLBACK_SPEAKER = 0


@dataclass(frozen=True)
class WordToken:
    """Smallest unit emitted by the engine."""

    text: str
    start: float
    end: float
    speaker: int | None = None  # None = engine gave no attribution; builder maps it to FALLBACK_SPEAKER


@dataclass(frozen=True)
class Segment:
    """
    One speaker-tagged transcript segment.

    text: token texts joined by single spaces.
    start/end: first token's start, last token's end.
    """

    text: str
    speaker: int
    start: float
    end: float

    def to_dict(self) -> dict:
        return asdict(self)
