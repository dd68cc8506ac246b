"""Transcript handling: word tokens, speaker segments, duplicate suppression."""
from .dedup import SegmentDeduplicator
from .models import FALLBACK_SPEAKER, Segment, WordToken
from .segments import (
    assign_pause_speakers,
    build_segments,
    format_speaker_transcript,
    has_speaker_info,
)

__all__ = [
    "FALLBACK_SPEAKER",
    "Segment",
    "SegmentDeduplicator",
    "WordToken",
    "assign_pause_speakers",
    "build_segments",
    "format_speaker_transcript",
    "has_speaker_info",
]
