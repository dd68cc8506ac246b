"""
Segment builder: groups finalized word tokens into per-speaker segments.

build_segments() is a pure function: same input, same output, no retained state.
Callers recompute from the full token list instead of merging incrementally.

Speaker fallback: tokens without speaker attribution get speaker 0. We never
invent alternation between speakers without a signal from the engine.
assign_pause_speakers() exists as an opt-in, approximate mode (see its docstring).
"""
from __future__ import annotations

from typing import Iterable, Sequence

from livecast.transcript.models import FALLBACK_SPEAKER, Segment, WordToken


def _speaker_of(token: WordToken) -> int:
    return FALLBACK_SPEAKER if token.speaker is None else token.speaker


def build_segments(tokens: Iterable[WordToken]) -> list[Segment]:
    """
    Merge consecutive tokens sharing a speaker into one Segment, in order.

    Empty input -> []. One token -> one segment. Adjacent segments never share a speaker.
    """
    segments: list[Segment] = []
    run: list[WordToken] = []
    run_speaker: int | None = None

    for token in tokens:
        speaker = _speaker_of(token)
        if run and speaker != run_speaker:
            segments.append(_close_run(run, run_speaker))
            run = []
        run.append(token)
        run_speaker = speaker

    if run:
        segments.append(_close_run(run, run_speaker))
    return segments


def _close_run(run: list[WordToken], speaker: int) -> Segment:
    return Segment(
        text=" ".join(t.text for t in run),
        speaker=speaker,
        start=run[0].start,
        end=run[-1].end,
    )


def has_speaker_info(tokens: Sequence[WordToken]) -> bool:
    """True if the engine attributed at least one token to a speaker."""
    return any(t.speaker is not None for t in tokens)


def assign_pause_speakers(
    tokens: Sequence[WordToken],
    gap_seconds: float = 0.8,
    max_speakers: int = 2,
    first_speaker: int = FALLBACK_SPEAKER,
) -> list[WordToken]:
    """
    APPROXIMATE: alternate speaker ids whenever the pause between two tokens exceeds gap_seconds.

    Only for engines that report no diarization at all. Pauses are not speaker
    changes in general, so this produces false splits; it is off by default
    (DIARIZATION_PAUSE_FALLBACK) and must never be applied to tokens that already
    carry engine speaker ids.
    """
    if max_speakers < 1:
        max_speakers = 1
    out: list[WordToken] = []
    speaker = first_speaker % max_speakers
    last_end: float | None = None
    for token in tokens:
        if last_end is not None and token.start - last_end > gap_seconds:
            speaker = (speaker + 1) % max_speakers
        out.append(WordToken(text=token.text, start=token.start, end=token.end, speaker=speaker))
        last_end = token.end
    return out


def format_speaker_transcript(segments: Iterable[Segment]) -> str:
    """Transcript as the model consumes it: one "Speaker <id>: <text>" line per segment."""
    return "\n".join(f"Speaker {s.speaker}: {s.text}" for s in segments)
