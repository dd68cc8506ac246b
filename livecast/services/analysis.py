"""
Analysis trigger: running commentary on the live transcript.

When to run: the number of NEW transcript characters (finalized segment text)
since the last triggered analysis must exceed ANALYSIS_MIN_CHARS. The counter
resets when an analysis fires. At most one analysis is in flight per session;
text that arrives meanwhile keeps counting toward the next one.

What is sent: the whole speaker-labelled transcript so far
("Speaker <id>: <text>" per line, tail-limited), with a fixed system prompt.

Response convention: three labelled sections, ANALYSIS (internal, never shown),
EMOJI (one emoji) and MESSAGE (1-2 sentences for viewers). Responses without
the markers are still usable: the whole text becomes the message, no emoji.
Model failures are logged and the analysis is skipped.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from livecast.config import Settings, get_settings
from livecast.errors import ModelCallFailed
from livecast.services.llm_client import ChatCompletionClient
from livecast.transcript.models import WordToken
from livecast.transcript.segments import build_segments, format_speaker_transcript

if TYPE_CHECKING:
    from livecast.session_store import Session

logger = logging.getLogger(__name__)

ANALYSIS_SYSTEM_PROMPT = """You are an AI assistant that follows a live conversation between multiple speakers and comments on it in real time. Focus on the most recent statements.

Reply in exactly this format:
ANALYSIS: <short internal note on topics, tone and key points; not shown to viewers>
EMOJI: <one emoji that captures the current mood or topic>
MESSAGE: <one or two short sentences for the viewers>

Do not invent anything that was not said."""

_USER_PREFIX = "Analyze this fragment of an ongoing conversation:\n\n"

# Section markers at line start; tolerates "**MESSAGE:**" and "## Emoji:" styles.
_SECTION_RE = re.compile(
    r"^[ \t]*(?:#+[ \t]*)?(?:\*\*)?(ANALYSIS|EMOJI|MESSAGE)(?:\*\*)?[ \t]*:[ \t]*(?:\*\*)?",
    re.IGNORECASE | re.MULTILINE,
)

_EMOJI_BASE = (
    "["
    "\U0001F1E6-\U0001F1FF"
    "\U0001F300-\U0001F5FF"
    "\U0001F600-\U0001F64F"
    "\U0001F680-\U0001F6FF"
    "\U0001F700-\U0001FAFF"
    "\u2600-\u27BF"
    "\u2B05-\u2B07\u2B1B\u2B1C\u2B50\u2B55"
    "\u231A\u231B\u23E9-\u23FA"
    "]"
    "[\uFE0F\U0001F3FB-\U0001F3FF]*"
)
# Base emoji with modifiers, optionally joined by ZWJ into one glyph
_EMOJI_RE = re.compile(f"{_EMOJI_BASE}(?:\u200D{_EMOJI_BASE})*")


@dataclass
class AnalysisResult:
    """Parsed model output. emoji None = consumer substitutes its default."""

    raw: str
    message: str
    emoji: str | None = None
    notes: str | None = None
    structured: bool = False


@dataclass
class AnalysisEvent:
    session_id: str
    text: str
    message: str
    emoji: str | None = None
    notes: str | None = None
    transcript: str = ""

    def to_payload(self) -> dict:
        """Broadcast payload. Internal notes stay server-side."""
        return {
            "sessionId": self.session_id,
            "analysis": self.message,
            "emoji": self.emoji,
            "transcript": self.transcript,
        }


def find_emoji(text: str) -> str | None:
    match = _EMOJI_RE.search(text or "")
    return match.group(0) if match else None


def _split_leading_emoji(text: str) -> tuple[str | None, str]:
    stripped = (text or "").lstrip()
    match = _EMOJI_RE.match(stripped)
    if not match:
        return None, (text or "").strip()
    return match.group(0), stripped[match.end():].strip()


def parse_analysis_response(text: str) -> AnalysisResult:
    """
    Split the model output into notes / emoji / message.

    Emoji preference: the EMOJI section, then an emoji at the very start of the
    message (removed from the message), then the first emoji anywhere in the message.
    No MESSAGE marker: whole text is the message and no emoji is extracted.
    """
    raw = (text or "").strip()
    markers = list(_SECTION_RE.finditer(raw))
    sections: dict[str, str] = {}
    for i, match in enumerate(markers):
        end = markers[i + 1].start() if i + 1 < len(markers) else len(raw)
        name = match.group(1).upper()
        # First occurrence wins; models sometimes echo the format at the end
        sections.setdefault(name, raw[match.end():end].strip())

    if "MESSAGE" not in sections:
        return AnalysisResult(raw=raw, message=raw)

    message = sections["MESSAGE"]
    emoji = find_emoji(sections.get("EMOJI", ""))
    if emoji is None:
        emoji, message = _split_leading_emoji(message)
    if emoji is None:
        emoji = find_emoji(message)
    return AnalysisResult(
        raw=raw,
        message=message,
        emoji=emoji,
        notes=sections.get("ANALYSIS") or None,
        structured=True,
    )


def build_analysis_messages(transcript: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
        {"role": "user", "content": f"{_USER_PREFIX}{transcript}"},
    ]


class AnalysisTrigger:
    """Decides when to call the model and turns its reply into an AnalysisEvent."""

    def __init__(self, client: ChatCompletionClient, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self.min_chars = self._settings.ANALYSIS_MIN_CHARS

    @property
    def enabled(self) -> bool:
        return self._settings.ANALYSIS_ENABLED and self._client.configured

    def record_new_text(self, session: Session, text: str) -> bool:
        """
        Count new transcript characters for the session. True when an analysis should fire now
        (threshold exceeded and none in flight). Firing resets the counter.
        """
        session.chars_since_analysis += len((text or "").strip())
        if not self.enabled or session.chars_since_analysis <= self.min_chars:
            return False
        task = session.analysis_task
        if task is not None and not task.done():
            return False
        session.chars_since_analysis = 0
        return True

    def transcript_for(self, tokens: list[WordToken]) -> str:
        """Speaker-labelled transcript recomputed from all tokens, tail-limited for the prompt."""
        transcript = format_speaker_transcript(build_segments(tokens))
        limit = self._settings.ANALYSIS_MAX_TRANSCRIPT_CHARS
        if limit > 0 and len(transcript) > limit:
            tail = transcript[-limit:]
            # Start on a full line
            newline = tail.find("\n")
            transcript = tail[newline + 1:] if 0 <= newline < len(tail) - 1 else tail
        return transcript

    async def analyze(self, session_id: str, transcript: str) -> AnalysisEvent | None:
        """Call the model. None when it fails or has nothing to say; never raises ModelCallFailed."""
        if not transcript.strip():
            return None
        try:
            content = await self._client.complete(build_analysis_messages(transcript))
        except ModelCallFailed as e:
            logger.warning("Session %s: analysis skipped: %s", session_id, e)
            return None
        if not content:
            logger.info("Session %s: no analysis available (empty model response)", session_id)
            return None

        result = parse_analysis_response(content)
        if not result.structured:
            logger.debug("Session %s: model reply had no section markers; using it as message", session_id)
        if not result.message and result.emoji is None:
            return None
        return AnalysisEvent(
            session_id=session_id,
            text=result.raw,
            message=result.message,
            emoji=result.emoji,
            notes=result.notes,
            transcript=transcript,
        )
