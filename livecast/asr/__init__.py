"""Upstream transcription: one streaming engine connection per session."""
from .base import ConnectionState, TranscriptionConnection, TranscriptionConnector, UpstreamHandlers
from .deepgram import DeepgramConnection, DeepgramConnector, build_listen_url, parse_transcript_event

__all__ = [
    "ConnectionState",
    "DeepgramConnection",
    "DeepgramConnector",
    "TranscriptionConnection",
    "TranscriptionConnector",
    "UpstreamHandlers",
    "build_listen_url",
    "parse_transcript_event",
]
