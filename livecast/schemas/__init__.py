"""Pydantic schemas for API request/response."""
from livecast.schemas.audio import (
    AudioChunkRequest,
    AudioChunkResponse,
    SessionInfo,
    SessionListResponse,
    StopResponse,
)

__all__ = [
    "AudioChunkRequest",
    "AudioChunkResponse",
    "SessionInfo",
    "SessionListResponse",
    "StopResponse",
]
