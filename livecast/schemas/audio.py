"""
Schemas for HTTP audio ingress and session control.

The browser client sends camelCase (sessionId, audioChunk, isFirstChunk);
snake_case is accepted too.
"""
from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class AudioChunkRequest(BaseModel):
    """Body for POST /api/audio: one base64 PCM chunk (16-bit LE mono 16kHz)."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("session_id", "sessionId"),
        description="Opaque id, unique per recording start",
    )
    audio_chunk: str = Field(
        ...,
        validation_alias=AliasChoices("audio_chunk", "audioChunk"),
        description="Base64-encoded PCM bytes",
    )
    is_first_chunk: bool = Field(
        False,
        validation_alias=AliasChoices("is_first_chunk", "isFirstChunk"),
        description="True on the first chunk of a recording; (re)starts the session",
    )


class AudioChunkResponse(BaseModel):
    success: bool = True
    session_id: str


class StopResponse(BaseModel):
    session_id: str
    stopped: bool = Field(..., description="False when the session was already gone")


class SessionInfo(BaseModel):
    session_id: str
    created_at: float
    last_activity: float
    idle_seconds: float
    connection_state: str
    words: int


class SessionListResponse(BaseModel):
    sessions: list[SessionInfo]
