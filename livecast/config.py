"""Application configuration. Loads from env vars."""
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """App settings. Override via environment variables."""

    # Audio: PCM 16-bit mono, 16kHz (what the browser client sends)
    SAMPLE_RATE: int = 16000
    CHANNELS: int = 1
    ENCODING: Literal["linear16"] = "linear16"

    # Deepgram live transcription (one websocket per session)
    DEEPGRAM_API_KEY: str = ""
    DEEPGRAM_URL: str = "wss://api.deepgram.com/v1/listen"
    DEEPGRAM_MODEL: str = "nova-2-phonecall"
    DEEPGRAM_KEEPALIVE_SECONDS: float = 8.0  # Deepgram drops idle streams after ~10s without data
    UPSTREAM_CONNECT_TIMEOUT_SECONDS: float = 10.0
    UPSTREAM_SEND_QUEUE_CHUNKS: int = 64  # chunks buffered while the engine is slow; overflow is dropped

    # Speaker diarization hints (advisory to the engine, not enforced locally)
    DIARIZATION_MIN_SPEAKERS: int = 2
    DIARIZATION_MAX_SPEAKERS: int = 2
    # Approximate pause-based speaker alternation when the engine reports no speakers at all.
    DIARIZATION_PAUSE_FALLBACK: bool = False
    DIARIZATION_PAUSE_GAP_SEC: float = 0.8

    # LLM commentary: any OpenAI-compatible chat completions endpoint (Groq by default)
    LLM_API_KEY: str = ""
    LLM_BASE_URL: str = "https://api.groq.com/openai/v1"
    LLM_MODEL: str = "llama-3.1-8b-instant"
    LLM_TEMPERATURE: float = 0.7
    LLM_MAX_TOKENS: int = 250
    LLM_TIMEOUT_SECONDS: float = 30.0

    # Analysis trigger
    ANALYSIS_ENABLED: bool = True
    ANALYSIS_MIN_CHARS: int = 10  # new transcript chars since last analysis; must be exceeded
    ANALYSIS_MAX_TRANSCRIPT_CHARS: int = 6000  # tail of the transcript sent to the model; 0 = all
    ANALYSIS_DEFAULT_EMOJI: str = "💬"

    # Broadcast topics (one per event kind); every message carries sessionId
    BROADCAST_TRANSCRIPTION_TOPIC: str = "transcription"
    BROADCAST_ANALYSIS_TOPIC: str = "analysis"
    BROADCAST_SUBSCRIBER_QUEUE_SIZE: int = 256

    # Session reaper
    REAPER_INTERVAL_SECONDS: float = 60.0
    SESSION_IDLE_TIMEOUT_SECONDS: float = 300.0
    RETIRED_SESSION_IDS_MAX: int = 10000  # closed ids remembered to reject late audio

    # Logging: level (DEBUG, INFO, WARNING, ERROR); file path empty = console only.
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"


def get_settings() -> Settings:
    return Settings()
