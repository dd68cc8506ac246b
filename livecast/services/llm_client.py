"""
Chat-completions client for the commentary model (OpenAI-compatible API, Groq by default).

Request:  { model, messages, temperature, max_tokens }
Response: { choices: [ { message: { content } } ] }
Missing or empty content is "no analysis available" (None), not an error.
Non-success status or network failure raises ModelCallFailed.
"""
from __future__ import annotations

import logging
from typing import Any

import httpx

from livecast.config import Settings, get_settings
from livecast.errors import ModelCallFailed

logger = logging.getLogger(__name__)


def extract_message_content(data: Any) -> str | None:
    """choices[0].message.content, stripped; None when absent or blank."""
    if not isinstance(data, dict):
        return None
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    message = first.get("message") if isinstance(first, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str):
        return None
    return content.strip() or None


def _log_chat_request(model: str, max_tokens: int, messages: list[dict[str, str]], max_content_len: int = 500) -> None:
    """Log payload sent to the LLM (content truncated)."""
    logger.debug("LLM request: model=%s, max_tokens=%s, messages=%s", model, max_tokens, len(messages))
    for i, msg in enumerate(messages):
        content = (msg.get("content") or "").strip()
        display = content if len(content) <= max_content_len else content[:max_content_len] + " ..."
        logger.debug("  [%s] role=%s len=%s: %s", i, msg.get("role", "?"), len(content), display)


class ChatCompletionClient:
    """
    Thin async client. Opens an httpx.AsyncClient per call like the rest of the
    services; transport is injectable (httpx.MockTransport in tests).
    """

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings or get_settings()
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool((self._settings.LLM_API_KEY or "").strip())

    @property
    def url(self) -> str:
        return f"{self._settings.LLM_BASE_URL.rstrip('/')}/chat/completions"

    async def complete(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str | None:
        settings = self._settings
        payload = {
            "model": settings.LLM_MODEL,
            "messages": messages,
            "temperature": settings.LLM_TEMPERATURE if temperature is None else temperature,
            "max_tokens": settings.LLM_MAX_TOKENS if max_tokens is None else max_tokens,
        }
        _log_chat_request(payload["model"], payload["max_tokens"], messages)
        headers = {
            "Authorization": f"Bearer {settings.LLM_API_KEY.strip()}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=settings.LLM_TIMEOUT_SECONDS, transport=self._transport) as client:
                resp = await client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ModelCallFailed(f"LLM request failed: {e}") from e

        if not resp.is_success:
            raise ModelCallFailed(f"LLM returned {resp.status_code}: {resp.text[:200]}")
        try:
            data = resp.json()
        except ValueError as e:
            raise ModelCallFailed("LLM response was not valid JSON") from e
        return extract_message_content(data)
