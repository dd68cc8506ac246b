from __future__ import annotations

import asyncio

import httpx
import pytest

from livecast.errors import ModelCallFailed
from livecast.services.analysis import (
    AnalysisTrigger,
    build_analysis_messages,
    find_emoji,
    parse_analysis_response,
)
from livecast.services.llm_client import ChatCompletionClient, extract_message_content
from livecast.session_store import Session
from livecast.transcript.models import WordToken


def _session() -> Session:
    return Session(id="s1", created_at=0.0, last_activity=0.0)


def test_response_without_markers_is_the_message():
    text = "They seem to be planning a weekend trip 🏖️ and arguing about dates."
    result = parse_analysis_response(text)
    assert result.message == text
    assert result.emoji is None
    assert not result.structured


def test_structured_response_sections():
    result = parse_analysis_response(
        "ANALYSIS: Two people compare travel plans; friendly tone.\n"
        "EMOJI: \u2708\ufe0f\n"
        "MESSAGE: Sounds like a trip is being planned!"
    )
    assert result.structured
    assert result.notes == "Two people compare travel plans; friendly tone."
    assert result.emoji == "\u2708\ufe0f"
    assert result.message == "Sounds like a trip is being planned!"


def test_markdown_decorated_markers_are_recognised():
    result = parse_analysis_response("**Analysis:** calm\n**Emoji:** 😊\n**Message:** All good here.")
    assert result.emoji == "😊"
    assert result.message == "All good here."


def test_emoji_at_start_of_message_is_split_off():
    result = parse_analysis_response("ANALYSIS: x\nMESSAGE: 🎉 Big news was just shared!")
    assert result.emoji == "🎉"
    assert result.message == "Big news was just shared!"


def test_emoji_anywhere_in_message_is_used_last():
    result = parse_analysis_response("MESSAGE: The budget talk is heating up 🔥 quickly.")
    assert result.emoji == "🔥"
    assert result.message == "The budget talk is heating up 🔥 quickly."


def test_no_emoji_anywhere_leaves_it_unset():
    result = parse_analysis_response("EMOJI: none\nMESSAGE: Nothing notable yet.")
    assert result.emoji is None
    assert result.message == "Nothing notable yet."


def test_find_emoji_keeps_joined_sequences():
    assert find_emoji("team \U0001F469\u200d\U0001F4BB sync") == "\U0001F469\u200d\U0001F4BB"
    assert find_emoji("plain text") is None


def test_messages_use_fixed_prompt_and_transcript():
    messages = build_analysis_messages("Speaker 0: hello")
    assert [m["role"] for m in messages] == ["system", "user"]
    assert messages[1]["content"].endswith("Speaker 0: hello")


def test_threshold_counts_new_text_only(settings):
    trigger = AnalysisTrigger(ChatCompletionClient(settings), settings=settings)
    session = _session()
    assert trigger.record_new_text(session, "hello") is False
    assert trigger.record_new_text(session, "world") is False  # exactly 10 is not enough
    assert trigger.record_new_text(session, "!") is True
    assert session.chars_since_analysis == 0
    assert trigger.record_new_text(session, "short") is False


def test_threshold_waits_for_in_flight_analysis(settings):
    async def scenario():
        trigger = AnalysisTrigger(ChatCompletionClient(settings), settings=settings)
        session = _session()
        session.analysis_task = asyncio.create_task(asyncio.sleep(10))
        assert trigger.record_new_text(session, "hello world") is False
        assert session.chars_since_analysis == 11
        session.analysis_task.cancel()
        await asyncio.gather(session.analysis_task, return_exceptions=True)
        assert trigger.record_new_text(session, "") is True

    asyncio.run(scenario())


def test_trigger_disabled_without_api_key(settings_factory):
    settings = settings_factory(LLM_API_KEY="")
    trigger = AnalysisTrigger(ChatCompletionClient(settings), settings=settings)
    assert not trigger.enabled
    assert trigger.record_new_text(_session(), "a long enough piece of text") is False


def test_transcript_for_is_speaker_labelled_and_tail_limited(settings_factory):
    settings = settings_factory(ANALYSIS_MAX_TRANSCRIPT_CHARS=40)
    trigger = AnalysisTrigger(ChatCompletionClient(settings), settings=settings)
    tokens = [
        WordToken("good", 0.0, 0.2, 0),
        WordToken("morning", 0.2, 0.5, 0),
        WordToken("hi", 0.6, 0.7, 1),
        WordToken("how", 0.8, 0.9, 0),
        WordToken("are", 0.9, 1.0, 0),
        WordToken("you", 1.0, 1.1, 0),
    ]
    assert trigger.transcript_for(tokens) == "Speaker 1: hi\nSpeaker 0: how are you"


def test_analyze_sends_chat_request(settings, chat_transport):
    transport = chat_transport("ANALYSIS: greeting\nEMOJI: 👋\nMESSAGE: Someone just said hello.")
    trigger = AnalysisTrigger(ChatCompletionClient(settings, transport=transport), settings=settings)

    event = asyncio.run(trigger.analyze("s1", "Speaker 0: hello world"))

    assert event is not None
    assert event.to_payload() == {
        "sessionId": "s1",
        "analysis": "Someone just said hello.",
        "emoji": "👋",
        "transcript": "Speaker 0: hello world",
    }
    [body] = transport.requests
    assert body["model"] == settings.LLM_MODEL
    assert body["temperature"] == 0.7
    assert body["max_tokens"] == 250
    assert body["messages"][1]["content"].endswith("Speaker 0: hello world")


def test_analyze_skips_on_model_failure(settings, chat_transport):
    trigger = AnalysisTrigger(ChatCompletionClient(settings, transport=chat_transport(status=500)), settings=settings)
    assert asyncio.run(trigger.analyze("s1", "Speaker 0: hello world")) is None


def test_analyze_skips_on_network_error(settings):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = ChatCompletionClient(settings, transport=httpx.MockTransport(refuse))
    with pytest.raises(ModelCallFailed):
        asyncio.run(client.complete([{"role": "user", "content": "hi"}]))
    trigger = AnalysisTrigger(client, settings=settings)
    assert asyncio.run(trigger.analyze("s1", "Speaker 0: hi")) is None


def test_empty_model_content_is_no_analysis(settings, chat_transport):
    trigger = AnalysisTrigger(ChatCompletionClient(settings, transport=chat_transport("   ")), settings=settings)
    assert asyncio.run(trigger.analyze("s1", "Speaker 0: hello world")) is None


@pytest.mark.parametrize(
    "data, expected",
    [
        ({"choices": [{"message": {"content": " hi "}}]}, "hi"),
        ({"choices": []}, None),
        ({"choices": [{"message": {}}]}, None),
        ({}, None),
        ([], None),
    ],
)
def test_extract_message_content(data, expected):
    assert extract_message_content(data) == expected
