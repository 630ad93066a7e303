"""Tests for live activity normalization."""

import json
import re
from datetime import UTC, datetime

import pytest

from convolog.capture.normalizer import (
    CapturedResponse,
    DOMObservation,
    extract_token_headers,
    extract_user_message,
    new_activity_id,
    normalize_dom,
    normalize_event,
    normalize_response,
    parse_stream_events,
)
from convolog.models import TokenUsage

CAPTURED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
COMPLETION_URL = "https://chat.example.com/api/organizations/org-1/chat_conversations/0a1b-2c3d/completion"


def sse(*events: dict) -> str:
    return "\n\n".join(f"event: x\ndata: {json.dumps(event)}" for event in events)


STREAM = sse(
    {"type": "message_start", "message": {"model": "model-stream", "usage": {"input_tokens": 12}}},
    {"type": "content_block_delta", "delta": {"text": "Hello"}},
    {"type": "content_block_delta", "delta": {"text": ", world"}},
    {"type": "message_delta", "usage": {"output_tokens": 4}},
)


class TestExtractTokenHeaders:
    """Tests for extract_token_headers."""

    def test_reads_required_and_cache_headers(self) -> None:
        """Input, output and cache counts should be read case-insensitively."""
        usage = extract_token_headers({
            "Anthropic-Input-Tokens": "100",
            "anthropic-output-tokens": "20",
            "ANTHROPIC-CACHE-READ-INPUT-TOKENS": "80",
        })
        assert usage == TokenUsage(input_tokens=100, output_tokens=20, cache_read_tokens=80)

    def test_requires_both_counts(self) -> None:
        """Missing either count should mean no usage."""
        assert extract_token_headers({"anthropic-input-tokens": "100"}) is None
        assert extract_token_headers({}) is None

    def test_non_numeric_counts(self) -> None:
        """Non-numeric values should mean no usage."""
        assert extract_token_headers({"anthropic-input-tokens": "x", "anthropic-output-tokens": "1"}) is None


class TestParseStreamEvents:
    """Tests for parse_stream_events."""

    def test_accumulates_deltas_and_usage(self) -> None:
        """Deltas should be joined and usage taken from start and delta events."""
        summary = parse_stream_events(STREAM)

        assert summary.content == "Hello, world"
        assert summary.model == "model-stream"
        assert summary.tokens == TokenUsage(input_tokens=12, output_tokens=4)

    def test_legacy_completion_replaces_text(self) -> None:
        """Legacy completion events should replace the accumulated text."""
        summary = parse_stream_events(sse({"completion": "Hi"}, {"completion": "Hi there", "model": "legacy"}))

        assert summary.content == "Hi there"
        assert summary.model == "legacy"
        assert summary.tokens is None

    def test_ignores_noise(self) -> None:
        """Non-data lines and invalid JSON should be ignored."""
        summary = parse_stream_events("event: ping\ndata: {oops\n: comment\ndata: [1]\n")
        assert summary.content == ""
        assert summary.tokens is None

    def test_unicode_line_separators_inside_delta(self) -> None:
        """Raw U+2028 inside a delta should not split the event."""
        body = (
            'data: {"type": "content_block_delta", "delta": {"text": "a\u2028b"}}\n'
            'data: {"type": "message_delta", "usage": {"output_tokens": 3}}\n'
        )

        summary = parse_stream_events(body)

        assert summary.content == "a\u2028b"
        assert summary.tokens == TokenUsage(input_tokens=0, output_tokens=3)

    def test_crlf_line_endings(self) -> None:
        """Events separated by CRLF should still be read."""
        summary = parse_stream_events(STREAM.replace("\n", "\r\n"))
        assert summary.content == "Hello, world"

    def test_empty_model_in_message_start_is_ignored(self) -> None:
        """An empty model string should not count as a model."""
        summary = parse_stream_events(sse({"type": "message_start", "message": {"model": ""}}))
        assert summary.model is None


class TestExtractUserMessage:
    """Tests for extract_user_message."""

    def test_prompt_field(self) -> None:
        """Legacy request bodies carry the prompt directly."""
        assert extract_user_message(json.dumps({"prompt": "What is 2+2?"})) == "What is 2+2?"

    def test_last_user_message(self) -> None:
        """The last user entry of messages should be used."""
        body = json.dumps({
            "messages": [
                {"role": "user", "content": "first"},
                {"role": "assistant", "content": "reply"},
                {"role": "user", "content": [{"type": "text", "text": "second"}, {"type": "image"}]},
            ]
        })
        assert extract_user_message(body) == "second"

    def test_unparseable_body(self) -> None:
        """Missing or invalid bodies should give None."""
        assert extract_user_message(None) is None
        assert extract_user_message("not json") is None
        assert extract_user_message(json.dumps({"messages": []})) is None


class TestNormalizeResponse:
    """Tests for normalize_response."""

    def test_non_completion_produces_nothing(self) -> None:
        """Only completion calls should become activities."""
        response = CapturedResponse(url="https://chat.example.com/api/organizations", timestamp=CAPTURED_AT)
        assert normalize_response(response) is None

    def test_non_post_completion_produces_nothing(self) -> None:
        """Only POST requests to a completion URL should become activities."""
        response = CapturedResponse(url=COMPLETION_URL, timestamp=CAPTURED_AT, method="GET", response_body=STREAM)
        assert normalize_response(response) is None

    def test_method_is_case_insensitive(self) -> None:
        """A lowercase post should still count as a completion."""
        response = CapturedResponse(url=COMPLETION_URL, timestamp=CAPTURED_AT, method="post")
        assert normalize_response(response).type == "message_received"

    def test_completion_from_stream(self) -> None:
        """A streamed completion should become a message_received activity."""
        response = CapturedResponse(
            url=COMPLETION_URL,
            timestamp=CAPTURED_AT,
            request_body=json.dumps({"prompt": "Say hello", "model": "model-request"}),
            response_body=STREAM,
        )

        activity = normalize_response(response, conversation_title="Greetings", activity_id="act-1")

        assert activity.id == "act-1"
        assert activity.type == "message_received"
        assert activity.source == "extension"
        assert activity.timestamp == CAPTURED_AT
        assert activity.conversation_id == "0a1b-2c3d"
        assert activity.conversation_title == "Greetings"
        assert activity.model == "model-request"
        assert activity.tokens == TokenUsage(input_tokens=12, output_tokens=4)
        assert activity.metadata == {
            "messageRole": "assistant",
            "messagePreview": "Hello, world",
            "fullContent": "Hello, world",
            "userMessage": "Say hello",
        }

    def test_headers_take_precedence(self) -> None:
        """Header tokens and model should win over the stream."""
        response = CapturedResponse(
            url=COMPLETION_URL,
            timestamp=CAPTURED_AT,
            headers={
                "anthropic-input-tokens": "500",
                "anthropic-output-tokens": "50",
                "x-model": "model-header",
            },
            response_body=STREAM,
        )

        activity = normalize_response(response)

        assert activity.tokens == TokenUsage(input_tokens=500, output_tokens=50)
        assert activity.model == "model-header"

    def test_no_tokens_anywhere(self) -> None:
        """Without headers or usage events, tokens should be None."""
        response = CapturedResponse(url=COMPLETION_URL, timestamp=CAPTURED_AT)

        activity = normalize_response(response)

        assert activity.tokens is None
        assert activity.model is None
        assert activity.metadata == {"messageRole": "assistant"}

    def test_preview_is_truncated(self) -> None:
        """Long content should be previewed in 200 characters plus an ellipsis."""
        content = "a" * 250
        response = CapturedResponse(url=COMPLETION_URL, timestamp=CAPTURED_AT, full_content=content)

        activity = normalize_response(response)

        assert activity.metadata["messagePreview"] == "a" * 200 + "..."
        assert activity.metadata["fullContent"] == content

    def test_conversations_path_without_chat_prefix(self) -> None:
        """Conversation ids should also be found under /conversations/."""
        response = CapturedResponse(url="https://x/api/conversations/deadbeef/completion", timestamp=CAPTURED_AT)
        assert normalize_response(response).conversation_id == "deadbeef"

    def test_generated_ids_are_unique(self) -> None:
        """Generated ids should be <ms>-<random> and not repeat."""
        response = CapturedResponse(url=COMPLETION_URL, timestamp=CAPTURED_AT)

        first = normalize_response(response)
        second = normalize_response(response)

        assert re.fullmatch(r"\d+-[0-9a-f]{9}", first.id)
        assert first.id != second.id

    def test_new_activity_id_uses_milliseconds(self) -> None:
        """Ids should start with the epoch milliseconds of the given time."""
        assert new_activity_id(CAPTURED_AT).startswith(f"{int(CAPTURED_AT.timestamp() * 1000)}-")


class TestNormalizeDom:
    """Tests for normalize_dom."""

    def test_artifact(self) -> None:
        """Artifacts should become artifact_created activities."""
        observation = DOMObservation(kind="artifact", timestamp=CAPTURED_AT, title="Plan", artifact_type="text/markdown")

        activity = normalize_dom(observation, conversation_id="c1", conversation_title="Trip")

        assert activity.type == "artifact_created"
        assert activity.conversation_id == "c1"
        assert activity.conversation_title == "Trip"
        assert activity.tokens is None
        assert activity.model is None
        assert activity.metadata == {"artifactTitle": "Plan", "artifactType": "text/markdown"}

    def test_code_block(self) -> None:
        """Code blocks should keep language and content."""
        observation = DOMObservation(kind="code_block", timestamp=CAPTURED_AT, language="sql", code_content="SELECT 1")

        activity = normalize_dom(observation)

        assert activity.type == "code_block"
        assert activity.metadata == {"codeLanguage": "sql", "codeContent": "SELECT 1"}

    @pytest.mark.parametrize(("is_result", "expected"), [(False, "tool_use"), (True, "tool_result")])
    def test_tool(self, is_result: bool, expected: str) -> None:
        """Tool sightings should split on the result flag."""
        observation = DOMObservation(kind="tool", timestamp=CAPTURED_AT, tool_name="web_search", is_result=is_result)

        activity = normalize_dom(observation)

        assert activity.type == expected
        assert activity.metadata == {"toolName": "web_search"}

    def test_unknown_kind(self) -> None:
        """Unknown observation kinds should produce nothing."""
        assert normalize_dom(DOMObservation(kind="sidebar", timestamp=CAPTURED_AT)) is None


class TestNormalizeEvent:
    """Tests for normalize_event."""

    def test_response_event(self) -> None:
        """Captured response messages should be normalized with known titles."""
        event = {
            "type": "CLAUDE_RESPONSE",
            "data": {
                "url": COMPLETION_URL,
                "method": "POST",
                "status": 200,
                "tokens": {"inputTokens": 10, "outputTokens": 5},
                "model": "model-a",
                "fullContent": "Answer",
                "userMessage": "Question",
                "timestamp": int(CAPTURED_AT.timestamp() * 1000),
            },
        }

        activity = normalize_event(event, {"0a1b-2c3d": "My chat"})

        assert activity.type == "message_received"
        assert activity.timestamp == CAPTURED_AT
        assert activity.conversation_title == "My chat"
        assert activity.tokens == TokenUsage(10, 5)
        assert activity.model == "model-a"
        assert activity.metadata["userMessage"] == "Question"

    def test_dom_event_tool_result(self) -> None:
        """DOM messages with a tool_result type should become tool_result activities."""
        event = {
            "type": "DOM_ACTIVITY",
            "data": {"type": "tool_result", "toolName": "repl", "timestamp": "2026-03-01T12:00:00Z"},
        }

        activity = normalize_event(event)

        assert activity.type == "tool_result"
        assert activity.metadata == {"toolName": "repl"}
        assert activity.timestamp == CAPTURED_AT

    def test_other_events_are_ignored(self) -> None:
        """Title updates and unknown types should produce nothing."""
        assert normalize_event({"type": "CONVERSATION_TITLE", "data": {"title": "t", "conversationId": "c"}}) is None

    def test_missing_data(self) -> None:
        """Events without a data object should be rejected."""
        with pytest.raises(ValueError):
            normalize_event({"type": "CLAUDE_RESPONSE"})
