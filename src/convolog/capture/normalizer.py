"""Normalize live browser captures into Activity records.

Two kinds of observation arrive from the browser:

- captured network responses of the chat API (headers, request body and
  the streamed SSE response body), of which only POST completion
  calls produce an activity
- DOM observations of artifacts, code blocks and tool invocations

Every function here is a pure mapping; storing and delivering activities
is left to the caller.
"""

import json
import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from convolog.ingest.parsers.base import parse_timestamp
from convolog.logging import get_logger
from convolog.models import Activity, TokenUsage

logger = get_logger("capture")

ACTIVITY_SOURCE = "extension"

RESPONSE_EVENT = "CLAUDE_RESPONSE"
DOM_EVENT = "DOM_ACTIVITY"
TITLE_EVENT = "CONVERSATION_TITLE"

INPUT_TOKENS_HEADER = "anthropic-input-tokens"
OUTPUT_TOKENS_HEADER = "anthropic-output-tokens"
CACHE_CREATION_HEADER = "anthropic-cache-creation-input-tokens"
CACHE_READ_HEADER = "anthropic-cache-read-input-tokens"
MODEL_HEADER = "x-model"

CONVERSATION_URL_RE = re.compile(r"/(?:chat_)?conversations/([a-f0-9-]+)")

PREVIEW_CHARS = 200


@dataclass
class StreamSummary:
    """What a streamed completion body contained."""

    content: str = ""
    model: str | None = None
    tokens: TokenUsage | None = None


@dataclass
class CapturedResponse:
    """A chat API response observed in the browser.

    Raw captures carry headers and bodies. Captures that were already
    reduced in the page carry tokens, model and content directly.
    """

    url: str
    timestamp: datetime
    method: str = "POST"
    status: int = 200
    headers: Mapping[str, str] = field(default_factory=dict)
    request_body: str | None = None
    response_body: str | None = None
    tokens: TokenUsage | None = None
    model: str | None = None
    conversation_id: str | None = None
    full_content: str | None = None
    user_message: str | None = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "CapturedResponse":
        """Build from the JSON shape sent by the capture script."""
        return cls(
            url=record["url"],
            timestamp=_event_timestamp(record),
            method=record.get("method", "POST"),
            status=int(record.get("status", 200)),
            headers=record.get("headers") or {},
            request_body=record.get("requestBody"),
            response_body=record.get("responseBody"),
            tokens=TokenUsage.from_record(record.get("tokens")),
            model=record.get("model") or None,
            conversation_id=record.get("conversationId"),
            full_content=record.get("fullContent"),
            user_message=record.get("userMessage"),
        )


@dataclass
class DOMObservation:
    """Something seen in the rendered chat page.

    kind is "artifact", "code_block" or "tool"; is_result separates tool
    results from tool invocations.
    """

    kind: str
    timestamp: datetime
    title: str | None = None
    artifact_type: str | None = None
    language: str | None = None
    code_content: str | None = None
    tool_name: str | None = None
    is_result: bool = False

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "DOMObservation":
        kind = record["type"]
        is_result = bool(record.get("isResult", False))
        if kind in ("tool_use", "tool_result"):
            is_result = kind == "tool_result"
            kind = "tool"
        return cls(
            kind=kind,
            timestamp=_event_timestamp(record),
            title=record.get("title"),
            artifact_type=record.get("artifactType"),
            language=record.get("language"),
            code_content=record.get("codeContent"),
            tool_name=record.get("toolName"),
            is_result=is_result,
        )


def _event_timestamp(record: Mapping[str, Any]) -> datetime:
    return parse_timestamp(record.get("timestamp")) or datetime.now(UTC)


def new_activity_id(now: datetime | None = None) -> str:
    """Generate an activity id of the form <epoch-ms>-<random>."""
    now = now or datetime.now(UTC)
    return f"{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:9]}"


def _header(headers: Mapping[str, str], name: str) -> str | None:
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def extract_token_headers(headers: Mapping[str, str]) -> TokenUsage | None:
    """Read token usage from response headers.

    Both input and output counts must be present; cache counts are optional.
    Header names are matched case-insensitively.
    """
    input_tokens = _header(headers, INPUT_TOKENS_HEADER)
    output_tokens = _header(headers, OUTPUT_TOKENS_HEADER)
    if not input_tokens or not output_tokens:
        return None

    try:
        usage = TokenUsage(input_tokens=int(input_tokens), output_tokens=int(output_tokens))
        cache_creation = _header(headers, CACHE_CREATION_HEADER)
        if cache_creation:
            usage.cache_creation_tokens = int(cache_creation)
        cache_read = _header(headers, CACHE_READ_HEADER)
        if cache_read:
            usage.cache_read_tokens = int(cache_read)
    except ValueError:
        logger.debug("Ignoring non-numeric token headers: input=%s output=%s", input_tokens, output_tokens)
        return None

    return usage


def parse_stream_events(body: str) -> StreamSummary:
    """Reduce a server-sent event stream to its content, model and usage.

    Args:
        body: Full SSE response body

    Returns:
        StreamSummary; tokens is None unless a positive count was seen
    """
    summary = StreamSummary()
    input_tokens = 0
    output_tokens = 0
    parts: list[str] = []

    for line in body.split("\n"):
        if not line.startswith("data: "):
            continue
        try:
            event = json.loads(line[6:])
        except json.JSONDecodeError:
            continue
        if not isinstance(event, dict):
            continue

        event_type = event.get("type")
        delta = event.get("delta")
        if event_type == "content_block_delta" and isinstance(delta, dict) and delta.get("text"):
            parts.append(delta["text"])

        # Legacy completion events replace the accumulated text
        if event.get("completion"):
            parts = [event["completion"]]

        message = event.get("message")
        if event_type == "message_start" and isinstance(message, dict):
            if message.get("model"):
                summary.model = message["model"]
            usage = message.get("usage") or {}
            if usage.get("input_tokens"):
                input_tokens = usage["input_tokens"]

        usage = event.get("usage")
        if isinstance(usage, dict):
            if usage.get("input_tokens"):
                input_tokens = usage["input_tokens"]
            if usage.get("output_tokens"):
                output_tokens = usage["output_tokens"]

        if event.get("model") and not summary.model:
            summary.model = event["model"]

    summary.content = "".join(parts)
    if input_tokens > 0 or output_tokens > 0:
        summary.tokens = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
    return summary


def _parse_request(request_body: str | None) -> dict[str, Any]:
    if not request_body:
        return {}
    try:
        data = json.loads(request_body)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def extract_user_message(request_body: str | None) -> str | None:
    """Find the prompt the user sent in a completion request body.

    Uses the legacy `prompt` string when present, otherwise the last
    user entry of `messages`.
    """
    data = _parse_request(request_body)

    if data.get("prompt"):
        return data["prompt"]

    messages = data.get("messages")
    if not isinstance(messages, list):
        return None

    user_messages = [m for m in messages if isinstance(m, dict) and m.get("role") == "user"]
    if not user_messages:
        return None

    content = user_messages[-1].get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            part.get("text", "") for part in content if isinstance(part, dict) and part.get("type") == "text"
        )
    return None


def preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def normalize_response(
    response: CapturedResponse,
    conversation_title: str | None = None,
    activity_id: str | None = None,
) -> Activity | None:
    """Map a captured API response to a message_received activity.

    Args:
        response: The captured response
        conversation_title: Title of the conversation, if known
        activity_id: Id to use instead of a generated one

    Returns:
        Activity, or None for anything other than a POST completion call
    """
    if response.method.upper() != "POST" or "/completion" not in response.url:
        return None

    stream = parse_stream_events(response.response_body) if response.response_body else StreamSummary()
    request = _parse_request(response.request_body)

    tokens = extract_token_headers(response.headers) or response.tokens or stream.tokens
    model = _header(response.headers, MODEL_HEADER) or response.model or request.get("model") or stream.model

    conversation_id = response.conversation_id
    if conversation_id is None:
        match = CONVERSATION_URL_RE.search(response.url)
        if match:
            conversation_id = match.group(1)

    content = stream.content or response.full_content or ""
    user_message = response.user_message or extract_user_message(response.request_body)

    metadata: dict[str, Any] = {"messageRole": "assistant"}
    if content:
        metadata["messagePreview"] = preview(content)
        metadata["fullContent"] = content
    if user_message:
        metadata["userMessage"] = user_message

    return Activity(
        id=activity_id or new_activity_id(),
        type="message_received",
        source=ACTIVITY_SOURCE,
        timestamp=response.timestamp,
        conversation_id=conversation_id,
        conversation_title=conversation_title,
        model=model,
        tokens=tokens,
        metadata=metadata,
    )


def normalize_dom(
    observation: DOMObservation,
    conversation_id: str | None = None,
    conversation_title: str | None = None,
    activity_id: str | None = None,
) -> Activity | None:
    """Map a DOM observation to an activity, or None for unknown kinds."""
    metadata: dict[str, Any] = {}

    if observation.kind == "artifact":
        activity_type = "artifact_created"
        metadata["artifactTitle"] = observation.title
        metadata["artifactType"] = observation.artifact_type
    elif observation.kind == "code_block":
        activity_type = "code_block"
        metadata["codeLanguage"] = observation.language
        metadata["codeContent"] = observation.code_content
    elif observation.kind == "tool":
        activity_type = "tool_result" if observation.is_result else "tool_use"
        metadata["toolName"] = observation.tool_name
    else:
        return None

    return Activity(
        id=activity_id or new_activity_id(),
        type=activity_type,
        source=ACTIVITY_SOURCE,
        timestamp=observation.timestamp,
        conversation_id=conversation_id,
        conversation_title=conversation_title,
        model=None,
        tokens=None,
        metadata=metadata,
    )


def normalize_event(
    event: Mapping[str, Any],
    conversation_titles: Mapping[str, str] | None = None,
) -> Activity | None:
    """Normalize one captured message ({"type": ..., "data": {...}}).

    Args:
        event: Message as sent by the capture script
        conversation_titles: Known titles by conversation id

    Returns:
        Activity, or None if the event produces none

    Raises:
        ValueError: If the event has no data object
        KeyError: If a required field is missing
    """
    titles = conversation_titles or {}
    event_type = event.get("type")
    data = event.get("data")
    if not isinstance(data, Mapping):
        raise ValueError(f"Event has no data object: type={event_type}")

    if event_type == RESPONSE_EVENT:
        response = CapturedResponse.from_record(data)
        conversation_id = response.conversation_id
        if conversation_id is None:
            match = CONVERSATION_URL_RE.search(response.url)
            conversation_id = match.group(1) if match else None
        title = titles.get(conversation_id) if conversation_id else None
        return normalize_response(response, conversation_title=title)

    if event_type == DOM_EVENT:
        observation = DOMObservation.from_record(data)
        conversation_id = data.get("conversationId")
        title = titles.get(conversation_id) if conversation_id else None
        return normalize_dom(observation, conversation_id=conversation_id, conversation_title=title)

    logger.debug("Ignoring capture event: type=%s", event_type)
    return None
