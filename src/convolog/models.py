"""Canonical data models."""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Union

WEB_EXPORT = "web-export"
CLI_LOG = "cli-log"
SOURCES = (WEB_EXPORT, CLI_LOG)

ACTIVITY_TYPES = (
    "message_sent",
    "message_received",
    "artifact_created",
    "code_block",
    "tool_use",
    "tool_result",
)


def estimate_tokens(text: str) -> int:
    """Rough token estimate (chars / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


@dataclass(frozen=True)
class TextBlock:
    type: ClassVar[str] = "text"
    text: str


@dataclass(frozen=True)
class CodeBlock:
    type: ClassVar[str] = "code"
    text: str
    language: str | None = None


@dataclass(frozen=True)
class ThinkingBlock:
    type: ClassVar[str] = "thinking"
    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    type: ClassVar[str] = "tool_use"
    tool_name: str
    tool_input: dict[str, Any] | None = None


@dataclass(frozen=True)
class ToolResultBlock:
    type: ClassVar[str] = "tool_result"
    tool_result: str
    tool_name: str | None = None


@dataclass(frozen=True)
class ArtifactBlock:
    """An exported file or artifact. Empty text means the content was not exported."""

    type: ClassVar[str] = "artifact"
    artifact_title: str
    text: str = ""
    artifact_type: str | None = None

    @property
    def available(self) -> bool:
        return bool(self.text)


@dataclass(frozen=True)
class UnsupportedBlock:
    type: ClassVar[str] = "unsupported"
    text: str


ContentBlock = Union[
    TextBlock,
    CodeBlock,
    ThinkingBlock,
    ToolUseBlock,
    ToolResultBlock,
    ArtifactBlock,
    UnsupportedBlock,
]


def block_to_record(block: ContentBlock) -> dict[str, Any]:
    """Convert a content block to its persisted JSON shape."""
    if isinstance(block, (TextBlock, ThinkingBlock, UnsupportedBlock)):
        return {"type": block.type, "text": block.text}
    if isinstance(block, CodeBlock):
        record: dict[str, Any] = {"type": block.type, "text": block.text}
        if block.language:
            record["language"] = block.language
        return record
    if isinstance(block, ToolUseBlock):
        record = {"type": block.type, "toolName": block.tool_name}
        if block.tool_input is not None:
            record["toolInput"] = block.tool_input
        return record
    if isinstance(block, ToolResultBlock):
        record = {"type": block.type, "toolResult": block.tool_result}
        if block.tool_name:
            record["toolName"] = block.tool_name
        return record
    if isinstance(block, ArtifactBlock):
        record = {"type": block.type, "artifactTitle": block.artifact_title, "text": block.text}
        if block.artifact_type:
            record["artifactType"] = block.artifact_type
        return record
    raise TypeError(f"Unknown content block: {block!r}")


def block_from_record(record: dict[str, Any]) -> ContentBlock:
    """Rebuild a content block from its persisted JSON shape."""
    block_type = record.get("type")
    if block_type == "text":
        return TextBlock(text=record.get("text", ""))
    if block_type == "code":
        return CodeBlock(text=record.get("text", ""), language=record.get("language"))
    if block_type == "thinking":
        return ThinkingBlock(text=record.get("text", ""))
    if block_type == "tool_use":
        return ToolUseBlock(tool_name=record.get("toolName", "Tool"), tool_input=record.get("toolInput"))
    if block_type == "tool_result":
        return ToolResultBlock(tool_result=record.get("toolResult", ""), tool_name=record.get("toolName"))
    if block_type == "artifact":
        return ArtifactBlock(
            artifact_title=record.get("artifactTitle", "Artifact"),
            text=record.get("text", ""),
            artifact_type=record.get("artifactType"),
        )
    if block_type == "unsupported":
        return UnsupportedBlock(text=record.get("text", ""))
    raise ValueError(f"Unknown content block type: {block_type!r}")


def block_plain_text(block: ContentBlock) -> str:
    """Readable text of a block, used for rendering and text reconstruction."""
    if isinstance(block, (TextBlock, ThinkingBlock, UnsupportedBlock, CodeBlock, ArtifactBlock)):
        return block.text
    if isinstance(block, ToolUseBlock):
        return f"[Tool: {block.tool_name}]"
    if isinstance(block, ToolResultBlock):
        return block.tool_result
    raise TypeError(f"Unknown content block: {block!r}")


@dataclass
class Message:
    """A normalized message from either source."""

    id: str
    conversation_id: str
    sender: str  # user, assistant, system, tool
    text: str
    created_at: datetime
    content_blocks: list[ContentBlock] | None = None
    # Legacy scalar mirrors of the tool blocks
    tool_name: str | None = None
    tool_input: str | None = None
    tool_result: str | None = None


@dataclass
class Conversation:
    """A chat or CLI session with aggregated counters."""

    id: str
    source: str  # web-export, cli-log
    name: str
    created_at: datetime
    updated_at: datetime
    imported_at: datetime
    summary: str | None = None
    message_count: int = 0
    user_message_count: int = 0
    assistant_message_count: int = 0
    estimated_tokens: int = 0
    full_text: str = ""
    # CLI session metadata
    project_path: str | None = None
    git_branch: str | None = None
    working_directory: str | None = None


@dataclass
class TokenUsage:
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int | None = None
    cache_read_tokens: int | None = None

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_record(self) -> dict[str, int]:
        record = {"inputTokens": self.input_tokens, "outputTokens": self.output_tokens}
        if self.cache_creation_tokens is not None:
            record["cacheCreationTokens"] = self.cache_creation_tokens
        if self.cache_read_tokens is not None:
            record["cacheReadTokens"] = self.cache_read_tokens
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any] | None) -> "TokenUsage | None":
        if not record:
            return None
        return cls(
            input_tokens=int(record.get("inputTokens", 0)),
            output_tokens=int(record.get("outputTokens", 0)),
            cache_creation_tokens=record.get("cacheCreationTokens"),
            cache_read_tokens=record.get("cacheReadTokens"),
        )


@dataclass
class Activity:
    """A capture-time usage event, distinct from stored messages."""

    id: str
    type: str  # one of ACTIVITY_TYPES
    source: str  # web-export, extension
    timestamp: datetime
    conversation_id: str | None = None
    conversation_title: str | None = None
    model: str | None = None
    tokens: TokenUsage | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class DailyStats:
    """Per-day rollup of recorded activities."""

    date: str  # YYYY-MM-DD (UTC)
    input_tokens: int = 0
    output_tokens: int = 0
    message_count: int = 0
    artifact_count: int = 0
    tool_use_count: int = 0
    model_usage: dict[str, int] = field(default_factory=dict)

    def add(self, activity: Activity) -> None:
        """Fold one activity into the rollup."""
        if activity.tokens is not None:
            self.input_tokens += activity.tokens.input_tokens
            self.output_tokens += activity.tokens.output_tokens

        if activity.type in ("message_sent", "message_received"):
            self.message_count += 1
        elif activity.type == "artifact_created":
            self.artifact_count += 1
        elif activity.type == "tool_use":
            self.tool_use_count += 1

        if activity.model:
            self.model_usage[activity.model] = self.model_usage.get(activity.model, 0) + 1
