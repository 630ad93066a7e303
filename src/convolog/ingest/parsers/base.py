"""Base parser interface and registry."""

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime

from convolog.ingest.formats import FileFormat
from convolog.models import Conversation, Message

__all__ = ["ParsedData", "Parser", "ParserRegistry", "content_hash", "fallback_message_id", "parse_timestamp"]


def content_hash(content: bytes | str) -> str:
    """Compute SHA256 hash of content for stable identifiers.

    Args:
        content: Raw bytes or text to hash

    Returns:
        First 16 characters of the hex-encoded SHA256 hash
    """
    if isinstance(content, str):
        content = content.encode()
    return hashlib.sha256(content).hexdigest()[:16]


def fallback_message_id(conversation_id: str, position: int) -> str:
    """Stable id for a message whose source carries none.

    The ID format is: {conversation_id}:{position}

    Re-importing the same file yields the same ids, so duplicate detection
    keeps working for sources without message identifiers.
    """
    return f"{conversation_id}:{position}"


def parse_timestamp(value: str | int | float | None) -> datetime | None:
    """Parse an ISO 8601 string or Unix timestamp into an aware UTC datetime.

    Args:
        value: ISO 8601 timestamp (e.g., "2026-01-26T00:38:34.590Z"),
            Unix seconds, or Unix milliseconds

    Returns:
        Timezone-aware datetime, or None if the value cannot be parsed
    """
    if value is None or value == "":
        return None

    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        # Millisecond timestamps are well past year 2286 in seconds
        seconds = value / 1000 if value > 10_000_000_000 else value
        try:
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None

    try:
        text = value
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    except (ValueError, AttributeError):
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


@dataclass
class ParsedData:
    """Conversations and messages extracted from one or more files."""

    source: str
    conversations: list[Conversation] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)


class Parser(ABC):
    """Base class for export parsers.

    Subclasses must set the `source_name` and `formats` class attributes and
    implement the `parse()` method to convert a raw export into
    Conversation and Message records.
    """

    source_name: str
    formats: tuple[FileFormat, ...]

    @abstractmethod
    def parse(self, data: bytes, filename: str) -> ParsedData:
        """Parse raw file bytes into conversations and messages.

        Args:
            data: Raw file content
            filename: Original file name, used for naming and diagnostics

        Returns:
            ParsedData tagged with this parser's source

        Raises:
            FormatError: Input does not match any known shape
            NoDataError: Input matched but yielded no records
        """


class ParserRegistry:
    """Registry of parsers by source name and file format."""

    _parsers: dict[str, Parser] = {}

    @classmethod
    def register(cls, parser: Parser) -> None:
        """Register a parser."""
        cls._parsers[parser.source_name] = parser

    @classmethod
    def get(cls, source_name: str) -> Parser | None:
        """Get parser by source name."""
        return cls._parsers.get(source_name)

    @classmethod
    def for_format(cls, file_format: FileFormat) -> Parser | None:
        """Get the parser that handles a detected file format."""
        for parser in cls._parsers.values():
            if file_format in parser.formats:
                return parser
        return None

    @classmethod
    def all_sources(cls) -> list[str]:
        """List all registered source names."""
        return list(cls._parsers.keys())
