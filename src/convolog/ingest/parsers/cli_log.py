"""Parser for CLI session logs.

The CLI tool writes one JSONL file per session. Each line is a JSON object
with a `type` field:

- system: session metadata (session_id, cwd, git_branch); only the leading
  entry is used
- user / assistant: message.content is a string or an array of content
  blocks (text, thinking, tool_use, tool_result)
- tool_use: tool_name, tool_input
- tool_result: tool_name, result
- timestamp: ISO 8601 timestamp on every entry

Newer logs omit the leading system entry and carry sessionId, cwd and
gitBranch on every user/assistant line instead.
"""

import json
import re
from datetime import UTC, datetime
from pathlib import PurePosixPath
from typing import Any

from convolog.errors import NoDataError, report_malformed
from convolog.ingest.formats import FileFormat
from convolog.ingest.parsers.base import ParsedData, Parser, content_hash, fallback_message_id, parse_timestamp
from convolog.ingest.segmenter import segment_text
from convolog.logging import get_logger
from convolog.models import (
    CLI_LOG,
    ContentBlock,
    Conversation,
    Message,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    estimate_tokens,
)

logger = get_logger("parsers.cli_log")

# Length of the legacy tool_result field; the block keeps the full result
TOOL_RESULT_PREVIEW_CHARS = 500


def derive_conversation_name(filename: str, working_directory: str | None = None) -> str:
    """Name a session after its project directory, else after its file.

    Args:
        filename: Log file name (e.g., "fix-login_bug.jsonl")
        working_directory: Working directory captured from the session

    Returns:
        Display name for the conversation
    """
    if working_directory:
        project_name = working_directory.rstrip("/").split("/")[-1]
        if project_name and project_name != "~":
            return project_name

    stem = re.sub(r"\.jsonl$", "", PurePosixPath(filename).name, flags=re.IGNORECASE)
    return re.sub(r"[-_]", " ", stem)


class CliLogParser(Parser):
    """Parser for CLI JSONL session logs. One file is one conversation."""

    source_name = CLI_LOG
    formats = (FileFormat.LINE_DELIMITED_LOG,)

    def parse(self, data: bytes, filename: str) -> ParsedData:
        """Parse a JSONL session log into a single conversation.

        Args:
            data: Raw file content
            filename: Original file name, used for the fallback name

        Returns:
            ParsedData with one conversation and its messages

        Raises:
            NoDataError: If no line could be parsed
        """
        entries: list[dict[str, Any]] = []

        text = data.decode("utf-8", errors="replace")
        for line_number, line in enumerate(text.split("\n"), start=1):
            line = line.strip()
            if not line:
                continue

            try:
                entry = json.loads(line)
            except json.JSONDecodeError as e:
                report_malformed(logger, "log line", f"line={line_number} error={e}")
                continue

            if not isinstance(entry, dict):
                report_malformed(logger, "log line", f"line={line_number} not an object")
                continue

            entries.append(entry)

        if not entries:
            raise NoDataError("No valid entries found in JSONL file")

        # Logs without a session id get one derived from their content
        return self._parse_entries(entries, filename, f"session-{content_hash(data)}")

    def _parse_entries(
        self,
        entries: list[dict[str, Any]],
        filename: str,
        fallback_session_id: str,
    ) -> ParsedData:
        now = datetime.now(UTC)

        session_id: str | None = None
        working_directory: str | None = None
        git_branch: str | None = None

        first = entries[0]
        if first.get("type") == "system":
            session_id = first.get("session_id") or first.get("sessionId")
            working_directory = first.get("cwd")
            git_branch = first.get("git_branch") or first.get("gitBranch")
        else:
            for entry in entries:
                if entry.get("type") in ("user", "assistant"):
                    session_id = entry.get("sessionId") or entry.get("session_id")
                    working_directory = entry.get("cwd")
                    git_branch = entry.get("gitBranch") or entry.get("git_branch")
                    break

        if not session_id:
            session_id = fallback_session_id

        messages: list[Message] = []
        text_parts: list[str] = []
        timestamps: list[datetime] = []
        user_count = 0
        assistant_count = 0

        for position, entry in enumerate(entries):
            timestamp = parse_timestamp(entry.get("timestamp"))
            if timestamp is not None:
                timestamps.append(timestamp)

            try:
                message = self._parse_entry(entry, session_id, position, timestamp or now)
            except Exception as e:
                report_malformed(logger, "log entry", e)
                continue

            if message is None:
                continue

            if message.sender == "user":
                user_count += 1
                text_parts.append(message.text)
            elif message.sender == "assistant":
                assistant_count += 1
                text_parts.append(message.text)
            messages.append(message)

        full_text = " ".join(text_parts)

        conversation = Conversation(
            id=session_id,
            source=self.source_name,
            name=derive_conversation_name(filename, working_directory),
            summary=None,
            created_at=min(timestamps) if timestamps else now,
            updated_at=max(timestamps) if timestamps else now,
            imported_at=now,
            message_count=len(messages),
            user_message_count=user_count,
            assistant_message_count=assistant_count,
            estimated_tokens=estimate_tokens(full_text),
            full_text=full_text,
            project_path=working_directory,
            git_branch=git_branch,
            working_directory=working_directory,
        )

        logger.info(
            "Parsed CLI session: session_id=%s messages=%d",
            session_id,
            len(messages),
        )
        return ParsedData(source=self.source_name, conversations=[conversation], messages=messages)

    def _parse_entry(
        self,
        entry: dict[str, Any],
        session_id: str,
        position: int,
        timestamp: datetime,
    ) -> Message | None:
        """Convert one log entry to a message, or None for metadata entries."""
        entry_type = entry.get("type")
        message_id = entry.get("uuid") or fallback_message_id(session_id, position)

        if entry_type in ("user", "assistant"):
            text, blocks = self._extract_content(entry["message"]["content"])
            return Message(
                id=message_id,
                conversation_id=session_id,
                sender=entry_type,
                text=text,
                content_blocks=blocks or None,
                created_at=timestamp,
            )

        if entry_type == "tool_use":
            tool_name = entry["tool_name"]
            tool_input = entry.get("tool_input")
            return Message(
                id=message_id,
                conversation_id=session_id,
                sender="tool",
                text=f"[Tool: {tool_name}]",
                content_blocks=[ToolUseBlock(tool_name=tool_name, tool_input=tool_input)],
                created_at=timestamp,
                tool_name=tool_name,
                tool_input=json.dumps(tool_input, indent=2),
            )

        if entry_type == "tool_result":
            tool_name = entry.get("tool_name") or "Tool"
            result = entry["result"]
            if not isinstance(result, str):
                result = json.dumps(result)
            return Message(
                id=message_id,
                conversation_id=session_id,
                sender="tool",
                text=f"[Tool Result: {tool_name}]",
                content_blocks=[ToolResultBlock(tool_result=result, tool_name=tool_name)],
                created_at=timestamp,
                tool_name=tool_name,
                tool_result=result[:TOOL_RESULT_PREVIEW_CHARS],
            )

        # system entries and unknown types carry no message
        return None

    def _extract_content(self, content: str | list | None) -> tuple[str, list[ContentBlock]]:
        """Extract flattened text and blocks from message content.

        Args:
            content: Either a string or array of content blocks

        Returns:
            Tuple of (text joined by newlines, content blocks)
        """
        if content is None:
            return "", []

        if isinstance(content, str):
            return content, segment_text(content, handle_placeholders=False)

        text_parts: list[str] = []
        blocks: list[ContentBlock] = []

        for block in content:
            if isinstance(block, str):
                text_parts.append(block)
                blocks.extend(segment_text(block, handle_placeholders=False))
                continue

            block_type = block.get("type")
            if block_type == "text" and block.get("text"):
                text_parts.append(block["text"])
                blocks.extend(segment_text(block["text"], handle_placeholders=False))
            elif block_type == "thinking" and block.get("thinking"):
                text_parts.append(block["thinking"])
                blocks.append(ThinkingBlock(text=block["thinking"]))
            elif block_type == "tool_use":
                blocks.append(ToolUseBlock(tool_name=block.get("name") or "Tool", tool_input=block.get("input")))
            elif block_type == "tool_result":
                result = block.get("content")
                if isinstance(result, list):
                    result = "\n".join(
                        part.get("text", "")
                        for part in result
                        if isinstance(part, dict) and part.get("type") == "text"
                    )
                if isinstance(result, str) and result:
                    blocks.append(ToolResultBlock(tool_result=result))

        return "\n".join(text_parts), blocks
