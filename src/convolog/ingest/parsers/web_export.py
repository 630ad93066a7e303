"""Parser for web chat exports.

The web product exports a ZIP archive holding a single conversations.json
document (the JSON document may also be uploaded on its own). The document
is usually a bare array of conversation objects:

- uuid: Conversation identifier
- name: Display title
- summary: Optional summary
- created_at / updated_at: ISO 8601 timestamps
- chat_messages (older exports: messages): list of messages

Each message carries:
- uuid, sender ("human" or "assistant"), created_at
- text: legacy flattened text
- content: list of blocks (text, thinking, tool_use, tool_result, artifact)
- files: exported files and artifacts (content may be missing)
- attachments: user uploads with extracted_content
"""

import io
import json
import re
import zipfile
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from convolog.errors import FormatError, NoDataError, report_malformed
from convolog.ingest.formats import FileFormat
from convolog.ingest.parsers.base import ParsedData, Parser, fallback_message_id, parse_timestamp
from convolog.ingest.segmenter import segment_text
from convolog.logging import get_logger
from convolog.models import (
    WEB_EXPORT,
    ArtifactBlock,
    CodeBlock,
    ContentBlock,
    Conversation,
    Message,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    estimate_tokens,
)

logger = get_logger("parsers.web_export")

ARCHIVE_JSON_PATHS = (
    "conversations.json",
    "claude/conversations.json",
    "export/conversations.json",
    "data/conversations.json",
)

CODE_FILE_RE = re.compile(
    r"\.(js|ts|tsx|jsx|py|rb|go|rs|java|cpp|c|h|css|html|json|yaml|yml|xml|sql|sh|bash)$",
    re.IGNORECASE,
)

# Pasted text shows up as a content-less file entry; it is not an artifact
PASTE_FILE_NAME = "paste.txt"

ConversationListMatcher = Callable[[Any], list | None]


def _match_bare_list(data: Any) -> list | None:
    return data if isinstance(data, list) else None


def _match_key(key: str) -> ConversationListMatcher:
    def matcher(data: Any) -> list | None:
        if isinstance(data, dict) and isinstance(data.get(key), list):
            return data[key]
        return None

    return matcher


def _match_single_list_property(data: Any) -> list | None:
    if not isinstance(data, dict):
        return None
    list_values = [value for value in data.values() if isinstance(value, list)]
    if len(list_values) == 1:
        return list_values[0]
    return None


# Tried in order; the first matcher returning a list wins
CONVERSATION_LIST_MATCHERS: list[ConversationListMatcher] = [
    _match_bare_list,
    _match_key("conversations"),
    _match_key("chats"),
    _match_single_list_property,
]


def _extension(file_name: str) -> str:
    return file_name.rsplit(".", 1)[-1] if "." in file_name else ""


class WebExportParser(Parser):
    """Parser for web chat exports (ZIP archive or bare conversations.json)."""

    source_name = WEB_EXPORT
    formats = (FileFormat.ARCHIVED_EXPORT, FileFormat.PLAIN_JSON_EXPORT)

    def parse(self, data: bytes, filename: str) -> ParsedData:
        """Parse an export archive or JSON document.

        Args:
            data: Raw file content (ZIP archive or JSON)
            filename: Original file name

        Returns:
            ParsedData with all conversations that could be parsed
        """
        if zipfile.is_zipfile(io.BytesIO(data)):
            document = self._read_archive(data)
        elif filename.lower().endswith(".zip"):
            raise FormatError(f"{filename} is not a valid ZIP archive")
        else:
            document = data

        return self.parse_document(document)

    def _read_archive(self, data: bytes) -> bytes:
        """Locate conversations.json inside a ZIP archive.

        Raises:
            FormatError: If no conversations.json is present
        """
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                names = archive.namelist()

                target = next((path for path in ARCHIVE_JSON_PATHS if path in names), None)
                if target is None:
                    target = next(
                        (
                            name
                            for name in names
                            if name.endswith("conversations.json") and not name.startswith("__MACOSX")
                        ),
                        None,
                    )

                if target is None:
                    entries = [name for name in names if not name.startswith("__MACOSX")]
                    raise FormatError(
                        "conversations.json not found in ZIP file. "
                        f"Files in archive: {', '.join(entries) or '(empty)'}"
                    )

                logger.debug("Reading export document: entry=%s", target)
                return archive.read(target)
        except zipfile.BadZipFile as e:
            raise FormatError(f"Could not read ZIP archive: {e}") from e

    def parse_document(self, document: bytes | str) -> ParsedData:
        """Parse a conversations.json document.

        Raises:
            FormatError: Not JSON, or no conversation list could be found
            NoDataError: No conversation survived parsing
        """
        if isinstance(document, bytes):
            try:
                document = document.decode("utf-8-sig")
            except UnicodeDecodeError as e:
                raise FormatError(f"Export is not valid UTF-8: {e}") from e

        try:
            data = json.loads(document)
        except json.JSONDecodeError as e:
            raise FormatError(f"Export is not valid JSON: {e}") from e

        conversations_raw = self._find_conversation_list(data)

        imported_at = datetime.now(UTC)
        result = ParsedData(source=self.source_name)

        for raw in conversations_raw:
            try:
                conversation, messages = self._parse_conversation(raw, imported_at)
            except Exception as e:
                report_malformed(logger, "conversation", e)
                continue
            result.conversations.append(conversation)
            result.messages.extend(messages)

        if not result.conversations:
            raise NoDataError("No valid conversations found in export")

        logger.info(
            "Parsed web export: conversations=%d messages=%d",
            len(result.conversations),
            len(result.messages),
        )
        return result

    def _find_conversation_list(self, data: Any) -> list:
        for matcher in CONVERSATION_LIST_MATCHERS:
            found = matcher(data)
            if found is not None:
                return found

        keys = ", ".join(data.keys()) if isinstance(data, dict) else type(data).__name__
        raise FormatError(
            "Invalid export format: could not find conversations array. "
            f"Found keys: {keys}"
        )

    def _parse_conversation(
        self,
        raw: dict[str, Any],
        imported_at: datetime,
    ) -> tuple[Conversation, list[Message]]:
        """Convert one exported conversation object.

        Raises:
            ValueError: If the object has no identifier
        """
        conversation_id = raw.get("uuid") or raw.get("id")
        if not conversation_id:
            raise ValueError("conversation has no uuid")

        name = raw.get("name") or "Untitled Conversation"
        created_at = parse_timestamp(raw.get("created_at")) or imported_at
        updated_at = parse_timestamp(raw.get("updated_at")) or created_at

        messages: list[Message] = []
        text_parts = [raw.get("name") or ""]
        user_count = 0
        assistant_count = 0

        raw_messages = raw.get("chat_messages") or raw.get("messages") or []
        for position, raw_message in enumerate(raw_messages):
            try:
                message = self._parse_message(raw_message, conversation_id, position, created_at)
            except Exception as e:
                report_malformed(logger, "message", e)
                continue

            if message.sender == "user":
                user_count += 1
            else:
                assistant_count += 1
            text_parts.append(message.text)
            messages.append(message)

        full_text = " ".join(text_parts)

        conversation = Conversation(
            id=conversation_id,
            source=self.source_name,
            name=name,
            summary=raw.get("summary") or None,
            created_at=created_at,
            updated_at=updated_at,
            imported_at=imported_at,
            message_count=len(messages),
            user_message_count=user_count,
            assistant_message_count=assistant_count,
            estimated_tokens=estimate_tokens(full_text),
            full_text=full_text,
        )
        return conversation, messages

    def _parse_message(
        self,
        raw: dict[str, Any],
        conversation_id: str,
        position: int,
        default_created_at: datetime,
    ) -> Message:
        sender = "user" if raw.get("sender") == "human" else "assistant"
        text, blocks = self._extract_content(raw)

        return Message(
            id=raw.get("uuid") or fallback_message_id(conversation_id, position),
            conversation_id=conversation_id,
            sender=sender,
            text=text,
            content_blocks=blocks or None,
            created_at=parse_timestamp(raw.get("created_at")) or default_created_at,
        )

    def _extract_content(self, raw: dict[str, Any]) -> tuple[str, list[ContentBlock]]:
        """Collect text and blocks from files, attachments and content, in that order."""
        blocks: list[ContentBlock] = []
        text_parts: list[str] = []

        for file in raw.get("files") or []:
            content = file.get("content") or file.get("extracted_content")
            file_name = file.get("file_name") or "Artifact"

            if content:
                if CODE_FILE_RE.search(file_name):
                    blocks.append(CodeBlock(text=content, language=_extension(file_name)))
                else:
                    blocks.append(
                        ArtifactBlock(
                            artifact_title=file_name,
                            text=content,
                            artifact_type=file.get("file_type") or "text/plain",
                        )
                    )
                text_parts.append(content)
            elif file_name != PASTE_FILE_NAME:
                blocks.append(ArtifactBlock(artifact_title=file_name, text=""))

        for attachment in raw.get("attachments") or []:
            content = attachment.get("extracted_content")
            if not content:
                continue

            file_name = attachment.get("file_name") or ""
            file_type = attachment.get("file_type") or ""
            is_markdown = file_name.endswith(".md") or "markdown" in file_type
            is_code = "text/" in file_type or bool(CODE_FILE_RE.search(file_name))

            if is_code and not is_markdown:
                blocks.append(CodeBlock(text=content, language=_extension(file_name)))
            else:
                blocks.append(
                    ArtifactBlock(
                        artifact_title=file_name or "Attachment",
                        text=content,
                        artifact_type=file_type or "text/markdown",
                    )
                )
            text_parts.append(content)

        content_blocks = raw.get("content")
        if not isinstance(content_blocks, list):
            content_blocks = []

        # Current exports repeat the text blocks in the legacy field
        legacy_text = raw.get("text") or ""
        structured_text = "\n".join(
            block.get("text", "") for block in content_blocks if block.get("type") == "text" and block.get("text")
        )
        if legacy_text.strip() and legacy_text != structured_text:
            blocks.extend(segment_text(legacy_text))
            text_parts.append(legacy_text)

        for block in content_blocks:
            self._extract_block(block, blocks, text_parts)

        return "\n".join(text_parts), blocks

    def _extract_block(
        self,
        block: dict[str, Any],
        blocks: list[ContentBlock],
        text_parts: list[str],
    ) -> None:
        block_type = block.get("type")

        if block_type == "text" and block.get("text"):
            blocks.extend(segment_text(block["text"]))
            text_parts.append(block["text"])
        elif block_type == "thinking" and block.get("thinking"):
            blocks.append(ThinkingBlock(text=block["thinking"]))
            text_parts.append(block["thinking"])
        elif block_type == "tool_use":
            blocks.append(ToolUseBlock(tool_name=block.get("name") or "Tool", tool_input=block.get("input")))
        elif block_type == "tool_result":
            result = block.get("content")
            if isinstance(result, list):
                result = "\n".join(
                    part.get("text", "")
                    for part in result
                    if isinstance(part, dict) and part.get("type") == "text" and part.get("text")
                )
            if isinstance(result, str) and result:
                blocks.append(ToolResultBlock(tool_result=result, tool_name=block.get("name")))
                text_parts.append(result)
        elif block_type == "artifact":
            content = block.get("content") or block.get("text") or ""
            if content:
                blocks.append(
                    ArtifactBlock(
                        artifact_title=block.get("title") or block.get("name") or "Artifact",
                        text=content,
                        artifact_type=block.get("artifact_type") or "text/plain",
                    )
                )
                text_parts.append(content)
