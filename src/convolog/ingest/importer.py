"""Import orchestration: detect, parse, deduplicate and store in batches."""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from convolog.errors import NoDataError, UnsupportedFileError
from convolog.ingest.formats import detect_format
from convolog.ingest.parsers import ParsedData, ParserRegistry
from convolog.logging import get_logger
from convolog.models import Conversation, Message
from convolog.storage.store import ConversationStore

logger = get_logger("importer")

UNKNOWN_FORMAT_MESSAGE = (
    "Unknown file format. Expected ZIP (web export), JSON (conversations.json), "
    "or JSONL (CLI session log)."
)

# (phase, current, total, filename) -> False to cancel
ProgressCallback = Callable[..., bool | None]


@dataclass
class InputFile:
    """A file handed to the importer."""

    name: str
    data: bytes
    mime_type: str = ""

    @classmethod
    def from_path(cls, path: Path, mime_type: str = "") -> "InputFile":
        return cls(name=path.name, data=path.read_bytes(), mime_type=mime_type)


@dataclass
class ImportResult:
    conversations_added: int
    conversations_skipped: int
    messages_added: int
    source: str | None
    cancelled: bool = False


class ImportCancelled(Exception):
    """Raised internally when the progress callback asks to stop."""


class Importer:
    """Drives input files through parsing and batched persistence.

    Imports against the same store must not run concurrently: duplicate
    detection reads a snapshot of existing ids before the first write.
    """

    def __init__(self, store: ConversationStore, batch_size: int = 100) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        self._store = store
        self.batch_size = batch_size

    def import_files(
        self,
        files: Sequence[InputFile],
        on_progress: ProgressCallback | None = None,
    ) -> ImportResult:
        """Import files into the store.

        Every file is parsed before anything is written; a parse error
        propagates and nothing is stored. Storage then proceeds in
        sequential batches. A failure partway through leaves earlier
        batches committed.

        Args:
            files: Files to import, in order. The first file's source is
                   reported as the import's source.
            on_progress: Called as (phase, current, total, filename).
                         Returning False stops before the next step.

        Returns:
            ImportResult with counts of what was committed

        Raises:
            UnsupportedFileError: If a file's format is not recognized
            FormatError: If a file is structurally invalid
            NoDataError: If no files were given or a file has no usable data
        """
        if not files:
            raise NoDataError("No files to import")

        def report(phase: str, current: int, total: int, filename: str | None = None) -> None:
            if on_progress is None:
                return
            if on_progress(phase, current, total, filename) is False:
                raise ImportCancelled(phase)

        source: str | None = None
        conversations: list[Conversation] = []
        messages: list[Message] = []
        skipped = 0
        added = 0
        messages_added = 0

        try:
            parsed_files = []
            for i, input_file in enumerate(files):
                report("parsing", i, len(files), input_file.name)
                parsed = self._parse_file(input_file)
                if source is None:
                    source = parsed.source
                parsed_files.append(parsed)

            skipped = self._merge(parsed_files, conversations, messages)

            existing = self._store.get_conversation_ids_in(c.id for c in conversations)
            new_conversations = [c for c in conversations if c.id not in existing]
            skipped += len(conversations) - len(new_conversations)

            messages_by_conversation: dict[str, list[Message]] = {}
            for message in messages:
                if message.conversation_id not in existing:
                    messages_by_conversation.setdefault(message.conversation_id, []).append(message)

            total = len(new_conversations)
            report("storing", 0, total)

            for start in range(0, total, self.batch_size):
                chunk = new_conversations[start:start + self.batch_size]
                chunk_messages = [
                    message
                    for conversation in chunk
                    for message in messages_by_conversation.get(conversation.id, [])
                ]
                added += self._store.insert_conversations(chunk)
                messages_added += self._store.insert_messages(chunk_messages)
                logger.debug(
                    "Stored batch: conversations=%d messages=%d done=%d total=%d",
                    len(chunk),
                    len(chunk_messages),
                    start + len(chunk),
                    total,
                )
                report("storing", start + len(chunk), total)

        except ImportCancelled as e:
            logger.info(
                "Import cancelled: phase=%s added=%d messages=%d",
                e,
                added,
                messages_added,
            )
            return ImportResult(
                conversations_added=added,
                conversations_skipped=skipped,
                messages_added=messages_added,
                source=source,
                cancelled=True,
            )

        if source is not None:
            self._store.record_last_sync(source, datetime.now(UTC))

        result = ImportResult(
            conversations_added=added,
            conversations_skipped=skipped,
            messages_added=messages_added,
            source=source,
        )
        logger.info(
            "Import complete: source=%s files=%d added=%d skipped=%d messages=%d",
            source,
            len(files),
            added,
            skipped,
            messages_added,
        )
        if on_progress is not None:
            on_progress("complete", added, added, None)
        return result

    def _parse_file(self, input_file: InputFile) -> ParsedData:
        file_format = detect_format(input_file.name, input_file.mime_type)
        parser = ParserRegistry.for_format(file_format)
        if parser is None:
            raise UnsupportedFileError(UNKNOWN_FORMAT_MESSAGE)

        logger.info(
            "Parsing file: name=%s format=%s parser=%s size=%d",
            input_file.name,
            file_format.name,
            parser.source_name,
            len(input_file.data),
        )
        return parser.parse(input_file.data, input_file.name)

    def _merge(
        self,
        parsed_files: list[ParsedData],
        conversations: list[Conversation],
        messages: list[Message],
    ) -> int:
        """Concatenate parsed files in order, keeping the first copy of each id.

        Returns:
            Number of conversations dropped as duplicates within the import
        """
        seen: set[str] = set()
        duplicates = 0
        for parsed in parsed_files:
            accepted: set[str] = set()
            for conversation in parsed.conversations:
                if conversation.id in seen:
                    duplicates += 1
                    continue
                seen.add(conversation.id)
                accepted.add(conversation.id)
                conversations.append(conversation)
            messages.extend(m for m in parsed.messages if m.conversation_id in accepted)
        return duplicates
