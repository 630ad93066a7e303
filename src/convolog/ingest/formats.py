"""Detect the source format of an input file from its name and declared type."""

from enum import Enum

ZIP_MIME_TYPES = ("application/zip", "application/x-zip-compressed")
JSON_MIME_TYPES = ("application/json",)


class FileFormat(Enum):
    ARCHIVED_EXPORT = "archived-export"
    PLAIN_JSON_EXPORT = "plain-json-export"
    LINE_DELIMITED_LOG = "line-delimited-log"
    UNKNOWN = "unknown"


def detect_format(name: str, mime_type: str | None = None) -> FileFormat:
    """Classify a file by name and MIME type.

    Checks run in a fixed order: archive, then line-delimited log, then
    plain JSON. No file content is inspected.

    Args:
        name: File name (a path is fine, only the suffix matters)
        mime_type: Declared MIME type, if any

    Returns:
        The detected FileFormat, UNKNOWN when nothing matches
    """
    lowered = name.lower()
    mime = (mime_type or "").lower()

    if mime in ZIP_MIME_TYPES or lowered.endswith(".zip"):
        return FileFormat.ARCHIVED_EXPORT
    if lowered.endswith(".jsonl"):
        return FileFormat.LINE_DELIMITED_LOG
    if mime in JSON_MIME_TYPES or lowered.endswith(".json"):
        return FileFormat.PLAIN_JSON_EXPORT
    return FileFormat.UNKNOWN
