"""Parsers for the supported export formats."""

from .base import ParsedData, Parser, ParserRegistry, content_hash, fallback_message_id, parse_timestamp
from .cli_log import CliLogParser
from .web_export import WebExportParser

__all__ = [
    "CliLogParser",
    "ParsedData",
    "Parser",
    "ParserRegistry",
    "WebExportParser",
    "content_hash",
    "fallback_message_id",
    "parse_timestamp",
]

# Register parsers
ParserRegistry.register(CliLogParser())
ParserRegistry.register(WebExportParser())
