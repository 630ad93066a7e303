"""Split free-form message text into typed content blocks.

Fenced code (```lang ... ```) becomes CodeBlock, the spans around it become
TextBlock. Export placeholders such as "This block is not supported on your
current device yet." are kept as UnsupportedBlock when they make up a whole
span and are stripped out of otherwise real text.

An opening fence without a closing fence is not code: the remainder of the
input, backticks included, is treated as ordinary text.
"""

import re

from convolog.models import CodeBlock, ContentBlock, TextBlock, UnsupportedBlock

CODE_FENCE_RE = re.compile(r"```(\w*)\n?(.*?)```", re.DOTALL)

UNSUPPORTED_PATTERNS = [
    re.compile(r"This block is not supported on your current device yet\.?", re.IGNORECASE),
    re.compile(r"\[(?:File|Image|Attachment):?\s*[^\]]*\]", re.IGNORECASE),
]


def is_unsupported_placeholder(text: str) -> bool:
    """True when the whole (trimmed) text is a single known placeholder."""
    trimmed = text.strip()
    if not trimmed:
        return False
    return any(pattern.fullmatch(trimmed) for pattern in UNSUPPORTED_PATTERNS)


def strip_placeholders(text: str) -> str:
    """Remove placeholder substrings from text."""
    for pattern in UNSUPPORTED_PATTERNS:
        text = pattern.sub("", text)
    return text.strip()


def _span_block(span: str, handle_placeholders: bool) -> ContentBlock | None:
    span = span.strip()
    if not span:
        return None
    if not handle_placeholders:
        return TextBlock(text=span)
    if is_unsupported_placeholder(span):
        return UnsupportedBlock(text=span)
    filtered = strip_placeholders(span)
    if not filtered:
        return None
    return TextBlock(text=filtered)


def segment_text(text: str, handle_placeholders: bool = True) -> list[ContentBlock]:
    """Split text into an ordered list of text, code and unsupported blocks.

    Args:
        text: Free-form message text
        handle_placeholders: Detect and strip export placeholder strings

    Returns:
        Blocks in reading order. Empty when the text has no content left.
    """
    blocks: list[ContentBlock] = []
    last_index = 0

    for match in CODE_FENCE_RE.finditer(text):
        block = _span_block(text[last_index:match.start()], handle_placeholders)
        if block is not None:
            blocks.append(block)

        blocks.append(CodeBlock(text=match.group(2), language=match.group(1) or None))
        last_index = match.end()

    block = _span_block(text[last_index:], handle_placeholders)
    if block is not None:
        blocks.append(block)

    return blocks
