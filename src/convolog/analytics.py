"""Usage analytics over daily rollups, and exports of stored data."""

import csv
import io
import json
from dataclasses import dataclass, field

from convolog.models import (
    Activity,
    ArtifactBlock,
    CodeBlock,
    ContentBlock,
    Conversation,
    DailyStats,
    Message,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UnsupportedBlock,
)

CSV_HEADERS = [
    "ID",
    "Type",
    "Source",
    "Conversation ID",
    "Conversation Title",
    "Model",
    "Timestamp",
    "Input Tokens",
    "Output Tokens",
    "Cache Read Tokens",
    "Message Role",
    "Message Preview",
    "Artifact Title",
    "Artifact Type",
    "Code Language",
    "Tool Name",
]


@dataclass
class DayTotals:
    date: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    messages: int
    artifacts: int
    tool_uses: int


@dataclass
class AggregatedStats:
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    total_messages: int = 0
    total_artifacts: int = 0
    total_tool_uses: int = 0
    unique_days: int = 0
    avg_tokens_per_day: int = 0
    avg_messages_per_day: int = 0
    model_usage: dict[str, int] = field(default_factory=dict)
    daily_data: list[DayTotals] = field(default_factory=list)


def aggregate_stats(daily_stats: list[DailyStats]) -> AggregatedStats:
    """Sum daily rollups into totals, per-day averages and model usage.

    Args:
        daily_stats: Rollups to aggregate, in any order

    Returns:
        AggregatedStats with daily_data sorted by date
    """
    result = AggregatedStats(unique_days=len(daily_stats))

    for day in daily_stats:
        result.total_input_tokens += day.input_tokens
        result.total_output_tokens += day.output_tokens
        result.total_messages += day.message_count
        result.total_artifacts += day.artifact_count
        result.total_tool_uses += day.tool_use_count

        for model, count in day.model_usage.items():
            result.model_usage[model] = result.model_usage.get(model, 0) + count

        result.daily_data.append(
            DayTotals(
                date=day.date,
                input_tokens=day.input_tokens,
                output_tokens=day.output_tokens,
                total_tokens=day.input_tokens + day.output_tokens,
                messages=day.message_count,
                artifacts=day.artifact_count,
                tool_uses=day.tool_use_count,
            )
        )

    result.total_tokens = result.total_input_tokens + result.total_output_tokens

    if result.unique_days > 0:
        result.avg_tokens_per_day = round(result.total_tokens / result.unique_days)
        result.avg_messages_per_day = round(result.total_messages / result.unique_days)

    result.daily_data.sort(key=lambda d: d.date)
    return result


def _csv_cell(value: object) -> str:
    return "" if value is None else str(value)


def activities_to_csv(activities: list[Activity]) -> str:
    """Render activities as CSV with every cell quoted."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)

    for activity in activities:
        tokens = activity.tokens
        metadata = activity.metadata
        writer.writerow(
            [
                _csv_cell(value)
                for value in (
                    activity.id,
                    activity.type,
                    activity.source,
                    activity.conversation_id,
                    activity.conversation_title,
                    activity.model,
                    activity.timestamp.isoformat(),
                    tokens.input_tokens if tokens else None,
                    tokens.output_tokens if tokens else None,
                    tokens.cache_read_tokens if tokens else None,
                    metadata.get("messageRole"),
                    metadata.get("messagePreview"),
                    metadata.get("artifactTitle"),
                    metadata.get("artifactType"),
                    metadata.get("codeLanguage"),
                    metadata.get("toolName"),
                )
            ]
        )

    return buffer.getvalue()


def render_block_markdown(block: ContentBlock) -> str:
    """Render one content block as Markdown."""
    if isinstance(block, TextBlock):
        return block.text
    if isinstance(block, CodeBlock):
        return f"```{block.language or ''}\n{block.text}\n```"
    if isinstance(block, ThinkingBlock):
        return "\n".join(f"> {line}" for line in block.text.splitlines()) or ">"
    if isinstance(block, ToolUseBlock):
        rendered = f"**Tool: {block.tool_name}**"
        if block.tool_input is not None:
            rendered += f"\n\n```json\n{json.dumps(block.tool_input, indent=2)}\n```"
        return rendered
    if isinstance(block, ToolResultBlock):
        return f"**Result{': ' + block.tool_name if block.tool_name else ''}**\n\n```\n{block.tool_result}\n```"
    if isinstance(block, ArtifactBlock):
        if not block.available:
            return f"**{block.artifact_title}** _(content not exported)_"
        if block.artifact_type and "markdown" in block.artifact_type:
            return f"**{block.artifact_title}**\n\n{block.text}"
        return f"**{block.artifact_title}**\n\n```\n{block.text}\n```"
    if isinstance(block, UnsupportedBlock):
        return f"_{block.text}_"
    raise TypeError(f"Unknown content block: {block!r}")


def conversation_to_markdown(conversation: Conversation, messages: list[Message]) -> str:
    """Render a conversation and its messages as a Markdown document."""
    lines = [f"# {conversation.name}", ""]
    if conversation.summary:
        lines.extend([conversation.summary, ""])

    for message in messages:
        timestamp = message.created_at.strftime("%Y-%m-%d %H:%M:%S")
        lines.extend([f"## {message.sender} ({timestamp})", ""])
        if message.content_blocks:
            for block in message.content_blocks:
                lines.extend([render_block_markdown(block), ""])
        else:
            lines.extend([message.text, ""])

    return "\n".join(lines).rstrip() + "\n"
