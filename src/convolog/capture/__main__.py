"""CLI entry point for live activity capture.

Captured events arrive as JSON lines, one message per line:
    python -m convolog.capture record events.jsonl
    python -m convolog.capture stats --days 7
"""

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TextIO

import click

from convolog.analytics import activities_to_csv, aggregate_stats
from convolog.capture.normalizer import TITLE_EVENT, normalize_event
from convolog.config import Config, load_config
from convolog.errors import report_malformed
from convolog.logging import get_logger, setup_logging
from convolog.storage.activities import ActivityFilters, ActivityStore

logger = get_logger("capture")


def open_activity_store(ctx: click.Context) -> ActivityStore:
    config: Config = ctx.obj["config"]
    return ActivityStore(ctx.obj["db_path"] or config.storage.activity_db_path)


@click.group()
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Path to config.yaml")
@click.option("--db", "db_path", type=click.Path(path_type=Path), help="Override the activity database path")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, db_path: Path | None) -> None:
    """Record and analyze captured usage activity."""
    setup_logging("capture")
    ctx.obj = {"config": load_config(config_path), "db_path": db_path}


@cli.command()
@click.argument("events", type=click.File("r"), default="-")
@click.pass_context
def record(ctx: click.Context, events: TextIO) -> None:
    """Record captured events from a JSON lines file (or stdin)."""
    titles: dict[str, str] = {}
    recorded = 0
    duplicates = 0
    ignored = 0

    with open_activity_store(ctx) as store:
        for line_number, line in enumerate(events, start=1):
            line = line.strip()
            if not line:
                continue

            try:
                event = json.loads(line)
                if event.get("type") == TITLE_EVENT:
                    data = event["data"]
                    titles[data["conversationId"]] = data["title"]
                    continue
                activity = normalize_event(event, titles)
            except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
                report_malformed(logger, "capture event", f"line={line_number} error={e}")
                ignored += 1
                continue

            if activity is None:
                ignored += 1
            elif store.record(activity):
                recorded += 1
            else:
                duplicates += 1

    logger.info("Recorded events: recorded=%d duplicates=%d ignored=%d", recorded, duplicates, ignored)
    click.echo(f"Recorded {recorded} activities ({duplicates} duplicates, {ignored} ignored)")


@cli.command()
@click.option("--days", default=30, help="Number of days to include")
@click.pass_context
def stats(ctx: click.Context, days: int) -> None:
    """Show token and activity totals for recent days."""
    end = datetime.now(UTC).date()
    start = end - timedelta(days=days)

    with open_activity_store(ctx) as store:
        aggregated = aggregate_stats(store.list_daily_stats(start.isoformat(), end.isoformat()))

    click.echo(f"Days with activity: {aggregated.unique_days}")
    click.echo(
        f"Tokens: {aggregated.total_tokens} "
        f"(input {aggregated.total_input_tokens}, output {aggregated.total_output_tokens})"
    )
    click.echo(f"Messages: {aggregated.total_messages}")
    click.echo(f"Artifacts: {aggregated.total_artifacts}")
    click.echo(f"Tool uses: {aggregated.total_tool_uses}")
    click.echo(f"Average per day: {aggregated.avg_tokens_per_day} tokens, {aggregated.avg_messages_per_day} messages")

    if aggregated.model_usage:
        click.echo("Models:")
        for model, count in sorted(aggregated.model_usage.items(), key=lambda item: item[1], reverse=True):
            click.echo(f"  {model}: {count}")

    for day in aggregated.daily_data:
        click.echo(f"  {day.date}  tokens={day.total_tokens} messages={day.messages} tools={day.tool_uses}")


@cli.command()
@click.option("--output", "-o", type=click.File("w"), default="-", help="CSV file to write")
@click.option("--type", "types", multiple=True, help="Only export these activity types")
@click.option("--search", help="Only export activities mentioning this text")
@click.option("--limit", default=10000, help="Maximum number of activities")
@click.pass_context
def export(ctx: click.Context, output: TextIO, types: tuple[str, ...], search: str | None, limit: int) -> None:
    """Export recorded activities as CSV."""
    filters = ActivityFilters(types=list(types) or None, search=search, limit=limit)
    with open_activity_store(ctx) as store:
        activities = store.list_activities(filters)
    output.write(activities_to_csv(activities))


@cli.command()
@click.confirmation_option(prompt="Delete all recorded activities and daily stats?")
@click.pass_context
def clear(ctx: click.Context) -> None:
    """Delete all recorded activities and their daily stats."""
    with open_activity_store(ctx) as store:
        store.clear()
    click.echo("Cleared activity history")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
