"""CLI entry point for search.

Allows searching and browsing stored conversations via command line.
"""

import sys
from pathlib import Path

import click

from convolog.analytics import conversation_to_markdown
from convolog.config import Config, load_config
from convolog.logging import setup_logging
from convolog.models import SOURCES, Conversation
from convolog.search.index import FREE_TIER, PRO_TIER, SearchIndex, SearchResult
from convolog.storage.store import ConversationStore


def format_timestamp(conversation: Conversation) -> str:
    """Format a conversation's last update for display."""
    return conversation.updated_at.strftime("%Y-%m-%d %H:%M:%S")


def print_result(result: SearchResult, verbose: bool = False) -> None:
    """Print a search hit."""
    conversation = result.conversation

    click.echo(f"\033[36m[{format_timestamp(conversation)}]\033[0m \033[1m{conversation.name}\033[0m")
    click.echo(f"Source: \033[32m{conversation.source}\033[0m | Messages: {conversation.message_count}")
    click.echo(f"ID: {conversation.id}")
    if verbose:
        click.echo(f"Score: {result.score:.2f} | Fields: {', '.join(m.key for m in result.matches)}")
        if conversation.project_path:
            click.echo(f"Project: {conversation.project_path}")

    click.echo(f"\n{result.snippet}\n")
    click.echo("-" * 40)


def open_store(ctx: click.Context) -> ConversationStore:
    config: Config = ctx.obj["config"]
    return ConversationStore(ctx.obj["db_path"] or config.storage.db_path)


@click.group()
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Path to config.yaml")
@click.option("--db", "db_path", type=click.Path(path_type=Path), help="Override the conversation database path")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, db_path: Path | None) -> None:
    """Search conversation history."""
    setup_logging("search")
    ctx.obj = {"config": load_config(config_path), "db_path": db_path}


@cli.command()
@click.argument("query")
@click.option("--source", type=click.Choice(SOURCES), help="Filter by source")
@click.option("--limit", "-n", default=10, help="Number of results")
@click.option("--tier", type=click.Choice([FREE_TIER, PRO_TIER]), default=FREE_TIER, help="Search tier")
@click.option("--verbose", "-v", is_flag=True, help="Show more details")
@click.pass_context
def search(ctx: click.Context, query: str, source: str | None, limit: int, tier: str, verbose: bool) -> None:
    """Fuzzy search conversations."""
    config: Config = ctx.obj["config"]

    with open_store(ctx) as store:
        index = SearchIndex(
            store,
            free_tier_limit=config.search.free_tier_limit,
            threshold=config.search.threshold,
            snippet_context=config.search.snippet_context,
        )
        index.attach()
        results = index.search(query, source=source, limit=limit, tier=tier)

        click.echo(f"Found {len(results)} conversations:\n")
        for result in results:
            print_result(result, verbose)

        hidden = index.total_count - index.indexed_count(tier)
        if hidden > 0:
            click.echo(f"{hidden} older conversations are only searchable on the {PRO_TIER} tier")


@cli.command()
@click.option("--source", type=click.Choice(SOURCES), help="Filter by source")
@click.option("--limit", "-n", default=20, help="Number of conversations")
@click.pass_context
def conversations(ctx: click.Context, source: str | None, limit: int) -> None:
    """List the most recently updated conversations."""
    with open_store(ctx) as store:
        found = store.get_all_conversations(limit=limit, source=source)

    for conversation in found:
        click.echo(
            f"\033[36m[{format_timestamp(conversation)}]\033[0m {conversation.name} "
            f"({conversation.source}, {conversation.message_count} messages) {conversation.id}"
        )


@cli.command()
@click.argument("conversation_id")
@click.pass_context
def show(ctx: click.Context, conversation_id: str) -> None:
    """Print a conversation as Markdown."""
    with open_store(ctx) as store:
        conversation = store.get_conversation(conversation_id)
        if conversation is None:
            click.echo(f"Error: conversation not found: {conversation_id}", err=True)
            sys.exit(1)
        messages = store.get_messages(conversation_id)

    click.echo(conversation_to_markdown(conversation, messages))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
