"""CLI entry point for importing conversation exports.

Allows running the importer as a module:
    python -m convolog.ingest import export.zip session.jsonl
"""

import sys
from pathlib import Path

import click

from convolog.config import Config, load_config
from convolog.errors import ConvologError
from convolog.ingest.importer import Importer, InputFile
from convolog.logging import setup_logging
from convolog.models import SOURCES
from convolog.storage.store import ConversationStore


def open_store(config: Config, db_path: Path | None) -> ConversationStore:
    return ConversationStore(db_path or config.storage.db_path)


@click.group()
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Path to config.yaml")
@click.option("--db", "db_path", type=click.Path(path_type=Path), help="Override the conversation database path")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, db_path: Path | None) -> None:
    """Import and manage conversation history."""
    setup_logging("ingest")
    ctx.obj = {"config": load_config(config_path), "db_path": db_path}


@cli.command(name="import")
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--batch-size", type=int, help="Conversations per storage batch")
@click.pass_context
def import_files(ctx: click.Context, files: tuple[Path, ...], batch_size: int | None) -> None:
    """Import web exports (.zip, .json) and CLI session logs (.jsonl)."""
    config: Config = ctx.obj["config"]

    def on_progress(phase: str, current: int, total: int, filename: str | None = None) -> None:
        if phase == "parsing":
            click.echo(f"Parsing {filename} ({current + 1}/{total})")
        elif phase == "storing" and total:
            click.echo(f"Storing {current}/{total}")

    with open_store(config, ctx.obj["db_path"]) as store:
        importer = Importer(store, batch_size=batch_size or config.importer.batch_size)
        try:
            result = importer.import_files([InputFile.from_path(path) for path in files], on_progress)
        except ConvologError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    click.echo(
        f"Imported {result.conversations_added} conversations "
        f"({result.messages_added} messages) from {result.source}; "
        f"skipped {result.conversations_skipped} already imported"
    )


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show stored conversation counts and last sync per source."""
    config: Config = ctx.obj["config"]

    with open_store(config, ctx.obj["db_path"]) as store:
        click.echo(f"Conversations: {store.count_conversations()}")
        click.echo(f"Messages: {store.count_messages()}")
        for source in SOURCES:
            last_sync = store.get_last_sync(source)
            synced = last_sync.strftime("%Y-%m-%d %H:%M:%S") if last_sync else "never"
            click.echo(f"  {source}: {store.count_conversations(source)} conversations, last sync {synced}")


@cli.command()
@click.option("--source", type=click.Choice(SOURCES), help="Delete every conversation from this source")
@click.option("--id", "conversation_id", help="Delete a single conversation")
@click.pass_context
def delete(ctx: click.Context, source: str | None, conversation_id: str | None) -> None:
    """Delete conversations by source or by id."""
    if not source and not conversation_id:
        click.echo("Error: pass --source or --id", err=True)
        sys.exit(1)

    config: Config = ctx.obj["config"]

    with open_store(config, ctx.obj["db_path"]) as store:
        if conversation_id:
            if not store.delete_conversation(conversation_id):
                click.echo(f"Error: conversation not found: {conversation_id}", err=True)
                sys.exit(1)
            click.echo(f"Deleted conversation {conversation_id}")
        if source:
            deleted = store.delete_by_source(source)
            click.echo(f"Deleted {deleted} conversations from {source}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
