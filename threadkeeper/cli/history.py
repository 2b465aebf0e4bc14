"""History management CLI commands."""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from threadkeeper.exceptions import PersistenceError
from threadkeeper.history import query_index, rebuild_index

from .helpers import load_engine_config, open_storage

console = Console()

history_app = typer.Typer(help="Browse stored conversations")


def _format_date(value: str) -> str:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).strftime("%Y-%m-%d %H:%M")
    except (ValueError, TypeError, AttributeError):
        return str(value)[:16]


@history_app.command("list")
def history_list(
    workspace: Optional[str] = typer.Option(None, "--workspace", "-w", help="Filter by workspace path"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum number of results"),
    history_dir: Optional[Path] = typer.Option(None, "--history-dir", help="Override the history directory"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file to read"),
):
    """List conversations, newest first.

    Examples:
        threadkeeper history list
        threadkeeper history list --workspace ~/src/project --limit 5
    """
    config = load_engine_config(console, config_path)
    storage = open_storage(config, history_dir)
    conversations = query_index(storage.history_dir, workspace_path=workspace, limit=limit)

    if not conversations:
        console.print("[yellow]No conversations found[/yellow]")
        if not storage.history_dir.exists():
            console.print(f"\nHistory directory doesn't exist yet: {storage.history_dir}")
        return

    table = Table(title=f"Conversation History ({len(conversations)} found)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Workspace", style="green")
    table.add_column("Messages", justify="right")
    table.add_column("Compactions", justify="right", style="dim")
    table.add_column("Updated", style="dim")

    for conv in conversations:
        table.add_row(
            conv["conversation_id"],
            conv.get("workspace_path") or "-",
            str(conv.get("message_count", 0)),
            str(conv.get("compaction_count", 0)),
            _format_date(conv.get("updated_at", "")),
        )

    console.print(table)
    console.print("\n[dim]Use 'threadkeeper history show CONVERSATION_ID' to view details[/dim]")


@history_app.command("show")
def history_show(
    conversation_id: str = typer.Argument(help="Conversation ID to show"),
    format: str = typer.Option("plain", "--format", "-f", help="Output format (plain, json, markdown)"),
    history_dir: Optional[Path] = typer.Option(None, "--history-dir", help="Override the history directory"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file to read"),
):
    """Show a stored conversation.

    Examples:
        threadkeeper history show conv-1730000000000-ab12cd34
        threadkeeper history show conv-1730000000000-ab12cd34 --format json
    """
    config = load_engine_config(console, config_path)
    storage = open_storage(config, history_dir)

    try:
        messages = asyncio.run(storage.load_messages(conversation_id))
    except PersistenceError as e:
        console.print(f"[red]Failed to load conversation: {e}[/red]")
        raise typer.Exit(1)

    if not messages:
        console.print(f"[red]Conversation '{conversation_id}' not found[/red]")
        raise typer.Exit(1)

    if format == "json":
        # Plain print: Rich wrapping would break the JSON
        print(json.dumps([m.model_dump(mode="json") for m in messages], indent=2, ensure_ascii=False))
        return

    if format == "markdown":
        console.print(f"# Conversation: {conversation_id}\n", markup=False)
        for message in messages:
            console.print(f"## {message.role.title()} ({message.timestamp.isoformat()})\n", markup=False)
            console.print(f"{message.content}\n", markup=False)
            if message.steps:
                console.print(f"*Steps*: {len(message.steps)} ({message.metadata.get('duration', 0)}s)\n", markup=False)
            console.print("---\n", markup=False)
        return

    for message in messages:
        style = "cyan" if message.role == "user" else "green"
        label = "summary" if message.is_compaction_summary else message.role
        console.print(f"[{style}]{label}[/{style}] [dim]{message.timestamp:%Y-%m-%d %H:%M}[/dim]")
        console.print(message.content, markup=False)
        console.print()


@history_app.command("rebuild-index")
def history_rebuild_index(
    history_dir: Optional[Path] = typer.Option(None, "--history-dir", help="Override the history directory"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file to read"),
):
    """Rebuild the conversation index from the JSONL files."""
    config = load_engine_config(console, config_path)
    storage = open_storage(config, history_dir)
    try:
        count = rebuild_index(storage.history_dir)
    except RuntimeError as e:
        console.print(f"[red]Failed to rebuild index: {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Indexed {count} conversations[/green]")
