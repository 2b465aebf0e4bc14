"""Threadkeeper CLI application - main entry point."""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.traceback import install

from threadkeeper import __version__
from threadkeeper.compaction import CompactionEngine, LiteLLMSummarizer
from threadkeeper.exceptions import CompactionError, ExternalProcessError, PersistenceError, SummarizationError
from threadkeeper.registry import CorrelationRegistry, SessionIdentity
from threadkeeper.store import MessageStore

from .config import config_app
from .helpers import load_engine_config, open_storage, shorten
from .history import history_app

install(show_locals=False, width=None, word_wrap=True)

app = typer.Typer(
    name="threadkeeper",
    help="Conversation session engine for workspace-scoped AI chat",
    no_args_is_help=True,
)

console = Console()


def _version_callback(value: bool):
    if value:
        console.print(f"threadkeeper {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True, help="Show version"),
):
    """Threadkeeper command line."""


@app.command("compact")
def compact(
    conversation_id: str = typer.Argument(help="Conversation ID to compact"),
    keep_initial: Optional[int] = typer.Option(None, "--keep-initial", help="Messages kept at the start"),
    keep_recent: Optional[int] = typer.Option(None, "--keep-recent", help="Messages kept at the end"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Summarization model (provider:model)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
    history_dir: Optional[Path] = typer.Option(None, "--history-dir", help="Override the history directory"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file to read"),
):
    """Summarize the middle of a stored conversation.

    Examples:
        threadkeeper compact conv-1730000000000-ab12cd34
        threadkeeper compact conv-1730000000000-ab12cd34 --keep-recent 6 --yes
    """
    config = load_engine_config(console, config_path)
    overrides = {"keep_initial": keep_initial, "keep_recent": keep_recent, "model": model}
    compaction_config = config.compaction.model_copy(update={k: v for k, v in overrides.items() if v is not None})
    storage = open_storage(config, history_dir)

    try:
        messages = asyncio.run(storage.load_messages(conversation_id))
    except PersistenceError as e:
        console.print(f"[red]Failed to load conversation: {e}[/red]")
        raise typer.Exit(1)
    if not messages:
        console.print(f"[red]Conversation '{conversation_id}' not found[/red]")
        raise typer.Exit(1)

    store = MessageStore(messages)
    registry = CorrelationRegistry()
    workspace = next((m.metadata.get("workspace_path") for m in messages if m.metadata.get("workspace_path")), "")
    registry.activate(SessionIdentity(session_id="offline", conversation_id=conversation_id, workspace_path=workspace))

    summarizer = LiteLLMSummarizer(
        model=compaction_config.model,
        timeout=compaction_config.timeout_seconds,
        max_retries=compaction_config.max_retries,
        retry_delay=compaction_config.retry_delay_seconds,
    )
    engine = CompactionEngine(store, registry, storage, summarizer, compaction_config)

    if len(messages) < compaction_config.min_messages:
        console.print(
            f"[yellow]Only {len(messages)} messages; compaction needs at least {compaction_config.min_messages}[/yellow]"
        )
        return

    selection = engine.plan(messages)
    table = Table(title=f"Compaction plan for {conversation_id}")
    table.add_column("Window", style="cyan")
    table.add_column("Messages", justify="right")
    table.add_row("Initial (kept)", str(len(selection.initial)))
    table.add_row("Important (kept)", str(len(selection.important)))
    table.add_row("Recent (kept)", str(len(selection.recent)))
    table.add_row("To summarize", str(len(selection.to_summarize)), style="yellow")
    console.print(table)

    if not selection.to_summarize:
        console.print("[yellow]Nothing to summarize[/yellow]")
        return

    if not yes:
        typer.confirm(f"Summarize {len(selection.to_summarize)} messages with {compaction_config.model}?", abort=True)

    try:
        result = asyncio.run(engine.compact(trigger="manual"))
    except (SummarizationError, CompactionError) as e:
        console.print(f"[red]Compaction failed: {e}[/red]")
        raise typer.Exit(1)

    console.print(
        f"[green]✓ Compacted {result.message_count_before} → {result.message_count_after} messages "
        f"({result.saved_percentage}% tokens saved)[/green]"
    )
    if result.summary_message is not None:
        console.print(shorten(result.plan.summary if result.plan else "", 120), style="dim", markup=False)


@app.command("chat")
def chat(
    workspace: Path = typer.Argument(Path("."), help="Workspace directory"),
    conversation_id: Optional[str] = typer.Option(None, "--conversation", "-C", help="Resume a stored conversation"),
    history_dir: Optional[Path] = typer.Option(None, "--history-dir", help="Override the history directory"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file to read"),
):
    """Chat with Claude Code inside a workspace."""
    from .chat import run_chat

    if not workspace.is_dir():
        console.print(f"[red]Not a directory: {workspace}[/red]")
        raise typer.Exit(1)

    config = load_engine_config(console, config_path)
    storage = open_storage(config, history_dir)
    try:
        asyncio.run(run_chat(workspace.resolve(), conversation_id, config, storage, console))
    except ExternalProcessError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[dim]Bye[/dim]")


app.add_typer(history_app, name="history")
app.add_typer(config_app, name="config")
