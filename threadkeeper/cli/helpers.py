"""CLI helper functions."""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from threadkeeper.config import EngineConfig, load_config
from threadkeeper.history import ConversationStorage


def load_engine_config(console: Console, config_path: Optional[Path] = None) -> EngineConfig:
    try:
        return load_config(config_path)
    except ValueError as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        raise typer.Exit(1)


def open_storage(config: EngineConfig, history_dir: Optional[Path] = None) -> ConversationStorage:
    """Storage rooted at ``--history-dir`` when given, else the configured location."""
    return ConversationStorage(history_dir or config.resolved_history_dir())


def shorten(text: str, width: int = 80) -> str:
    text = " ".join(text.split())
    return text if len(text) <= width else text[: width - 3] + "..."
