"""Configuration management CLI commands."""

from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console

from threadkeeper.config import get_config_path

from .helpers import load_engine_config

console = Console()

config_app = typer.Typer(help="Manage Threadkeeper configuration")


@config_app.command("show")
def config_show(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file to read"),
):
    """Show current configuration."""
    path = config_path or get_config_path()
    config = load_engine_config(console, path)

    console.print(f"[cyan]Configuration file:[/cyan] [dim]{path}[/dim]")
    if not path.exists():
        console.print("[dim](not found, showing defaults)[/dim]")
    console.print(f"[bold]History directory:[/bold] {config.resolved_history_dir()}\n")

    data = config.model_dump(mode="json", exclude_none=True)
    console.print(yaml.safe_dump(data, default_flow_style=False, sort_keys=False), markup=False, highlight=False)


@config_app.command("path")
def config_path_command():
    """Print the default configuration file path."""
    print(get_config_path())
