"""XDG Base Directory helpers for config and conversation data."""

import os
from pathlib import Path

APP_DIR = "threadkeeper"


def get_xdg_config_path(filename: str) -> Path:
    """Get XDG-compliant config file path.

    Checks locations in order of precedence:
    1. $XDG_CONFIG_HOME/threadkeeper/{filename} (if XDG_CONFIG_HOME is set)
    2. ~/.config/threadkeeper/{filename} (XDG default)

    Returns the first existing file, or the preferred location for new files.

    Args:
        filename: Name of the config file (e.g., "config.yaml")

    Returns:
        Path to config file
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        xdg_path = Path(xdg_config) / APP_DIR / filename
        if xdg_path.exists():
            return xdg_path

    default_path = Path.home() / ".config" / APP_DIR / filename
    if default_path.exists():
        return default_path

    if xdg_config:
        return Path(xdg_config) / APP_DIR / filename
    return default_path


def get_xdg_data_path(subdir: str = "") -> Path:
    """Get XDG-compliant data directory path.

    - $XDG_DATA_HOME/threadkeeper/{subdir} (if XDG_DATA_HOME is set)
    - ~/.local/share/threadkeeper/{subdir} (XDG default)

    Args:
        subdir: Optional subdirectory (e.g., "history")

    Returns:
        Path to data directory
    """
    xdg_data = os.environ.get("XDG_DATA_HOME", str(Path.home() / ".local" / "share"))
    data_path = Path(xdg_data) / APP_DIR
    if subdir:
        data_path = data_path / subdir
    return data_path
