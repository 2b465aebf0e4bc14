"""Engine configuration models and YAML loading."""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .xdg import get_xdg_config_path, get_xdg_data_path

logger = logging.getLogger(__name__)


class CompactionConfig(BaseModel):
    """Compaction policy: windows, thresholds and summarizer settings."""

    model_config = ConfigDict(extra="forbid")

    min_messages: int = Field(default=20, ge=1)
    keep_initial: int = Field(default=3, ge=0)
    keep_recent: int = Field(default=10, ge=0)
    high_water_mark: float = Field(default=0.8, gt=0.0, le=1.0)
    min_interval_seconds: float = Field(default=300.0, ge=0.0)  # 5 minutes
    model: str = "openai:gpt-4o-mini"
    timeout_seconds: float = Field(default=120.0, gt=0.0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=1.0, ge=0.0)
    heuristic_importance: bool = False


class ProcessConfig(BaseModel):
    """External AI process settings."""

    command: str = "claude"
    model: str = "sonnet"
    extra_args: list[str] = Field(default_factory=list)


class RenderConfig(BaseModel):
    """Virtualized viewport settings."""

    overscan: int = Field(default=5, ge=0)


class EngineConfig(BaseModel):
    """Threadkeeper configuration."""

    model_config = ConfigDict(
        extra="allow",
        str_strip_whitespace=True,
    )

    history_dir: Optional[Path] = None
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    process: ProcessConfig = Field(default_factory=ProcessConfig)
    render: RenderConfig = Field(default_factory=RenderConfig)

    @field_validator("history_dir", mode="before")
    @classmethod
    def expand_history_dir(cls, v):
        """Expand ~ and environment variables in the history path."""
        if v is None or v == "":
            return None
        return Path(os.path.expandvars(str(v))).expanduser()

    def resolved_history_dir(self) -> Path:
        """History directory, falling back to the XDG data location."""
        return self.history_dir or get_xdg_data_path("history")


def get_config_path() -> Path:
    return get_xdg_config_path("config.yaml")


def load_config(path: Optional[Path] = None) -> EngineConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to config.yaml. If None, uses the default XDG location

    Returns:
        EngineConfig with loaded settings. Returns defaults if the file doesn't exist.

    Raises:
        ValueError: If the file exists but is not valid YAML or fails validation
    """
    if path is None:
        path = get_config_path()

    if not path.exists():
        logger.debug("No config at %s, using defaults", path)
        return EngineConfig()

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse config at {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config at {path} must be a mapping, got {type(data).__name__}")

    return EngineConfig.model_validate(data)


def save_config(config: EngineConfig, path: Optional[Path] = None) -> Path:
    """Save configuration to a YAML file.

    Args:
        config: EngineConfig instance to save
        path: Path to save config. If None, uses the default XDG location

    Returns:
        Path where config was saved
    """
    if path is None:
        path = get_config_path()

    path.parent.mkdir(parents=True, exist_ok=True)

    # mode="json" ensures Path objects become strings
    config_data = config.model_dump(exclude_none=True, mode="json")

    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)

    return path
