"""External AI execution process adapters."""

from .base import AIProcess, EventChannel
from .claude_code import ClaudeCodeProcess

__all__ = ["AIProcess", "ClaudeCodeProcess", "EventChannel"]
