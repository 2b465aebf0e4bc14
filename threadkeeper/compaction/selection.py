"""Choose which messages a compaction keeps and which it summarizes.

The timeline is split into an initial anchor window, a recent window and the
middle between them. Flagged messages in the middle are preserved; the rest
of the middle is summarized. Windows are always computed from the current
``keep_initial``/``keep_recent``; earlier summaries are ordinary messages.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, List, Sequence

from threadkeeper.models import IMPORTANT_LEVELS, Message

FILE_REFERENCE = re.compile(r"[a-zA-Z0-9_\-/.]+\.(?:ts|tsx|js|jsx|py|go|rs|cpp|java|md|json|yaml|yml|toml)\b")
CODE_IDENTIFIER = re.compile(r"`([a-zA-Z_][a-zA-Z0-9_]*)`")

FILE_CHANGE_WORDS = ("file", "create", "modify", "delete")
ERROR_WORDS = ("error", "bug", "fail", "warning")
DECISION_WORDS = ("decide", "choose", "architecture", "design", "implement", "approach")
EDIT_TOOLS = ("Edit", "Write", "MultiEdit", "NotebookEdit")
MAX_IDENTIFIERS_PER_MESSAGE = 5


@dataclass
class Partition:
    """Result of splitting a timeline for compaction."""

    initial: List[Message] = field(default_factory=list)
    middle: List[Message] = field(default_factory=list)
    recent: List[Message] = field(default_factory=list)
    important: List[Message] = field(default_factory=list)
    to_summarize: List[Message] = field(default_factory=list)

    @property
    def kept(self) -> List[Message]:
        """Messages that survive, in timeline order (summary not included)."""
        return self.initial + self.important + self.recent


def _has_file_changes(message: Message, content: str) -> bool:
    if any(word in content for word in FILE_CHANGE_WORDS):
        return True
    return any(step.tool in EDIT_TOOLS for step in message.steps)


def classify_importance(message: Message) -> str:
    """Keyword heuristic: critical, high, medium or low.

    Errors that touch files are critical; decisions and assistant file
    changes are high; other file/error talk and user turns are medium.
    """
    content = (message.content or "").lower()
    file_changes = _has_file_changes(message, content)
    errors = any(word in content for word in ERROR_WORDS)
    decision = any(word in content for word in DECISION_WORDS)

    if errors and file_changes:
        return "critical"
    if decision or (file_changes and message.role == "assistant"):
        return "high"
    if file_changes or errors or message.role == "user":
        return "medium"
    return "low"


def is_flagged_important(message: Message, heuristics: bool = False) -> bool:
    """Whether a middle-window message must survive compaction."""
    if message.is_important:
        return True
    return heuristics and classify_importance(message) in IMPORTANT_LEVELS


def extract_context(messages: Sequence[Message]) -> List[str]:
    """File paths and backticked identifiers mentioned anywhere, deduplicated."""
    context: List[str] = []
    seen = set()
    for message in messages:
        content = message.content or ""
        found = [f"File: {m.group(0)}" for m in FILE_REFERENCE.finditer(content)]
        found += [f"Code: `{name}`" for name in CODE_IDENTIFIER.findall(content)[:MAX_IDENTIFIERS_PER_MESSAGE]]
        for item in found:
            if item not in seen:
                seen.add(item)
                context.append(item)
    return context


def partition(
    messages: Sequence[Message],
    keep_initial: int,
    keep_recent: int,
    is_important: Callable[[Message], bool] = is_flagged_important,
) -> Partition:
    """Split a timeline into initial, middle and recent windows.

    When the windows overlap (short timelines) the recent window shrinks so
    that no message belongs to two windows.
    """
    messages = list(messages)
    count = len(messages)
    initial_end = min(max(keep_initial, 0), count)
    recent_start = max(initial_end, count - max(keep_recent, 0))

    initial = messages[:initial_end]
    middle = messages[initial_end:recent_start]
    recent = messages[recent_start:]

    important = [m for m in middle if is_important(m)]
    important_ids = {m.id for m in important}
    to_summarize = [m for m in middle if m.id not in important_ids]

    return Partition(initial=initial, middle=middle, recent=recent, important=important, to_summarize=to_summarize)
