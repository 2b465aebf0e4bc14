"""Pydantic models for the conversation timeline and compaction artifacts."""

import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

Role = Literal["user", "assistant"]

IMPORTANT_LEVELS = ("critical", "high")
TASK_MARKERS = ("todo", "todos", "task", "todo_write")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(v):
    """Parse ISO strings and epoch milliseconds to aware datetimes."""
    if isinstance(v, str):
        return datetime.fromisoformat(v.replace("Z", "+00:00"))
    if isinstance(v, (int, float)):
        return datetime.fromtimestamp(v / 1000, tz=timezone.utc)
    return v


def generate_message_id(prefix: str = "msg") -> str:
    """Generate a unique, time-prefixed message id.

    Format: {prefix}-{epoch_ms}-{hex8}
    """
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


class ReasoningStep(BaseModel):
    """One progress step reported while an assistant response is in flight."""

    model_config = ConfigDict(frozen=True, extra="allow")

    kind: str = Field(..., description="Step kind (e.g. thinking, tool-use)")
    message: str = Field(..., description="Human readable step description")
    timestamp: datetime = Field(default_factory=_utcnow)
    tool: Optional[str] = None
    file_path: Optional[str] = None
    command: Optional[str] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_timestamp(cls, v):
        return _parse_datetime(v)


class StepsSnapshot(BaseModel):
    """Reasoning buffer for one assistant message, live or frozen."""

    model_config = ConfigDict(frozen=True)

    steps: Tuple[ReasoningStep, ...] = ()
    duration: int = Field(default=0, ge=0, description="Elapsed seconds")


class Message(BaseModel):
    """A single timeline entry.

    Messages are created append-then-patch: streamed assistant replies are
    appended on their first chunk and patched in place until finalized.
    ``blocks`` is opaque to the engine and is derived by persistence.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    conversation_id: str
    role: Role
    content: str = ""
    blocks: Optional[List[Dict[str, Any]]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_timestamp(cls, v):
        return _parse_datetime(v)

    @property
    def is_compaction_summary(self) -> bool:
        return bool(self.metadata.get("compaction_summary"))

    @property
    def is_important(self) -> bool:
        """Whether upstream metadata flags this message as important.

        Flags: ``important: true``, ``importance`` of critical/high, or a
        task-tracking marker (todo lists, task plans).
        """
        if self.metadata.get("important") is True:
            return True
        if self.metadata.get("importance") in IMPORTANT_LEVELS:
            return True
        return any(self.metadata.get(marker) for marker in TASK_MARKERS)

    @property
    def steps(self) -> Tuple[ReasoningStep, ...]:
        """Frozen reasoning steps attached at finalize time."""
        return tuple(ReasoningStep.model_validate(s) for s in self.metadata.get("steps") or ())


class CompactionStatus(str, Enum):
    """Outcome of a compaction request."""

    COMPLETED = "completed"
    TOO_FEW_MESSAGES = "too_few_messages"
    NOTHING_TO_SUMMARIZE = "nothing_to_summarize"
    COOLDOWN = "cooldown"
    IN_PROGRESS = "in_progress"
    BELOW_THRESHOLD = "below_threshold"
    NO_CONVERSATION = "no_conversation"


class CompactionPlan(BaseModel):
    """Ephemeral description of one compaction, consumed immediately."""

    keep_initial_count: int
    keep_recent_count: int
    initial_ids: List[str] = Field(default_factory=list)
    recent_ids: List[str] = Field(default_factory=list)
    preserved_ids: Set[str] = Field(default_factory=set)
    summarized_ids: List[str] = Field(default_factory=list)
    summary: str = ""
    tokens_before: int = 0
    tokens_after: int = 0

    @property
    def saved_percentage(self) -> int:
        if self.tokens_before <= 0:
            return 0
        return round((1 - self.tokens_after / self.tokens_before) * 100)


class CompactionResult(BaseModel):
    """What a compaction request did (or why it did nothing)."""

    status: CompactionStatus
    plan: Optional[CompactionPlan] = None
    summary_message: Optional[Message] = None
    deleted_ids: List[str] = Field(default_factory=list)
    message_count_before: int = 0
    message_count_after: int = 0

    @property
    def compacted(self) -> bool:
        return self.status == CompactionStatus.COMPLETED

    @property
    def saved_percentage(self) -> int:
        return self.plan.saved_percentage if self.plan else 0
