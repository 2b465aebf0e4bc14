"""All event classes consolidated in one module.

Inbound events:
---------------
Produced by the external AI process and consumed by the ingestion controller.
Every one of them carries the ``session_id`` of the session that produced it;
an event whose session is no longer active is stale and dropped.

Notifications:
--------------
Emitted on the session's EventBus so renderers can refresh the timeline,
sending indicators and reasoning panels.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import Field

from threadkeeper.models import Message, ReasoningStep

from .base import BaseEvent, EventType

# ============================================================================
# Inbound Process Events
# ============================================================================


class ProcessEvent(BaseEvent):
    """Base for events produced by the external AI process."""

    session_id: str


class ChunkEvent(ProcessEvent):
    """Streamed text for the in-flight assistant reply."""

    event_type: EventType = Field(default=EventType.CHUNK, frozen=True)
    text: str


class ReasoningStepEvent(ProcessEvent):
    """Progress step (thinking, tool use) for the in-flight reply."""

    event_type: EventType = Field(default=EventType.REASONING_STEP, frozen=True)
    step: ReasoningStep


class FileEditedEvent(ProcessEvent):
    """The process edited a file inside the workspace."""

    event_type: EventType = Field(default=EventType.FILE_EDITED, frozen=True)
    path: str


class FinalizeEvent(ProcessEvent):
    """Authoritative end of an exchange.

    Args:
        content: Final reply text. When None the streamed text is kept.
        message_id: Assistant message the process is finalizing, when known.
            Lets redelivered terminal signals be recognised as duplicates.
        metadata: Extra metadata merged into the assistant message (cost, usage...)
    """

    event_type: EventType = Field(default=EventType.FINALIZE, frozen=True)
    content: Optional[str] = None
    message_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProcessErrorEvent(ProcessEvent):
    """The process failed while producing the reply."""

    event_type: EventType = Field(default=EventType.PROCESS_ERROR, frozen=True)
    error: str
    error_type: Optional[str] = None


class CancelledEvent(ProcessEvent):
    """The process stopped the in-flight reply after a cancel request."""

    event_type: EventType = Field(default=EventType.CANCELLED, frozen=True)


InboundEvent = Union[
    ChunkEvent,
    ReasoningStepEvent,
    FileEditedEvent,
    FinalizeEvent,
    ProcessErrorEvent,
    CancelledEvent,
]

# ============================================================================
# Timeline Notifications
# ============================================================================


class MessageAppendedEvent(BaseEvent):
    event_type: EventType = Field(default=EventType.MESSAGE_APPENDED, frozen=True)
    conversation_id: str
    message: Message


class MessagePatchedEvent(BaseEvent):
    event_type: EventType = Field(default=EventType.MESSAGE_PATCHED, frozen=True)
    conversation_id: str
    message: Message


class TimelineReplacedEvent(BaseEvent):
    """Whole timeline swapped (conversation load or compaction)."""

    event_type: EventType = Field(default=EventType.TIMELINE_REPLACED, frozen=True)
    conversation_id: Optional[str]
    message_count: int = Field(ge=0)
    reason: str = "load"


class SendingStateEvent(BaseEvent):
    event_type: EventType = Field(default=EventType.SENDING_STATE, frozen=True)
    is_sending: bool
    is_cancelling: bool = False
    pending_assistant_message_id: Optional[str] = None


class ReasoningUpdatedEvent(BaseEvent):
    """Live reasoning buffer of a pending assistant message changed."""

    event_type: EventType = Field(default=EventType.REASONING_UPDATED, frozen=True)
    message_id: str
    step_count: int = Field(ge=0)
    duration: int = Field(default=0, ge=0)


# ============================================================================
# Compaction & Persistence
# ============================================================================


class CompactionCompletedEvent(BaseEvent):
    event_type: EventType = Field(default=EventType.COMPACTION_COMPLETED, frozen=True)
    conversation_id: str
    trigger: str
    message_count_before: int = Field(ge=0)
    message_count_after: int = Field(ge=0)
    summarized_count: int = Field(ge=0)
    preserved_count: int = Field(ge=0)
    saved_percentage: int


class CompactionFailedEvent(BaseEvent):
    event_type: EventType = Field(default=EventType.COMPACTION_FAILED, frozen=True)
    conversation_id: Optional[str]
    trigger: str
    error: str


class PersistenceFailedEvent(BaseEvent):
    """Best-effort write failed; the in-memory timeline stays usable."""

    event_type: EventType = Field(default=EventType.PERSISTENCE_FAILED, frozen=True)
    operation: str
    message_ids: List[str] = Field(default_factory=list)
    error: str
