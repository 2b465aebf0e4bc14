"""Base event model and event type enum."""

from datetime import datetime, timezone
from enum import IntEnum

from pydantic import BaseModel, Field


class EventType(IntEnum):
    """Event type enumeration."""

    # Inbound events from the external AI process
    CHUNK = 1
    REASONING_STEP = 2
    FILE_EDITED = 3
    FINALIZE = 4
    PROCESS_ERROR = 5
    CANCELLED = 6

    # Timeline notifications for renderers
    MESSAGE_APPENDED = 11
    MESSAGE_PATCHED = 12
    TIMELINE_REPLACED = 13
    SENDING_STATE = 14
    REASONING_UPDATED = 15

    # Compaction and persistence
    COMPACTION_COMPLETED = 21
    COMPACTION_FAILED = 22
    PERSISTENCE_FAILED = 23


class BaseEvent(BaseModel):
    """Base class for all events."""

    model_config = {"frozen": True, "use_enum_values": False}

    event_type: EventType = Field(frozen=True)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
