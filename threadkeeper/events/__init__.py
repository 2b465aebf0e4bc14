"""Event system: inbound process events and timeline notifications."""

from .base import BaseEvent, EventType
from .bus import EventBus
from .events import (
    CancelledEvent,
    ChunkEvent,
    CompactionCompletedEvent,
    CompactionFailedEvent,
    FileEditedEvent,
    FinalizeEvent,
    InboundEvent,
    MessageAppendedEvent,
    MessagePatchedEvent,
    PersistenceFailedEvent,
    ProcessErrorEvent,
    ProcessEvent,
    ReasoningStepEvent,
    ReasoningUpdatedEvent,
    SendingStateEvent,
    TimelineReplacedEvent,
)

__all__ = [
    # Base
    "BaseEvent",
    "EventType",
    "EventBus",
    # Inbound
    "ProcessEvent",
    "InboundEvent",
    "ChunkEvent",
    "ReasoningStepEvent",
    "FileEditedEvent",
    "FinalizeEvent",
    "ProcessErrorEvent",
    "CancelledEvent",
    # Notifications
    "MessageAppendedEvent",
    "MessagePatchedEvent",
    "TimelineReplacedEvent",
    "SendingStateEvent",
    "ReasoningUpdatedEvent",
    "CompactionCompletedEvent",
    "CompactionFailedEvent",
    "PersistenceFailedEvent",
]
