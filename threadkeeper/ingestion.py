"""Streaming ingestion: apply external process events to the timeline.

Every event is checked against the correlation registry before anything is
mutated. After each await (persistence) the registry is consulted again,
because the user may have switched workspace or conversation meanwhile.
"""

import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .events import (
    CancelledEvent,
    ChunkEvent,
    EventBus,
    EventType,
    FileEditedEvent,
    FinalizeEvent,
    MessageAppendedEvent,
    MessagePatchedEvent,
    PersistenceFailedEvent,
    ProcessErrorEvent,
    ProcessEvent,
    ReasoningStepEvent,
    ReasoningUpdatedEvent,
    SendingStateEvent,
)
from .exceptions import PersistenceError
from .history import ConversationStorage
from .models import Message, StepsSnapshot, generate_message_id
from .registry import CorrelationRegistry, ExchangeState, PendingExchange
from .store import MessageStore

logger = logging.getLogger(__name__)

CANCELLED_NOTICE = "_Message cancelled by user_"

FileEditSink = Callable[[FileEditedEvent], Union[None, Awaitable[None]]]


class EventOutcome(str, Enum):
    """What ``handle`` did with an event."""

    APPLIED = "applied"
    STALE = "stale"  # session no longer active, dropped without mutation
    IGNORED = "ignored"  # current session, but nothing to apply it to


def _frozen_step_metadata(snapshot: StepsSnapshot) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {"duration": snapshot.duration}
    if snapshot.steps:
        metadata["steps"] = [step.model_dump(mode="json") for step in snapshot.steps]
    return metadata


class StreamingIngestionController:
    """Apply ``ProcessEvent``s to the message store and registry.

    Args:
        store: Timeline of the active conversation
        registry: Correlation cells shared with the session
        storage: Persistence collaborator (None disables persistence)
        bus: Notifications for renderers
        file_sink: Receives ``FileEditedEvent``s for the file subsystem
    """

    def __init__(
        self,
        store: MessageStore,
        registry: CorrelationRegistry,
        storage: Optional[ConversationStorage] = None,
        bus: Optional[EventBus] = None,
        file_sink: Optional[FileEditSink] = None,
    ):
        self.store = store
        self.registry = registry
        self.storage = storage
        self.bus = bus or EventBus()
        self.file_sink = file_sink
        self._handlers = {
            EventType.CHUNK: self._on_chunk,
            EventType.REASONING_STEP: self._on_reasoning_step,
            EventType.FILE_EDITED: self._on_file_edited,
            EventType.FINALIZE: self._on_finalize,
            EventType.PROCESS_ERROR: self._on_error,
            EventType.CANCELLED: self._on_cancelled,
        }

    async def handle(self, event: ProcessEvent) -> EventOutcome:
        """Apply one inbound event.

        Returns:
            STALE when the event belongs to a session that is no longer active,
            IGNORED when there is nothing for it to act on, APPLIED otherwise
        """
        if not self.registry.is_current(event.session_id):
            logger.debug(
                "Dropping stale %s from session %s (active: %s)",
                event.event_type.name,
                event.session_id,
                self.registry.active_session_id,
            )
            return EventOutcome.STALE

        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.warning("No handler for %s", event.event_type.name)
            return EventOutcome.IGNORED
        return await handler(event)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _emit(self, event) -> None:
        self.bus.emit(event)

    def _emit_sending_state(self) -> None:
        self._emit(
            SendingStateEvent(
                is_sending=self.registry.is_sending,
                is_cancelling=self.registry.is_cancelling,
                pending_assistant_message_id=self.registry.pending_assistant_message_id,
            )
        )

    def _live_exchange(self) -> Optional[PendingExchange]:
        exchange = self.registry.pending_exchange
        if exchange is None or exchange.state.is_terminal:
            return None
        return exchange

    def _is_attached(self, conversation_id: str) -> bool:
        """True when ``conversation_id`` is the timeline held in the store."""
        return self.registry.mounted and conversation_id == self.registry.active_conversation_id

    def _upsert(
        self,
        exchange: PendingExchange,
        message_id: str,
        content: Optional[str],
        metadata: Dict[str, Any],
    ) -> Message:
        """Create or patch an exchange message.

        For a detached exchange the store is left alone and a standalone
        message is returned so it can still be persisted.
        """
        if self._is_attached(exchange.conversation_id):
            if message_id in self.store:
                updates: Dict[str, Any] = {"metadata": metadata}
                if content is not None:
                    updates["content"] = content
                message = self.store.patch(message_id, updates)
                self._emit(MessagePatchedEvent(conversation_id=exchange.conversation_id, message=message))
                return message

            message = self.store.append(
                Message(
                    id=message_id,
                    conversation_id=exchange.conversation_id,
                    role="assistant",
                    content=content or "",
                    metadata=metadata,
                )
            )
            self._emit(MessageAppendedEvent(conversation_id=exchange.conversation_id, message=message))
            return message

        return Message(
            id=message_id,
            conversation_id=exchange.conversation_id,
            role="assistant",
            content=content if content is not None else exchange.content,
            metadata=metadata,
        )

    def _append_notice(self, exchange: PendingExchange, content: str, metadata: Dict[str, Any]) -> Message:
        message = Message(
            id=generate_message_id(),
            conversation_id=exchange.conversation_id,
            role="assistant",
            content=content,
            metadata=metadata,
        )
        if self._is_attached(exchange.conversation_id):
            message = self.store.append(message)
            self._emit(MessageAppendedEvent(conversation_id=exchange.conversation_id, message=message))
        return message

    def _has_partial(self, exchange: PendingExchange) -> bool:
        if self._is_attached(exchange.conversation_id):
            return exchange.assistant_message_id in self.store
        return bool(exchange.content)

    async def persist_message(self, message: Message) -> Optional[List[Dict[str, Any]]]:
        """Best-effort save, then patch derived blocks back if still relevant.

        Returns:
            Derived blocks, or None when persistence is disabled or failed
        """
        if self.storage is None:
            return None
        try:
            blocks = await self.storage.save_message(message)
        except PersistenceError as e:
            logger.warning("Failed to persist message %s: %s", message.id, e)
            self._emit(PersistenceFailedEvent(operation="save", message_ids=[message.id], error=str(e)))
            return None

        # Re-validate after the await: the conversation may have been switched
        if self._is_attached(message.conversation_id) and message.id in self.store:
            patched = self.store.patch(message.id, {"blocks": blocks})
            self._emit(MessagePatchedEvent(conversation_id=message.conversation_id, message=patched))
        return blocks

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_chunk(self, event: ChunkEvent) -> EventOutcome:
        exchange = self._live_exchange()
        if exchange is None:
            logger.debug("Chunk with no pending exchange in session %s", event.session_id)
            return EventOutcome.IGNORED

        exchange.content += event.text
        exchange.transition(ExchangeState.STREAMING)
        self._upsert(exchange, exchange.assistant_message_id, exchange.content, {"status": "streaming"})
        return EventOutcome.APPLIED

    async def _on_reasoning_step(self, event: ReasoningStepEvent) -> EventOutcome:
        exchange = self._live_exchange()
        if exchange is None:
            return EventOutcome.IGNORED

        exchange.steps.append(event.step)
        exchange.transition(ExchangeState.STREAMING)
        snapshot = exchange.snapshot()
        self.registry.message_steps[exchange.assistant_message_id] = snapshot
        self._emit(
            ReasoningUpdatedEvent(
                message_id=exchange.assistant_message_id,
                step_count=len(snapshot.steps),
                duration=snapshot.duration,
            )
        )
        return EventOutcome.APPLIED

    async def _on_file_edited(self, event: FileEditedEvent) -> EventOutcome:
        if self.file_sink is None:
            return EventOutcome.IGNORED
        try:
            result = self.file_sink(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("File edit handler failed for %s", event.path)
            return EventOutcome.IGNORED
        return EventOutcome.APPLIED

    async def _on_finalize(self, event: FinalizeEvent) -> EventOutcome:
        exchange = self._live_exchange()
        if exchange is None:
            logger.debug("Duplicate finalize in session %s ignored", event.session_id)
            return EventOutcome.IGNORED
        if event.message_id is not None and event.message_id != exchange.assistant_message_id:
            logger.debug("Finalize for settled message %s ignored", event.message_id)
            return EventOutcome.IGNORED

        snapshot = exchange.snapshot()
        exchange.transition(ExchangeState.FINALIZED)
        self.registry.message_steps[exchange.assistant_message_id] = snapshot
        self.registry.clear_pending()
        self._emit_sending_state()

        content = event.content if event.content is not None else exchange.content
        metadata = {**event.metadata, "status": "complete", **_frozen_step_metadata(snapshot)}
        message = self._upsert(exchange, exchange.assistant_message_id, content, metadata)

        await self.persist_message(message)
        return EventOutcome.APPLIED

    async def _on_error(self, event: ProcessErrorEvent) -> EventOutcome:
        exchange = self._live_exchange()
        if exchange is None:
            self.registry.is_sending = False
            self._emit_sending_state()
            return EventOutcome.IGNORED

        logger.warning("Exchange %s failed: %s", exchange.assistant_message_id, event.error)
        snapshot = exchange.snapshot()
        exchange.transition(ExchangeState.ERRORED)
        self.registry.clear_pending()
        self._emit_sending_state()

        to_persist = []
        if self._has_partial(exchange):
            partial_meta = {"status": "errored", **_frozen_step_metadata(snapshot)}
            to_persist.append(self._upsert(exchange, exchange.assistant_message_id, None, partial_meta))

        error_meta: Dict[str, Any] = {"error": True}
        if event.error_type:
            error_meta["error_type"] = event.error_type
        to_persist.append(self._append_notice(exchange, f"Error: {event.error}", error_meta))

        for message in to_persist:
            await self.persist_message(message)
        return EventOutcome.APPLIED

    async def _on_cancelled(self, event: CancelledEvent) -> EventOutcome:
        exchange = self._live_exchange()
        if exchange is None:
            self.registry.is_sending = False
            self.registry.is_cancelling = False
            self._emit_sending_state()
            return EventOutcome.IGNORED

        snapshot = exchange.snapshot()
        exchange.transition(ExchangeState.CANCELLED)
        self.registry.clear_pending()
        self._emit_sending_state()

        if self._has_partial(exchange):
            self.registry.message_steps[exchange.assistant_message_id] = snapshot
            metadata = {"cancelled": True, "status": "cancelled", **_frozen_step_metadata(snapshot)}
            message = self._upsert(exchange, exchange.assistant_message_id, None, metadata)
        else:
            message = self._append_notice(exchange, CANCELLED_NOTICE, {"cancelled": True})

        await self.persist_message(message)
        return EventOutcome.APPLIED
