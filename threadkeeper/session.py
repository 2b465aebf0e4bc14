"""Conversation session: one timeline bound to one external process session.

All mutation happens on the event loop. The session pumps process events
one at a time through the ingestion controller, so handlers never
interleave mid-mutation; they can only be interleaved at await points, and
every resumption re-checks the correlation registry.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from .compaction import CompactionEngine, LiteLLMSummarizer, Summarizer
from .config import EngineConfig
from .events import (
    EventBus,
    FinalizeEvent,
    MessageAppendedEvent,
    PersistenceFailedEvent,
    ProcessErrorEvent,
    ProcessEvent,
    SendingStateEvent,
    TimelineReplacedEvent,
)
from .exceptions import (
    CompactionError,
    ExchangeInProgressError,
    ExternalProcessError,
    NoActiveSessionError,
    PersistenceError,
    SummarizationError,
)
from .history import ConversationStorage
from .ingestion import EventOutcome, FileEditSink, StreamingIngestionController
from .models import CompactionResult, Message, StepsSnapshot, generate_message_id
from .process import AIProcess
from .registry import CorrelationRegistry, PendingExchange, SessionIdentity
from .render import RenderWindowEstimator
from .store import MessageStore

logger = logging.getLogger(__name__)


class ConversationSession:
    """Owns the timeline, registry, ingestion, render estimates and compaction.

    Args:
        process: External AI process
        storage: Persistence collaborator (None keeps everything in memory)
        config: Engine configuration
        summarizer: Compaction summarizer; defaults to ``LiteLLMSummarizer``
        file_sink: Receives file edit notifications
    """

    def __init__(
        self,
        process: AIProcess,
        storage: Optional[ConversationStorage] = None,
        config: Optional[EngineConfig] = None,
        summarizer: Optional[Summarizer] = None,
        file_sink: Optional[FileEditSink] = None,
        registry: Optional[CorrelationRegistry] = None,
    ):
        self.config = config or EngineConfig()
        self.process = process
        self.storage = storage
        self.bus = EventBus()
        self.store = MessageStore()
        self.registry = registry or CorrelationRegistry()
        self.ingestion = StreamingIngestionController(self.store, self.registry, storage, self.bus, file_sink)
        self.renderer = RenderWindowEstimator(
            self.store.view, lambda: self.registry.message_steps, overscan=self.config.render.overscan
        )

        compaction_config = self.config.compaction
        if summarizer is None:
            summarizer = LiteLLMSummarizer(
                model=compaction_config.model,
                timeout=compaction_config.timeout_seconds,
                max_retries=compaction_config.max_retries,
                retry_delay=compaction_config.retry_delay_seconds,
            )
        self.compaction = CompactionEngine(
            self.store, self.registry, storage, summarizer, compaction_config, self.bus, self.registry.clock
        )

        self._pump_task: Optional[asyncio.Task] = None
        self._background: set = set()

    # ------------------------------------------------------------------
    # Read side for renderers
    # ------------------------------------------------------------------

    def snapshot(self) -> List[Message]:
        return self.store.snapshot()

    def estimate_size(self, index: int) -> int:
        return self.renderer.estimate_size(index)

    @property
    def identity(self) -> Optional[SessionIdentity]:
        return self.registry.identity()

    @property
    def is_sending(self) -> bool:
        return self.registry.is_sending

    @property
    def is_cancelling(self) -> bool:
        return self.registry.is_cancelling

    @property
    def pending_assistant_message_id(self) -> Optional[str]:
        return self.registry.pending_assistant_message_id

    def reasoning_buffers(self) -> Dict[str, StepsSnapshot]:
        """Live and frozen reasoning steps keyed by assistant message id."""
        buffers = dict(self.registry.message_steps)
        exchange = self.registry.pending_exchange
        if exchange is not None:
            buffers[exchange.assistant_message_id] = exchange.snapshot()
        return buffers

    def _emit_sending_state(self) -> None:
        self.bus.emit(
            SendingStateEvent(
                is_sending=self.registry.is_sending,
                is_cancelling=self.registry.is_cancelling,
                pending_assistant_message_id=self.registry.pending_assistant_message_id,
            )
        )

    # ------------------------------------------------------------------
    # Workspace and conversation lifecycle
    # ------------------------------------------------------------------

    async def _load(self, identity: SessionIdentity) -> bool:
        """Load a conversation into the store if ``identity`` is still current after the read."""
        messages: List[Message] = []
        if self.storage is not None:
            try:
                messages = await self.storage.load_messages(identity.conversation_id)
            except PersistenceError as e:
                logger.warning("Failed to load conversation %s: %s", identity.conversation_id, e)
                self.bus.emit(PersistenceFailedEvent(operation="load", error=str(e)))

        if not self.registry.mounted or self.registry.identity() != identity:
            logger.debug("Discarding load of %s: identity changed", identity.conversation_id)
            return False

        self.store.replace(messages)
        self.registry.message_steps = {
            m.id: StepsSnapshot(steps=m.steps, duration=m.metadata.get("duration") or 0) for m in messages if m.steps
        }
        self.bus.emit(
            TimelineReplacedEvent(conversation_id=identity.conversation_id, message_count=len(messages), reason="load")
        )
        return True

    async def _close_process_session(self, session_id: str) -> None:
        try:
            await self.process.close_session(session_id)
        except (ExternalProcessError, OSError) as e:
            logger.warning("Failed to close session %s: %s", session_id, e)

    async def activate_workspace(self, workspace_path: str, conversation_id: Optional[str] = None) -> SessionIdentity:
        """Start a process session for a workspace and load a conversation.

        Events from the replaced session become stale immediately. When a
        newer activation is requested while this one is starting, the newer
        one wins and the session started here is closed.

        Raises:
            ExternalProcessError: If the process session cannot be started
            NoActiveSessionError: If the session was disposed or superseded meanwhile
        """
        conversation_id = conversation_id or generate_message_id("conv")
        token = self.registry.begin_activation()
        session_id = await self.process.start_session(workspace_path)

        if not self.registry.mounted:
            await self._close_process_session(session_id)
            raise NoActiveSessionError("Session was disposed while the workspace was starting")
        if not self.registry.is_activation_current(token):
            logger.info("Activation of %s superseded by a newer request", workspace_path)
            await self._close_process_session(session_id)
            raise NoActiveSessionError(f"Activation of {workspace_path} was superseded")

        identity = SessionIdentity(session_id=session_id, conversation_id=conversation_id, workspace_path=workspace_path)
        previous = self.registry.activate(identity)
        self._emit_sending_state()
        logger.info("Activated workspace %s (session %s, conversation %s)", workspace_path, session_id, conversation_id)

        await self._load(identity)

        if previous is not None and previous.session_id != session_id:
            await self._close_process_session(previous.session_id)
        return identity

    async def switch_conversation(self, conversation_id: str) -> SessionIdentity:
        """Show another conversation of the active workspace.

        An in-flight exchange keeps settling under its own conversation.

        Raises:
            NoActiveSessionError: If no workspace is active
        """
        current = self.registry.identity()
        if current is None:
            raise NoActiveSessionError("No active workspace session")

        identity = SessionIdentity(
            session_id=current.session_id, conversation_id=conversation_id, workspace_path=current.workspace_path
        )
        self.registry.activate(identity)
        await self._load(identity)
        return identity

    async def close_workspace(self) -> None:
        self.registry.begin_activation()
        previous = self.registry.deactivate()
        self.store.replace([])
        self.registry.message_steps = {}
        self._emit_sending_state()
        self.bus.emit(TimelineReplacedEvent(conversation_id=None, message_count=0, reason="close"))
        if previous is not None:
            await self._close_process_session(previous.session_id)

    def dispose(self) -> None:
        """Unmount: every later event and resumption is stale."""
        self.registry.mounted = False
        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()

    # ------------------------------------------------------------------
    # Exchanges
    # ------------------------------------------------------------------

    async def send(self, text: str, attachments: Sequence[str] = ()) -> Message:
        """Optimistically append a user message and dispatch it.

        Raises:
            NoActiveSessionError: If no workspace is active
            ExchangeInProgressError: If the previous reply has not settled
        """
        identity = self.registry.identity()
        if identity is None or not self.registry.mounted:
            raise NoActiveSessionError("No active workspace session")
        if self.registry.pending_exchange is not None:
            raise ExchangeInProgressError("Wait for the current reply or cancel it")

        metadata = {"workspace_path": identity.workspace_path}
        if attachments:
            metadata["attachments"] = list(attachments)
        user_message = self.store.append(
            Message(
                id=generate_message_id(),
                conversation_id=identity.conversation_id,
                role="user",
                content=text,
                metadata=metadata,
            )
        )
        self.bus.emit(MessageAppendedEvent(conversation_id=identity.conversation_id, message=user_message))

        exchange = PendingExchange(
            session_id=identity.session_id,
            conversation_id=identity.conversation_id,
            user_message_id=user_message.id,
            assistant_message_id=generate_message_id(),
            clock=self.registry.clock,
        )
        self.registry.pending_exchange = exchange
        self.registry.is_sending = True
        self.registry.is_cancelling = False
        self._emit_sending_state()

        # The user message reaches storage before the reply can be finalized
        await self.ingestion.persist_message(user_message)
        if self.registry.pending_exchange is not exchange or not self.registry.is_current(identity.session_id):
            logger.debug("Exchange for %s settled before dispatch; not sending", user_message.id)
            return user_message

        try:
            self.process.send(identity.session_id, text, list(attachments))
        except (ExternalProcessError, OSError) as e:
            logger.warning("Failed to dispatch message to session %s: %s", identity.session_id, e)
            await self.ingestion.handle(
                ProcessErrorEvent(session_id=identity.session_id, error=str(e), error_type=type(e).__name__)
            )
        return user_message

    def cancel(self) -> bool:
        """Ask the process to stop the in-flight reply.

        Only flags ``is_cancelling``; the stop itself arrives as an event.

        Returns:
            False when there is nothing to cancel
        """
        session_id = self.registry.active_session_id
        if session_id is None or self.registry.pending_exchange is None:
            return False
        self.registry.is_cancelling = True
        self._emit_sending_state()
        self.process.cancel(session_id)
        return True

    # ------------------------------------------------------------------
    # Event pump
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def dispatch(self, event: ProcessEvent) -> EventOutcome:
        """Handle one process event to completion."""
        try:
            outcome = await self.ingestion.handle(event)
        except Exception:
            logger.exception("Failed to apply %s from session %s", event.event_type.name, event.session_id)
            return EventOutcome.IGNORED

        if outcome == EventOutcome.APPLIED and isinstance(event, FinalizeEvent):
            ratio = event.metadata.get("context_usage")
            if isinstance(ratio, (int, float)):
                self._spawn(self.report_context_usage(float(ratio)))
        return outcome

    async def run(self) -> None:
        """Consume process events until the channel closes."""
        async for event in self.process.events():
            if not self.registry.mounted:
                break
            await self.dispatch(event)

    def start(self) -> asyncio.Task:
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self.run())
            self._pump_task.add_done_callback(self._on_pump_done)
        return self._pump_task

    @staticmethod
    def _on_pump_done(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Event pump stopped", exc_info=task.exception())

    async def stop(self) -> None:
        task, self._pump_task = self._pump_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def aclose(self) -> None:
        await self.stop()
        await self.close_workspace()
        self.dispose()

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    async def compact(self) -> CompactionResult:
        """Manual compaction.

        Raises:
            SummarizationError: Summarizer failed; nothing was modified
            CompactionError: Persistence failed and the change was rolled back
        """
        return await self.compaction.compact(trigger="manual")

    async def report_context_usage(self, ratio: float) -> Optional[CompactionResult]:
        """Feed the external context-usage gauge; compacts automatically above the mark."""
        try:
            return await self.compaction.maybe_auto_compact(ratio)
        except (SummarizationError, CompactionError) as e:
            logger.warning("Auto-compaction failed: %s", e)
            return None
