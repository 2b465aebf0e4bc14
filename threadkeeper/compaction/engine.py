"""Compaction saga: replace uninteresting history with a summary.

Steps, each with its own failure handling:

1. summarize the messages selected for removal (failure: nothing touched)
2. re-validate that the conversation is still active
3. persist the summary right after the initial window (failure: nothing deleted)
4. delete the summarized originals from persistence (failure: re-save the
   deleted originals, delete the summary)
5. swap the in-memory timeline
6. record the compaction time and report the savings
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from threadkeeper.config import CompactionConfig
from threadkeeper.events import (
    CompactionCompletedEvent,
    CompactionFailedEvent,
    EventBus,
    PersistenceFailedEvent,
    TimelineReplacedEvent,
)
from threadkeeper.exceptions import CompactionError, PersistenceError, SummarizationError
from threadkeeper.history import ConversationStorage
from threadkeeper.models import CompactionPlan, CompactionResult, CompactionStatus, Message
from threadkeeper.registry import CorrelationRegistry
from threadkeeper.store import MessageStore

from .selection import Partition, extract_context, is_flagged_important, partition
from .summarizer import Summarizer
from .tokens import count_message_tokens, count_tokens

logger = logging.getLogger(__name__)

SUMMARY_HEADING = "## Session Summary"
AUTO_COMPACTED_MARKER = " (Auto-compacted)"


def build_summary_content(
    summary: str, summarized_count: int, total_count: int, preserved_count: int, automatic: bool = False
) -> str:
    footnote = (
        f"*This summary consolidates **{summarized_count}** messages (out of {total_count} total). "
        f"{preserved_count} important messages preserved separately.*"
    )
    if automatic:
        footnote += AUTO_COMPACTED_MARKER
    return f"{SUMMARY_HEADING}\n\n{summary}\n\n---\n\n{footnote}"


class CompactionEngine:
    """Runs manual and automatic compactions of the active conversation.

    Args:
        store: In-memory timeline of the active conversation
        registry: Correlation cells (active conversation, compaction times)
        storage: Persistence collaborator; None compacts memory only
        summarizer: Produces the summary text
        config: Windows, thresholds and intervals
        bus: Notifications for renderers
    """

    def __init__(
        self,
        store: MessageStore,
        registry: CorrelationRegistry,
        storage: Optional[ConversationStorage],
        summarizer: Summarizer,
        config: Optional[CompactionConfig] = None,
        bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.store = store
        self.registry = registry
        self.storage = storage
        self.summarizer = summarizer
        self.config = config or CompactionConfig()
        self.bus = bus or EventBus()
        self.clock = clock or registry.clock
        self._running = False

    @property
    def in_progress(self) -> bool:
        return self._running

    def _is_important(self, message: Message) -> bool:
        return is_flagged_important(message, heuristics=self.config.heuristic_importance)

    def plan(self, messages: Sequence[Message]) -> Partition:
        """Partition ``messages`` under the current windows. No side effects."""
        return partition(messages, self.config.keep_initial, self.config.keep_recent, self._is_important)

    async def compact(self, trigger: str = "manual") -> CompactionResult:
        """Compact the active conversation.

        Returns:
            Result with status COMPLETED, or the reason nothing was done

        Raises:
            SummarizationError: The summarizer failed; nothing was modified
            CompactionError: Persistence failed mid-saga; changes were rolled back
        """
        if self._running:
            return CompactionResult(status=CompactionStatus.IN_PROGRESS)

        conversation_id = self.registry.active_conversation_id
        if conversation_id is None:
            return CompactionResult(status=CompactionStatus.NO_CONVERSATION)

        messages = self.store.snapshot()
        if len(messages) < self.config.min_messages:
            logger.debug("Not compacting %s: %d < %d messages", conversation_id, len(messages), self.config.min_messages)
            return CompactionResult(
                status=CompactionStatus.TOO_FEW_MESSAGES,
                message_count_before=len(messages),
                message_count_after=len(messages),
            )

        selection = self.plan(messages)
        if not selection.to_summarize:
            return CompactionResult(
                status=CompactionStatus.NOTHING_TO_SUMMARIZE,
                message_count_before=len(messages),
                message_count_after=len(messages),
            )

        self._running = True
        try:
            return await self._run(conversation_id, messages, selection, trigger)
        except (SummarizationError, CompactionError) as e:
            logger.error("Compaction of %s failed: %s", conversation_id, e)
            self.bus.emit(CompactionFailedEvent(conversation_id=conversation_id, trigger=trigger, error=str(e)))
            raise
        finally:
            self._running = False

    async def maybe_auto_compact(self, usage_ratio: float) -> CompactionResult:
        """Compact automatically once context usage crosses the high-water mark.

        At most one automatic attempt runs per ``min_interval_seconds``,
        counted from the last attempt or the last completed compaction.
        """
        if usage_ratio < self.config.high_water_mark:
            return CompactionResult(status=CompactionStatus.BELOW_THRESHOLD)
        if self._running:
            return CompactionResult(status=CompactionStatus.IN_PROGRESS)

        now = self.clock()
        marks = [
            t for t in (self.registry.last_auto_compaction_attempt_at, self.registry.last_compaction_at) if t is not None
        ]
        if marks and now - max(marks) < self.config.min_interval_seconds:
            logger.debug("Skipping auto-compaction (too soon since last compaction)")
            return CompactionResult(status=CompactionStatus.COOLDOWN)

        self.registry.last_auto_compaction_attempt_at = now
        logger.info("Auto-compaction triggered at %.0f%% context usage", usage_ratio * 100)
        return await self.compact(trigger="auto")

    # ------------------------------------------------------------------
    # Saga
    # ------------------------------------------------------------------

    async def _summarize(self, messages: List[Message], selection: Partition):
        try:
            return await self.summarizer.summarize(selection.to_summarize, extract_context(messages))
        except SummarizationError:
            raise
        except Exception as e:
            raise SummarizationError(f"Summarizer failed: {e}") from e

    async def _run(
        self, conversation_id: str, messages: List[Message], selection: Partition, trigger: str
    ) -> CompactionResult:
        automatic = trigger == "auto"
        logger.info(
            "Compacting %s: initial=%d important=%d recent=%d to_summarize=%d",
            conversation_id,
            len(selection.initial),
            len(selection.important),
            len(selection.recent),
            len(selection.to_summarize),
        )

        # 1. summarize
        result = await self._summarize(messages, selection)

        # 2. re-validate after the await
        if not self.registry.mounted or self.registry.active_conversation_id != conversation_id:
            raise CompactionError(f"Conversation {conversation_id} is no longer active; compaction abandoned")

        model = self.config.model
        tokens_before = count_message_tokens(messages, model)
        tokens_after = count_tokens(result.summary, model) + count_message_tokens(selection.kept, model)
        plan = CompactionPlan(
            keep_initial_count=self.config.keep_initial,
            keep_recent_count=self.config.keep_recent,
            initial_ids=[m.id for m in selection.initial],
            recent_ids=[m.id for m in selection.recent],
            preserved_ids={m.id for m in selection.important},
            summarized_ids=[m.id for m in selection.to_summarize],
            summary=result.summary,
            tokens_before=tokens_before,
            tokens_after=tokens_after,
        )

        now = datetime.now(timezone.utc)
        summary_message = Message(
            id=f"summary-{int(now.timestamp() * 1000)}",
            conversation_id=conversation_id,
            role="assistant",
            content=build_summary_content(
                result.summary,
                summarized_count=len(plan.summarized_ids),
                total_count=len(messages),
                preserved_count=len(plan.preserved_ids),
                automatic=automatic,
            ),
            metadata={
                "compaction_summary": True,
                "original_message_count": len(messages),
                "summarized_message_count": len(plan.summarized_ids),
                "preserved_count": len(plan.preserved_ids),
                "tokens_before": tokens_before,
                "tokens_after": tokens_after,
                "trigger": trigger,
            },
            timestamp=now,
        )

        # 3 + 4. persist summary, then delete originals
        if self.storage is not None:
            summary_message = await self._persist(conversation_id, messages, selection, summary_message)

        # 5. swap, keeping anything appended while we were awaiting
        if self.registry.active_conversation_id == conversation_id and self.registry.mounted:
            self._swap(selection, summary_message)
        else:
            logger.warning("Conversation %s switched during compaction; in-memory swap skipped", conversation_id)

        # 6. record
        self.registry.last_compaction_at = self.clock()
        for message_id in plan.summarized_ids:
            self.registry.message_steps.pop(message_id, None)

        compaction = CompactionResult(
            status=CompactionStatus.COMPLETED,
            plan=plan,
            summary_message=summary_message,
            deleted_ids=list(plan.summarized_ids),
            message_count_before=len(messages),
            message_count_after=len(self.store),
        )
        logger.info(
            "Compacted %s: %d -> %d messages, %d%% tokens saved",
            conversation_id,
            compaction.message_count_before,
            compaction.message_count_after,
            plan.saved_percentage,
        )
        self.bus.emit(
            CompactionCompletedEvent(
                conversation_id=conversation_id,
                trigger=trigger,
                message_count_before=compaction.message_count_before,
                message_count_after=compaction.message_count_after,
                summarized_count=len(plan.summarized_ids),
                preserved_count=len(plan.preserved_ids),
                saved_percentage=plan.saved_percentage,
            )
        )
        return compaction

    async def _persist(
        self, conversation_id: str, messages: List[Message], selection: Partition, summary_message: Message
    ) -> Message:
        if selection.initial:
            position = {"after_id": selection.initial[-1].id}
        else:
            position = {"before_id": messages[0].id}

        try:
            blocks = await self.storage.save_message(summary_message, **position)
        except PersistenceError as e:
            raise CompactionError(f"Failed to save compaction summary: {e}", rolled_back=True) from e
        summary_message = summary_message.model_copy(update={"blocks": blocks})

        deleted: List[str] = []
        for message in selection.to_summarize:
            try:
                await self.storage.delete_message(conversation_id, message.id)
            except PersistenceError as e:
                restored, rolled_back = await self._compensate(conversation_id, messages, deleted, summary_message)
                raise CompactionError(
                    f"Failed to delete message {message.id}: {e}", rolled_back=rolled_back, restored_ids=restored
                ) from e
            deleted.append(message.id)

        return summary_message

    async def _compensate(
        self, conversation_id: str, messages: List[Message], deleted: List[str], summary_message: Message
    ):
        """Undo a half-applied compaction in the persisted store.

        Returns:
            (restored ids, whether every undo step succeeded)
        """
        logger.warning("Rolling back compaction of %s (%d originals deleted)", conversation_id, len(deleted))
        by_id: Dict[str, Message] = {m.id: m for m in messages}
        predecessor = {m.id: messages[i - 1].id if i > 0 else None for i, m in enumerate(messages)}
        deleted_set = set(deleted)
        restored: List[str] = []
        rolled_back = True

        # timeline order, so a deleted predecessor is restored first
        for message in messages:
            if message.id not in deleted_set:
                continue
            prev_id = predecessor[message.id]
            position = {"after_id": prev_id} if prev_id else {"before_id": summary_message.id}
            try:
                await self.storage.save_message(by_id[message.id], **position)
                restored.append(message.id)
            except PersistenceError as e:
                rolled_back = False
                logger.error("Could not restore %s during rollback: %s", message.id, e)

        try:
            await self.storage.delete_message(conversation_id, summary_message.id)
        except PersistenceError as e:
            rolled_back = False
            logger.error("Could not remove summary %s during rollback: %s", summary_message.id, e)

        if not rolled_back:
            self.bus.emit(
                PersistenceFailedEvent(
                    operation="compaction_rollback",
                    message_ids=[i for i in deleted if i not in restored] + [summary_message.id],
                    error="Rollback incomplete",
                )
            )
        return restored, rolled_back

    def _swap(self, selection: Partition, summary_message: Message) -> None:
        summarized = {m.id for m in selection.to_summarize}
        anchor = selection.initial[-1].id if selection.initial else None

        new_timeline: List[Message] = []
        if anchor is None:
            new_timeline.append(summary_message)
        for message in self.store.snapshot():
            if message.id in summarized:
                continue
            new_timeline.append(message)
            if message.id == anchor:
                new_timeline.append(summary_message)

        self.store.replace(new_timeline)
        self.bus.emit(
            TimelineReplacedEvent(
                conversation_id=summary_message.conversation_id,
                message_count=len(new_timeline),
                reason="compaction",
            )
        )
