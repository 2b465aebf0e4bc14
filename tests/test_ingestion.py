"""Tests for the streaming ingestion controller."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from threadkeeper.events import (
    CancelledEvent,
    ChunkEvent,
    EventBus,
    FileEditedEvent,
    FinalizeEvent,
    PersistenceFailedEvent,
    ProcessErrorEvent,
    ReasoningStepEvent,
    ReasoningUpdatedEvent,
    SendingStateEvent,
)
from threadkeeper.exceptions import PersistenceError
from threadkeeper.history import ConversationStorage
from threadkeeper.ingestion import CANCELLED_NOTICE, EventOutcome, StreamingIngestionController
from threadkeeper.models import Message, ReasoningStep
from threadkeeper.registry import ExchangeState
from threadkeeper.store import MessageStore


@pytest.fixture
def store():
    return MessageStore(
        [Message(id="u1", conversation_id="conv-1", role="user", content="Please fix the bug in app.py")]
    )


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def emitted(bus):
    events = []
    bus.subscribe(events.append)
    return events


@pytest.fixture
def controller(store, registry, storage, bus):
    return StreamingIngestionController(store, registry, storage, bus)


def _step(message="Read: app.py", tool="Read"):
    return ReasoningStep(kind="tool-use", message=message, tool=tool)


class TestStaleEvents:
    @pytest.mark.asyncio
    async def test_event_from_other_session_never_mutates(self, controller, store, registry, start_exchange):
        start_exchange()
        before = [m.model_dump() for m in store.snapshot()]

        for event in [
            ChunkEvent(session_id="old-session", text="late text"),
            ReasoningStepEvent(session_id="old-session", step=_step()),
            FinalizeEvent(session_id="old-session", content="done"),
            ProcessErrorEvent(session_id="old-session", error="boom"),
            CancelledEvent(session_id="old-session"),
        ]:
            assert await controller.handle(event) == EventOutcome.STALE

        assert [m.model_dump() for m in store.snapshot()] == before
        assert registry.message_steps == {}
        assert registry.pending_exchange.content == ""
        assert registry.is_sending is True

    @pytest.mark.asyncio
    async def test_unmounted_session_drops_events(self, controller, store, registry, start_exchange):
        start_exchange()
        registry.mounted = False

        outcome = await controller.handle(ChunkEvent(session_id="s1", text="hello"))

        assert outcome == EventOutcome.STALE
        assert "a1" not in store


class TestChunks:
    @pytest.mark.asyncio
    async def test_first_chunk_creates_message_then_patches(self, controller, store, registry, start_exchange):
        exchange = start_exchange()

        await controller.handle(ChunkEvent(session_id="s1", text="Hello"))
        assert store.ids() == ["u1", "a1"]
        assert exchange.state == ExchangeState.STREAMING

        await controller.handle(ChunkEvent(session_id="s1", text=" world"))
        message = store.get("a1")
        assert message.content == "Hello world"
        assert message.role == "assistant"
        assert message.metadata["status"] == "streaming"
        assert store.ids() == ["u1", "a1"]

    @pytest.mark.asyncio
    async def test_chunk_without_pending_exchange_is_ignored(self, controller, store):
        outcome = await controller.handle(ChunkEvent(session_id="s1", text="orphan"))
        assert outcome == EventOutcome.IGNORED
        assert store.ids() == ["u1"]


class TestReasoningSteps:
    @pytest.mark.asyncio
    async def test_steps_mirrored_for_live_display(self, controller, registry, start_exchange, clock, emitted):
        start_exchange()
        clock.advance(3)

        await controller.handle(ReasoningStepEvent(session_id="s1", step=_step()))
        await controller.handle(ReasoningStepEvent(session_id="s1", step=_step("Edit: app.py", "Edit")))

        live = registry.message_steps["a1"]
        assert [s.message for s in live.steps] == ["Read: app.py", "Edit: app.py"]
        assert live.duration == 3
        updates = [e for e in emitted if isinstance(e, ReasoningUpdatedEvent)]
        assert updates[-1].step_count == 2


class TestFileEdits:
    @pytest.mark.asyncio
    async def test_file_edits_forwarded_not_stored(self, store, registry, storage):
        sink = MagicMock()
        controller = StreamingIngestionController(store, registry, storage, file_sink=sink)
        event = FileEditedEvent(session_id="s1", path="/work/project/app.py")

        assert await controller.handle(event) == EventOutcome.APPLIED
        sink.assert_called_once_with(event)
        assert store.ids() == ["u1"]

    @pytest.mark.asyncio
    async def test_async_sink_is_awaited(self, store, registry):
        sink = AsyncMock()
        controller = StreamingIngestionController(store, registry, file_sink=sink)

        await controller.handle(FileEditedEvent(session_id="s1", path="a.py"))
        sink.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failing_sink_is_logged_and_exchange_continues(self, store, registry, start_exchange, caplog):
        sink = MagicMock(side_effect=ValueError("editor closed"))
        controller = StreamingIngestionController(store, registry, file_sink=sink)
        start_exchange()

        outcome = await controller.handle(FileEditedEvent(session_id="s1", path="a.py"))
        final = await controller.handle(FinalizeEvent(session_id="s1", content="done"))

        assert outcome == EventOutcome.IGNORED
        assert "File edit handler failed" in caplog.text
        assert final == EventOutcome.APPLIED
        assert not registry.is_sending

    @pytest.mark.asyncio
    async def test_without_sink_file_edits_are_ignored(self, controller):
        assert await controller.handle(FileEditedEvent(session_id="s1", path="a.py")) == EventOutcome.IGNORED


class TestFinalize:
    @pytest.mark.asyncio
    async def test_finalize_freezes_steps_and_clears_pending(
        self, controller, store, registry, storage, start_exchange, clock, emitted
    ):
        exchange = start_exchange()
        await controller.handle(ChunkEvent(session_id="s1", text="Fixed it"))
        await controller.handle(ReasoningStepEvent(session_id="s1", step=_step()))
        clock.advance(7)

        outcome = await controller.handle(
            FinalizeEvent(session_id="s1", content="Fixed it.\n\n```bash\npytest\n```", metadata={"cost_usd": 0.01})
        )

        assert outcome == EventOutcome.APPLIED
        assert exchange.state == ExchangeState.FINALIZED
        assert registry.pending_exchange is None
        assert registry.is_sending is False
        assert registry.is_cancelling is False

        message = store.get("a1")
        assert message.content.startswith("Fixed it.")
        assert message.metadata["status"] == "complete"
        assert message.metadata["cost_usd"] == 0.01
        assert message.metadata["duration"] == 7
        assert [s.message for s in message.steps] == ["Read: app.py"]
        assert registry.message_steps["a1"].duration == 7

        # persisted, and derived blocks patched back
        persisted = storage._read("conv-1")
        assert [m.id for m in persisted] == ["a1"]
        assert [b["type"] for b in message.blocks] == ["text", "command"]

        sending = [e for e in emitted if isinstance(e, SendingStateEvent)]
        assert sending[-1].is_sending is False
        assert sending[-1].pending_assistant_message_id is None

    @pytest.mark.asyncio
    async def test_finalize_without_content_keeps_streamed_text(self, controller, store, start_exchange):
        start_exchange()
        await controller.handle(ChunkEvent(session_id="s1", text="streamed"))
        await controller.handle(FinalizeEvent(session_id="s1"))
        assert store.get("a1").content == "streamed"

    @pytest.mark.asyncio
    async def test_finalize_without_chunks_creates_message(self, controller, store, start_exchange):
        start_exchange()
        await controller.handle(FinalizeEvent(session_id="s1", content="All done"))
        assert store.get("a1").content == "All done"

    @pytest.mark.asyncio
    async def test_duplicate_finalize_is_a_noop(self, controller, store, registry, start_exchange):
        start_exchange()
        await controller.handle(ReasoningStepEvent(session_id="s1", step=_step()))
        first = await controller.handle(FinalizeEvent(session_id="s1", content="done", message_id="a1"))
        frozen = store.get("a1").model_dump()

        second = await controller.handle(FinalizeEvent(session_id="s1", content="done again", message_id="a1"))

        assert first == EventOutcome.APPLIED
        assert second == EventOutcome.IGNORED
        assert store.get("a1").model_dump() == frozen
        assert len(store.get("a1").steps) == 1

    @pytest.mark.asyncio
    async def test_redelivered_finalize_for_earlier_exchange_ignored(self, controller, store, start_exchange):
        start_exchange(assistant_message_id="a1")
        await controller.handle(FinalizeEvent(session_id="s1", content="first", message_id="a1"))
        start_exchange(user_message_id="u2", assistant_message_id="a2")

        outcome = await controller.handle(FinalizeEvent(session_id="s1", content="first", message_id="a1"))

        assert outcome == EventOutcome.IGNORED
        assert "a2" not in store

    @pytest.mark.asyncio
    async def test_persistence_failure_keeps_memory_state(self, store, registry, bus, emitted, start_exchange):
        failing = MagicMock(spec=ConversationStorage)
        failing.save_message = AsyncMock(side_effect=PersistenceError("disk full"))
        controller = StreamingIngestionController(store, registry, failing, bus)
        start_exchange()

        outcome = await controller.handle(FinalizeEvent(session_id="s1", content="done"))

        assert outcome == EventOutcome.APPLIED
        assert store.get("a1").content == "done"
        assert store.get("a1").blocks is None
        failures = [e for e in emitted if isinstance(e, PersistenceFailedEvent)]
        assert failures[0].message_ids == ["a1"]

    @pytest.mark.asyncio
    async def test_blocks_not_patched_after_conversation_switch(self, store, registry, start_exchange):
        async def save_and_switch(message, after_id=None, before_id=None):
            # the user switches conversation while the save is in flight
            registry.active_conversation_id = "conv-2"
            return [{"type": "text", "content": message.content}]

        slow = MagicMock(spec=ConversationStorage)
        slow.save_message = AsyncMock(side_effect=save_and_switch)
        controller = StreamingIngestionController(store, registry, slow)
        start_exchange()

        await controller.handle(FinalizeEvent(session_id="s1", content="done"))

        assert store.get("a1").blocks is None


class TestErrors:
    @pytest.mark.asyncio
    async def test_error_appends_error_message(self, controller, store, registry, storage, start_exchange):
        exchange = start_exchange()
        await controller.handle(ChunkEvent(session_id="s1", text="Partial"))

        outcome = await controller.handle(ProcessErrorEvent(session_id="s1", error="rate limited", error_type="api"))

        assert outcome == EventOutcome.APPLIED
        assert exchange.state == ExchangeState.ERRORED
        assert registry.pending_exchange is None
        assert registry.is_sending is False

        partial = store.get("a1")
        assert partial.metadata["status"] == "errored"
        error_message = store.snapshot()[-1]
        assert error_message.content == "Error: rate limited"
        assert error_message.metadata["error"] is True
        assert error_message.role == "assistant"
        assert [m.id for m in storage._read("conv-1")] == ["a1", error_message.id]

    @pytest.mark.asyncio
    async def test_error_without_pending_only_resets_sending(self, controller, store, registry):
        registry.is_sending = True
        outcome = await controller.handle(ProcessErrorEvent(session_id="s1", error="late"))
        assert outcome == EventOutcome.IGNORED
        assert registry.is_sending is False
        assert store.ids() == ["u1"]


class TestCancelled:
    @pytest.mark.asyncio
    async def test_cancel_before_any_chunk(self, controller, store, registry, start_exchange):
        start_exchange()
        registry.is_cancelling = True

        outcome = await controller.handle(CancelledEvent(session_id="s1"))

        assert outcome == EventOutcome.APPLIED
        assert registry.is_sending is False
        assert registry.is_cancelling is False
        assert registry.pending_assistant_message_id is None
        assert "a1" not in store
        notice = store.snapshot()[-1]
        assert notice.content == CANCELLED_NOTICE
        assert notice.metadata["cancelled"] is True

    @pytest.mark.asyncio
    async def test_cancel_marks_partial_message(self, controller, store, registry, start_exchange):
        start_exchange()
        await controller.handle(ChunkEvent(session_id="s1", text="Half an ans"))
        await controller.handle(ReasoningStepEvent(session_id="s1", step=_step()))

        await controller.handle(CancelledEvent(session_id="s1"))

        message = store.get("a1")
        assert message.metadata["cancelled"] is True
        assert message.metadata["status"] == "cancelled"
        assert message.content == "Half an ans"
        assert len(message.steps) == 1
        assert store.ids() == ["u1", "a1"]


class TestDetachedExchange:
    @pytest.mark.asyncio
    async def test_switched_away_exchange_persists_without_touching_store(
        self, controller, store, registry, storage, start_exchange
    ):
        start_exchange()
        await controller.handle(ChunkEvent(session_id="s1", text="Hello"))

        # the user opens another conversation of the same workspace
        registry.active_conversation_id = "conv-2"
        store.replace([Message(id="x1", conversation_id="conv-2", role="user", content="other")])

        await controller.handle(ChunkEvent(session_id="s1", text=" there"))
        outcome = await controller.handle(FinalizeEvent(session_id="s1"))

        assert outcome == EventOutcome.APPLIED
        assert store.ids() == ["x1"]
        persisted = storage._read("conv-1")
        assert persisted[-1].id == "a1"
        assert persisted[-1].content == "Hello there"
        assert registry.is_sending is False
