"""Test configuration and fixtures."""

import asyncio
import os
import warnings
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest

# Use litellm's bundled model map instead of fetching it
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

# Suppress RuntimeWarnings from litellm's async cleanup
warnings.filterwarnings("ignore", category=RuntimeWarning, module="litellm")

from threadkeeper.compaction import SummaryResult  # noqa: E402
from threadkeeper.history import ConversationStorage  # noqa: E402
from threadkeeper.models import Message  # noqa: E402
from threadkeeper.process import EventChannel  # noqa: E402
from threadkeeper.registry import CorrelationRegistry, PendingExchange, SessionIdentity  # noqa: E402


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProcess:
    """In-memory AI process: records requests, tests publish the replies."""

    def __init__(self):
        self.channel = EventChannel()
        self.sent = []
        self.cancelled = []
        self.closed = []
        self.started = []
        self.send_error: Optional[Exception] = None
        self.gates: Dict[str, asyncio.Event] = {}

    async def start_session(self, workspace_path: str) -> str:
        self.started.append(workspace_path)
        session_id = f"session-{len(self.started)}"
        gate = self.gates.get(workspace_path)
        if gate is not None:
            await gate.wait()
        return session_id

    def send(self, session_id, text, attachments=()):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((session_id, text, list(attachments)))

    def cancel(self, session_id):
        self.cancelled.append(session_id)

    async def close_session(self, session_id):
        self.closed.append(session_id)

    def events(self):
        return self.channel.__aiter__()


class FakeSummarizer:
    """Summarizer double that records calls and can fail or run a hook."""

    def __init__(self, summary: str = "Earlier work: set up the project.", error: Optional[Exception] = None):
        self.summary = summary
        self.error = error
        self.calls: List[List[Message]] = []
        self.on_call = None

    async def summarize(self, messages, context=()):
        self.calls.append(list(messages))
        await asyncio.sleep(0)
        if self.on_call is not None:
            self.on_call()
        if self.error is not None:
            raise self.error
        return SummaryResult(
            summary=self.summary,
            tokens_before=sum(len(m.content) // 4 for m in messages),
            tokens_after=len(self.summary) // 4,
        )


def make_message(index: int, conversation_id: str = "conv-1", **metadata) -> Message:
    return Message(
        id=f"m{index}",
        conversation_id=conversation_id,
        role="user" if index % 2 else "assistant",
        content=f"Message {index}: " + "details about the work so far. " * 5,
        metadata=metadata,
    )


def make_messages(count: int, conversation_id: str = "conv-1", important: Iterable[int] = ()) -> List[Message]:
    """Messages m1..m<count>; indices in ``important`` are flagged important."""
    important = set(important)
    return [
        make_message(i, conversation_id, **({"important": True} if i in important else {}))
        for i in range(1, count + 1)
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def history_dir(tmp_path) -> Path:
    return tmp_path / "history"


@pytest.fixture
def storage(history_dir) -> ConversationStorage:
    return ConversationStorage(history_dir)


@pytest.fixture
def identity() -> SessionIdentity:
    return SessionIdentity(session_id="s1", conversation_id="conv-1", workspace_path="/work/project")


@pytest.fixture
def registry(clock, identity) -> CorrelationRegistry:
    registry = CorrelationRegistry(clock)
    registry.activate(identity)
    return registry


@pytest.fixture
def start_exchange(registry, clock):
    """Begin an exchange the way ConversationSession.send does."""

    def _start(user_message_id: str = "u1", assistant_message_id: str = "a1") -> PendingExchange:
        exchange = PendingExchange(
            session_id=registry.active_session_id,
            conversation_id=registry.active_conversation_id,
            user_message_id=user_message_id,
            assistant_message_id=assistant_message_id,
            clock=clock,
        )
        registry.pending_exchange = exchange
        registry.is_sending = True
        return exchange

    return _start


@pytest.fixture
def fake_process() -> FakeProcess:
    return FakeProcess()


@pytest.fixture
def fake_summarizer() -> FakeSummarizer:
    return FakeSummarizer()


@pytest.fixture
def messages_factory():
    return make_messages


@pytest.fixture
def summarizer_factory():
    return FakeSummarizer


@pytest.fixture
def simple_token_counts(monkeypatch):
    """Deterministic len//4 token counts for compaction bookkeeping."""
    monkeypatch.setattr("threadkeeper.compaction.engine.count_tokens", lambda text, model: len(text) // 4)
    monkeypatch.setattr(
        "threadkeeper.compaction.engine.count_message_tokens",
        lambda messages, model: sum(len(m.content) // 4 for m in messages),
    )
