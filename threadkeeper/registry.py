"""Correlation registry and the per-exchange state machine.

Every asynchronous callback must read these cells when it runs, never when it
was registered. The user can switch workspaces or conversations while an
exchange is still streaming, so a resumed handler re-checks the current
identity before it mutates anything.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from .exceptions import InvalidTransitionError
from .models import ReasoningStep, StepsSnapshot

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class SessionIdentity:
    """Correlation key every inbound event must match."""

    session_id: str
    conversation_id: str
    workspace_path: str


class ExchangeState(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (ExchangeState.FINALIZED, ExchangeState.CANCELLED, ExchangeState.ERRORED)


_TRANSITIONS = {
    ExchangeState.PENDING: {
        ExchangeState.STREAMING,
        ExchangeState.FINALIZED,
        ExchangeState.CANCELLED,
        ExchangeState.ERRORED,
    },
    ExchangeState.STREAMING: {
        ExchangeState.STREAMING,
        ExchangeState.FINALIZED,
        ExchangeState.CANCELLED,
        ExchangeState.ERRORED,
    },
}


@dataclass
class PendingExchange:
    """Link between an outbound user message and its in-progress reply.

    Exists only between send and the first terminal event.
    """

    session_id: str
    conversation_id: str
    user_message_id: str
    assistant_message_id: str
    clock: Clock = time.monotonic
    steps: List[ReasoningStep] = field(default_factory=list)
    content: str = ""
    state: ExchangeState = ExchangeState.PENDING
    started_at: float = field(default=0.0)

    def __post_init__(self):
        if not self.started_at:
            self.started_at = self.clock()

    def transition(self, new_state: ExchangeState) -> None:
        allowed = _TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise InvalidTransitionError(f"Exchange {self.assistant_message_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def elapsed(self) -> int:
        """Whole seconds since the exchange was sent."""
        return max(0, round(self.clock() - self.started_at))

    def snapshot(self) -> StepsSnapshot:
        return StepsSnapshot(steps=tuple(self.steps), duration=self.elapsed())


class CorrelationRegistry:
    """Mutable "current state" cells consulted by every async callback.

    Writes are immediate; there is no buffering.
    """

    def __init__(self, clock: Clock = time.monotonic):
        self.clock = clock
        self.active_session_id: Optional[str] = None
        self.active_conversation_id: Optional[str] = None
        self.active_workspace_path: Optional[str] = None
        self.pending_exchange: Optional[PendingExchange] = None
        self.is_sending: bool = False
        self.is_cancelling: bool = False
        self.mounted: bool = True
        self.message_steps: Dict[str, StepsSnapshot] = {}
        self.last_compaction_at: Optional[float] = None
        self.last_auto_compaction_attempt_at: Optional[float] = None
        self.activation_generation: int = 0

    def begin_activation(self) -> int:
        """Claim a token for a workspace activation; later requests supersede it."""
        self.activation_generation += 1
        return self.activation_generation

    def is_activation_current(self, token: int) -> bool:
        return self.mounted and token == self.activation_generation

    def identity(self) -> Optional[SessionIdentity]:
        """Current identity triple, or None when no session is active."""
        if self.active_session_id is None or self.active_conversation_id is None:
            return None
        return SessionIdentity(
            session_id=self.active_session_id,
            conversation_id=self.active_conversation_id,
            workspace_path=self.active_workspace_path or "",
        )

    def is_current(self, session_id: Optional[str]) -> bool:
        return self.mounted and session_id is not None and session_id == self.active_session_id

    @property
    def pending_assistant_message_id(self) -> Optional[str]:
        return self.pending_exchange.assistant_message_id if self.pending_exchange else None

    def activate(self, identity: SessionIdentity) -> Optional[SessionIdentity]:
        """Make ``identity`` the active triple.

        Any exchange belonging to a replaced session is dropped: its session
        is gone and every later event it produces is stale.

        Returns:
            The replaced identity, if there was one
        """
        previous = self.identity()
        if self.pending_exchange and self.pending_exchange.session_id != identity.session_id:
            logger.info("Dropping in-flight exchange of replaced session %s", self.pending_exchange.session_id)
            self.clear_pending()
        self.active_session_id = identity.session_id
        self.active_conversation_id = identity.conversation_id
        self.active_workspace_path = identity.workspace_path
        return previous

    def deactivate(self) -> Optional[SessionIdentity]:
        previous = self.identity()
        self.active_session_id = None
        self.active_conversation_id = None
        self.active_workspace_path = None
        self.clear_pending()
        return previous

    def clear_pending(self) -> None:
        self.pending_exchange = None
        self.is_sending = False
        self.is_cancelling = False
