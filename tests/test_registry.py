"""Tests for the correlation registry and exchange state machine."""

import pytest

from threadkeeper.exceptions import InvalidTransitionError
from threadkeeper.models import ReasoningStep
from threadkeeper.registry import CorrelationRegistry, ExchangeState, PendingExchange, SessionIdentity


def _exchange(clock, session_id="s1") -> PendingExchange:
    return PendingExchange(
        session_id=session_id,
        conversation_id="conv-1",
        user_message_id="u1",
        assistant_message_id="a1",
        clock=clock,
    )


class TestExchangeStateMachine:
    def test_pending_to_streaming_to_finalized(self, clock):
        exchange = _exchange(clock)
        exchange.transition(ExchangeState.STREAMING)
        exchange.transition(ExchangeState.STREAMING)
        exchange.transition(ExchangeState.FINALIZED)
        assert exchange.state.is_terminal

    @pytest.mark.parametrize("terminal", [ExchangeState.FINALIZED, ExchangeState.CANCELLED, ExchangeState.ERRORED])
    def test_pending_can_end_directly(self, clock, terminal):
        exchange = _exchange(clock)
        exchange.transition(terminal)
        assert exchange.state == terminal

    @pytest.mark.parametrize("terminal", [ExchangeState.FINALIZED, ExchangeState.CANCELLED, ExchangeState.ERRORED])
    def test_terminal_states_are_absorbing(self, clock, terminal):
        exchange = _exchange(clock)
        exchange.transition(terminal)
        with pytest.raises(InvalidTransitionError):
            exchange.transition(ExchangeState.STREAMING)
        with pytest.raises(InvalidTransitionError):
            exchange.transition(ExchangeState.FINALIZED)

    def test_cannot_go_back_to_pending(self, clock):
        exchange = _exchange(clock)
        exchange.transition(ExchangeState.STREAMING)
        with pytest.raises(InvalidTransitionError):
            exchange.transition(ExchangeState.PENDING)

    def test_elapsed_and_snapshot_use_clock(self, clock):
        exchange = _exchange(clock)
        exchange.steps.append(ReasoningStep(kind="thinking", message="look around"))
        clock.advance(4.4)

        snapshot = exchange.snapshot()
        assert exchange.elapsed() == 4
        assert snapshot.duration == 4
        assert len(snapshot.steps) == 1

        # snapshot is frozen; later steps do not leak into it
        exchange.steps.append(ReasoningStep(kind="tool-use", message="Read: a.py"))
        assert len(snapshot.steps) == 1


class TestCorrelationRegistry:
    def test_identity_reads_current_cells(self, clock):
        registry = CorrelationRegistry(clock)
        assert registry.identity() is None

        registry.activate(SessionIdentity("s1", "conv-1", "/ws"))
        assert registry.identity() == SessionIdentity("s1", "conv-1", "/ws")
        assert registry.is_current("s1")
        assert not registry.is_current("s0")
        assert not registry.is_current(None)

    def test_unmounted_registry_has_no_current_session(self, registry):
        registry.mounted = False
        assert not registry.is_current("s1")

    def test_activate_returns_previous_and_drops_replaced_exchange(self, registry, clock):
        registry.pending_exchange = _exchange(clock, session_id="s1")
        registry.is_sending = True

        previous = registry.activate(SessionIdentity("s2", "conv-2", "/other"))

        assert previous.session_id == "s1"
        assert registry.pending_exchange is None
        assert registry.is_sending is False
        assert registry.active_session_id == "s2"

    def test_conversation_switch_keeps_same_session_exchange(self, registry, clock):
        registry.pending_exchange = _exchange(clock, session_id="s1")
        registry.is_sending = True

        registry.activate(SessionIdentity("s1", "conv-2", "/work/project"))

        assert registry.pending_assistant_message_id == "a1"
        assert registry.is_sending is True

    def test_deactivate_clears_everything(self, registry, clock):
        registry.pending_exchange = _exchange(clock)
        registry.is_sending = True
        registry.is_cancelling = True

        previous = registry.deactivate()

        assert previous.conversation_id == "conv-1"
        assert registry.identity() is None
        assert registry.pending_assistant_message_id is None
        assert not registry.is_sending
        assert not registry.is_cancelling

    def test_newer_activation_supersedes_token(self, registry):
        first = registry.begin_activation()
        second = registry.begin_activation()

        assert not registry.is_activation_current(first)
        assert registry.is_activation_current(second)

        registry.mounted = False
        assert not registry.is_activation_current(second)
