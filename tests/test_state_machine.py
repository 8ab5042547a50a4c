"""Tests for SessionStateMachine — the session lifecycle FSM."""
import pytest

from core.errors import InvalidState
from core.state import ALLOWED_TRANSITIONS, MAX_HISTORY, SessionStateMachine
from models.schemas import SessionState


class TestTransitions:
    def test_starts_idle(self):
        assert SessionStateMachine().state == SessionState.IDLE

    def test_full_lifecycle(self):
        sm = SessionStateMachine()
        for state in (SessionState.INITIALIZING, SessionState.ACTIVE, SessionState.PAUSED,
                      SessionState.ACTIVE, SessionState.COMPLETED, SessionState.IDLE):
            sm.transition(state)
        assert sm.state == SessionState.IDLE
        assert len(sm.history) == 6

    def test_failed_start_returns_idle(self):
        sm = SessionStateMachine()
        sm.transition(SessionState.INITIALIZING)
        sm.transition(SessionState.IDLE, reason="start_failed")
        assert sm.state == SessionState.IDLE

    @pytest.mark.parametrize("target", [
        SessionState.ACTIVE, SessionState.PAUSED, SessionState.COMPLETED, SessionState.IDLE,
    ])
    def test_illegal_from_idle(self, target):
        sm = SessionStateMachine()
        with pytest.raises(InvalidState):
            sm.transition(target)
        assert sm.state == SessionState.IDLE
        assert sm.history == []

    def test_completed_cannot_resume(self):
        sm = SessionStateMachine()
        sm.transition(SessionState.INITIALIZING)
        sm.transition(SessionState.ACTIVE)
        sm.transition(SessionState.COMPLETED)
        assert not sm.can_transition(SessionState.ACTIVE)
        with pytest.raises(InvalidState):
            sm.transition(SessionState.PAUSED)

    def test_every_state_has_an_exit(self):
        assert set(ALLOWED_TRANSITIONS) == set(SessionState)
        assert all(ALLOWED_TRANSITIONS[s] for s in SessionState)


class TestRequire:
    def test_require_passes(self):
        sm = SessionStateMachine()
        sm.require(SessionState.IDLE)

    def test_require_message_names_action(self):
        sm = SessionStateMachine()
        with pytest.raises(InvalidState, match="end_session"):
            sm.require(SessionState.ACTIVE, SessionState.PAUSED, action="end_session")


class TestForceIdle:
    def test_force_from_active(self):
        sm = SessionStateMachine()
        sm.transition(SessionState.INITIALIZING)
        sm.transition(SessionState.ACTIVE)
        record = sm.force_idle(reason="restart")
        assert sm.state == SessionState.IDLE
        assert record.forced
        assert record.from_state == SessionState.ACTIVE

    def test_force_when_idle_is_noop(self):
        sm = SessionStateMachine()
        assert sm.force_idle() is None
        assert sm.history == []


class TestOnChange:
    def test_callback_receives_previous_and_current(self):
        seen = []
        sm = SessionStateMachine(on_change=lambda prev, cur: seen.append((prev, cur)))
        sm.transition(SessionState.INITIALIZING)
        assert seen == [(SessionState.IDLE, SessionState.INITIALIZING)]

    def test_failing_callback_does_not_block_transition(self):
        def boom(prev, cur):
            raise RuntimeError("ui gone")

        sm = SessionStateMachine(on_change=boom)
        sm.transition(SessionState.INITIALIZING)
        assert sm.state == SessionState.INITIALIZING


class TestHistory:
    def test_history_capped_across_sessions(self):
        sm = SessionStateMachine()
        for _ in range(MAX_HISTORY):
            sm.transition(SessionState.INITIALIZING)
            sm.transition(SessionState.ACTIVE)
            sm.transition(SessionState.COMPLETED)
            sm.transition(SessionState.IDLE)
        history = sm.history
        assert len(history) == MAX_HISTORY
        assert history[-1].to_state == SessionState.IDLE
        assert isinstance(history, list)
