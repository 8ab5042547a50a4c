"""
Session State Machine — lifecycle of one training session.

    idle → initializing → active ⇄ paused → completed → idle
                 ↓
               idle        (start failed)

Transitions outside this table raise InvalidState. A forced reset to idle
is available for recovery (``force_idle``) and is recorded like any other
transition, flagged as forced.
"""
from __future__ import annotations

import structlog
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Optional

from core.errors import InvalidState
from models.schemas import SessionState

logger = structlog.get_logger()


ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.INITIALIZING}),
    SessionState.INITIALIZING: frozenset({SessionState.ACTIVE, SessionState.IDLE}),
    SessionState.ACTIVE: frozenset({SessionState.PAUSED, SessionState.COMPLETED}),
    SessionState.PAUSED: frozenset({SessionState.ACTIVE, SessionState.COMPLETED}),
    SessionState.COMPLETED: frozenset({SessionState.IDLE}),
}

# most recent transitions kept across sessions
MAX_HISTORY = 100


# ──────────────────────────────────────────────────────────────
#  Transition Record
# ──────────────────────────────────────────────────────────────

class TransitionRecord:
    """One applied lifecycle transition."""

    def __init__(self, from_state: SessionState, to_state: SessionState,
                 reason: str = "", forced: bool = False):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        self.forced = forced
        self.timestamp = datetime.now(timezone.utc)

    def __repr__(self):
        flag = " forced" if self.forced else ""
        return f"<Transition {self.from_state.value} → {self.to_state.value}{flag}>"


# ──────────────────────────────────────────────────────────────
#  Session State Machine
# ──────────────────────────────────────────────────────────────

class SessionStateMachine:

    def __init__(self, on_change: Optional[Callable[[SessionState, SessionState], None]] = None):
        self._state = SessionState.IDLE
        self._history: deque[TransitionRecord] = deque(maxlen=MAX_HISTORY)
        self._on_change = on_change

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def history(self) -> list[TransitionRecord]:
        return list(self._history)

    def can_transition(self, to_state: SessionState) -> bool:
        return to_state in ALLOWED_TRANSITIONS[self._state]

    def require(self, *states: SessionState, action: str = "") -> None:
        """Raise InvalidState unless the machine is in one of ``states``."""
        if self._state not in states:
            allowed = ", ".join(s.value for s in states)
            raise InvalidState(
                f"{action or 'operation'} requires state in ({allowed}), current state is {self._state.value}"
            )

    def transition(self, to_state: SessionState, reason: str = "") -> TransitionRecord:
        if not self.can_transition(to_state):
            raise InvalidState(
                f"Cannot transition from {self._state.value} to {to_state.value}"
            )
        return self._apply(to_state, reason, forced=False)

    def force_idle(self, reason: str = "") -> Optional[TransitionRecord]:
        if self._state == SessionState.IDLE:
            return None
        return self._apply(SessionState.IDLE, reason, forced=True)

    def _apply(self, to_state: SessionState, reason: str, forced: bool) -> TransitionRecord:
        record = TransitionRecord(self._state, to_state, reason, forced)
        previous, self._state = self._state, to_state
        self._history.append(record)
        log = logger.warning if forced else logger.info
        log("session_state_changed", from_state=previous.value, to_state=to_state.value,
            reason=reason, forced=forced)
        if self._on_change is not None:
            try:
                self._on_change(previous, to_state)
            except Exception as e:
                logger.error("state_change_callback_failed", error=str(e))
        return record
