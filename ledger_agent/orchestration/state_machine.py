from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Deque

from ..core.logging import get_logger
from ..core.metrics import increment_state_transition
from .enums import AgentState

logger = get_logger(name=__name__)

TransitionListener = Callable[[AgentState, AgentState], None]

TRANSITIONS: dict[AgentState, frozenset[AgentState]] = {
    AgentState.IDLE: frozenset({AgentState.PARSING, AgentState.COMPLETED}),
    AgentState.PARSING: frozenset({AgentState.PLANNING, AgentState.COMPLETED, AgentState.ERROR}),
    AgentState.PLANNING: frozenset(
        {
            AgentState.EXECUTING,
            AgentState.AWAITING_CONFIRMATION,
            AgentState.REFLECTING,
            AgentState.COMPLETED,
            AgentState.ERROR,
        }
    ),
    AgentState.AWAITING_CONFIRMATION: frozenset({AgentState.EXECUTING, AgentState.COMPLETED, AgentState.ERROR}),
    AgentState.EXECUTING: frozenset({AgentState.REFLECTING, AgentState.COMPLETED, AgentState.ERROR}),
    AgentState.REFLECTING: frozenset({AgentState.COMPLETED, AgentState.ERROR}),
    AgentState.ERROR: frozenset({AgentState.COMPLETED}),
    AgentState.COMPLETED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """Raised when the controller attempts a transition the table does not allow."""


@dataclass(slots=True)
class StateRecord:
    from_state: AgentState
    to_state: AgentState
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    note: str | None = None


class TurnStateMachine:
    """Per-turn state holder that enforces the transition table and keeps a bounded history."""

    def __init__(self, *, turn_id: str, history_limit: int = 100) -> None:
        self.turn_id = turn_id
        self._state = AgentState.IDLE
        self._history: Deque[StateRecord] = deque(maxlen=max(1, history_limit))
        self._listeners: list[TransitionListener] = []

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def history(self) -> list[StateRecord]:
        return list(self._history)

    @property
    def terminal(self) -> bool:
        return self._state is AgentState.COMPLETED

    def can_transition(self, target: AgentState) -> bool:
        return target in TRANSITIONS[self._state]

    def transition(self, target: AgentState, *, note: str | None = None) -> AgentState:
        previous = self._state
        if not self.can_transition(target):
            raise InvalidTransitionError(
                f"Cannot move turn {self.turn_id} from {previous.value} to {target.value}"
            )
        self._state = target
        self._history.append(StateRecord(from_state=previous, to_state=target, note=note))
        increment_state_transition(from_state=previous.value, to_state=target.value)
        logger.debug(
            "turn_state_changed",
            turn_id=self.turn_id,
            from_state=previous.value,
            to_state=target.value,
            note=note,
        )
        for listener in list(self._listeners):
            try:
                listener(previous, target)
            except Exception:
                logger.exception("turn_state_listener_failed", turn_id=self.turn_id, to_state=target.value)
        return previous

    def subscribe(self, listener: TransitionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe


__all__ = ["TRANSITIONS", "InvalidTransitionError", "StateRecord", "TurnStateMachine"]
