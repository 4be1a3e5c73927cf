from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from ledger_agent.orchestration.enums import AgentState
from ledger_agent.orchestration.state_machine import TRANSITIONS, InvalidTransitionError, TurnStateMachine


def test_happy_path_records_history() -> None:
    machine = TurnStateMachine(turn_id="t1")

    for state in (AgentState.PARSING, AgentState.PLANNING, AgentState.EXECUTING, AgentState.REFLECTING):
        machine.transition(state)
    machine.transition(AgentState.COMPLETED, note="completed")

    assert machine.terminal
    assert [record.to_state for record in machine.history] == [
        AgentState.PARSING,
        AgentState.PLANNING,
        AgentState.EXECUTING,
        AgentState.REFLECTING,
        AgentState.COMPLETED,
    ]
    assert machine.history[-1].note == "completed"


def test_illegal_transition_is_rejected() -> None:
    machine = TurnStateMachine(turn_id="t1")
    machine.transition(AgentState.PARSING)

    with pytest.raises(InvalidTransitionError):
        machine.transition(AgentState.EXECUTING)
    assert machine.state is AgentState.PARSING


def test_completed_is_final_and_error_only_completes() -> None:
    assert TRANSITIONS[AgentState.COMPLETED] == frozenset()
    assert TRANSITIONS[AgentState.ERROR] == frozenset({AgentState.COMPLETED})
    for state, targets in TRANSITIONS.items():
        if state is not AgentState.COMPLETED:
            assert AgentState.COMPLETED in targets


def test_listeners_are_notified_and_failures_isolated() -> None:
    machine = TurnStateMachine(turn_id="t1")
    seen: list[tuple[AgentState, AgentState]] = []

    def broken(previous, current):
        raise RuntimeError("listener bug")

    machine.subscribe(broken)
    unsubscribe = machine.subscribe(lambda previous, current: seen.append((previous, current)))
    machine.transition(AgentState.PARSING)
    unsubscribe()
    machine.transition(AgentState.COMPLETED)

    assert seen == [(AgentState.IDLE, AgentState.PARSING)]
    assert machine.terminal


def test_history_is_bounded() -> None:
    machine = TurnStateMachine(turn_id="t1", history_limit=2)
    machine.transition(AgentState.PARSING)
    machine.transition(AgentState.PLANNING)
    machine.transition(AgentState.COMPLETED)

    assert [record.to_state for record in machine.history] == [AgentState.PLANNING, AgentState.COMPLETED]


def test_transitions_are_counted() -> None:
    labels = {"from_state": "parsing", "to_state": "error"}
    before = REGISTRY.get_sample_value("ledger_agent_state_transitions_total", labels) or 0.0
    machine = TurnStateMachine(turn_id="t1")
    machine.transition(AgentState.PARSING)
    machine.transition(AgentState.ERROR)

    after = REGISTRY.get_sample_value("ledger_agent_state_transitions_total", labels)
    assert after == pytest.approx(before + 1.0)


def test_display_names() -> None:
    assert AgentState.AWAITING_CONFIRMATION.display_name == "Waiting for confirmation"
    assert AgentState.ERROR.is_terminal
    assert not AgentState.REFLECTING.is_terminal
