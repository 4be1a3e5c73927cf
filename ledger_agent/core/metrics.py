from __future__ import annotations

from functools import wraps
from typing import Any, Callable, TypeVar

from prometheus_client import Counter, Gauge, Histogram

_F = TypeVar("_F", bound=Callable[..., None])

_enabled = True

TURNS_TOTAL = Counter(
    "ledger_agent_turns_total",
    "Completed turns grouped by outcome",
    labelnames=("outcome",),
)

TURN_LATENCY_SECONDS = Histogram(
    "ledger_agent_turn_latency_seconds",
    "Wall-clock time from user message to terminal state",
    labelnames=("outcome",),
    buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 300, float("inf")),
)

ACTIVE_TURNS_GAUGE = Gauge(
    "ledger_agent_turns_active",
    "Turns currently in a non-terminal state",
)

STATE_TRANSITIONS_TOTAL = Counter(
    "ledger_agent_state_transitions_total",
    "Turn state machine transitions",
    labelnames=("from_state", "to_state"),
)

TOOL_CALLS_TOTAL = Counter(
    "ledger_agent_tool_calls_total",
    "Tool calls grouped by final status",
    labelnames=("tool", "status"),
)

TOOL_LATENCY_SECONDS = Histogram(
    "ledger_agent_tool_latency_seconds",
    "Latency of dispatched tool calls",
    labelnames=("tool",),
)

CONFIRMATIONS_TOTAL = Counter(
    "ledger_agent_confirmations_total",
    "Confirmation requests grouped by resolution",
    labelnames=("decision",),
)

INTENT_CONFIDENCE = Histogram(
    "ledger_agent_intent_confidence",
    "Confidence reported for rewritten intents",
    labelnames=("intent",),
    buckets=(0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0),
)

REFLECTION_CONFIDENCE = Histogram(
    "ledger_agent_reflection_confidence",
    "Outcome confidence computed by the reflector",
    buckets=(0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0),
)


def configure_metrics(enabled: bool) -> None:
    """Switch every recording helper on or off; instruments stay registered either way."""
    global _enabled
    _enabled = enabled


def _recorded(func: _F) -> _F:
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> None:
        if _enabled:
            func(*args, **kwargs)

    return wrapper  # type: ignore[return-value]


@_recorded
def increment_turn(*, outcome: str, latency: float | None = None) -> None:
    TURNS_TOTAL.labels(outcome=outcome).inc()
    if latency is not None:
        TURN_LATENCY_SECONDS.labels(outcome=outcome).observe(max(latency, 0.0))


@_recorded
def track_active_turn(delta: int) -> None:
    if delta >= 0:
        ACTIVE_TURNS_GAUGE.inc(delta)
    else:
        ACTIVE_TURNS_GAUGE.dec(-delta)


@_recorded
def increment_state_transition(*, from_state: str, to_state: str) -> None:
    STATE_TRANSITIONS_TOTAL.labels(from_state=from_state, to_state=to_state).inc()


@_recorded
def increment_tool_call(*, tool: str, status: str, latency: float | None = None) -> None:
    TOOL_CALLS_TOTAL.labels(tool=tool, status=status).inc()
    if latency is not None:
        TOOL_LATENCY_SECONDS.labels(tool=tool).observe(max(latency, 0.0))


@_recorded
def increment_confirmation(*, decision: str) -> None:
    CONFIRMATIONS_TOTAL.labels(decision=decision).inc()


@_recorded
def observe_intent_confidence(*, intent: str, confidence: float) -> None:
    INTENT_CONFIDENCE.labels(intent=intent).observe(confidence)


@_recorded
def observe_reflection_confidence(confidence: float) -> None:
    REFLECTION_CONFIDENCE.observe(confidence)


__all__ = [
    "configure_metrics",
    "increment_turn",
    "track_active_turn",
    "increment_state_transition",
    "increment_tool_call",
    "increment_confirmation",
    "observe_intent_confidence",
    "observe_reflection_confidence",
]
