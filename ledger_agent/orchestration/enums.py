from __future__ import annotations

from enum import Enum
from typing import Iterable


class AgentState(str, Enum):
    IDLE = "idle"
    PARSING = "parsing"
    PLANNING = "planning"
    EXECUTING = "executing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    REFLECTING = "reflecting"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def display_name(self) -> str:
        return _STATE_DISPLAY_NAMES[self]

    @property
    def is_terminal(self) -> bool:
        return self in {AgentState.COMPLETED, AgentState.ERROR}


_STATE_DISPLAY_NAMES = {
    AgentState.IDLE: "Idle",
    AgentState.PARSING: "Understanding request",
    AgentState.PLANNING: "Planning",
    AgentState.EXECUTING: "Running tools",
    AgentState.AWAITING_CONFIRMATION: "Waiting for confirmation",
    AgentState.REFLECTING: "Checking results",
    AgentState.COMPLETED: "Done",
    AgentState.ERROR: "Failed",
}


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    def escalate(self, steps: int = 1) -> "RiskLevel":
        return _RISK_ORDER[min(self.rank + steps, len(_RISK_ORDER) - 1)]

    def at_least(self, other: "RiskLevel") -> bool:
        return self.rank >= other.rank

    @classmethod
    def highest(cls, levels: Iterable["RiskLevel"]) -> "RiskLevel":
        return max(levels, key=lambda level: level.rank, default=cls.LOW)


_RISK_ORDER = (RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL)


class IntentType(str, Enum):
    CREATE = "create"
    QUERY = "query"
    UPDATE = "update"
    DELETE = "delete"
    STATISTICS = "statistics"
    BATCH = "batch"
    CHAT = "chat"
    CLARIFY = "clarify"
    UNKNOWN = "unknown"


class ConfirmationDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    ALWAYS_ALLOW = "always_allow"


class CallStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class ErrorKind(str, Enum):
    TOOL_ARGUMENT_INVALID = "tool_argument_invalid"
    TOOL_EXECUTION_FAILED = "tool_execution_failed"
    TOOL_TIMEOUT = "tool_timeout"
    RATE_LIMITED = "rate_limited"
    DEPENDENCY_FAILED = "dependency_failed"
    BINDING_UNRESOLVED = "binding_unresolved"
    CANCELLED = "cancelled"


class TurnOutcome(str, Enum):
    COMPLETED = "completed"
    CLARIFY = "clarify"
    ABORTED = "aborted"
    FAILED = "failed"


class AbortReason(str, Enum):
    REJECTED = "rejected"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"


class TurnEventType(str, Enum):
    STATE_CHANGED = "state_changed"
    PLAN_READY = "plan_ready"
    CONFIRMATION_REQUIRED = "confirmation_required"
    RESPONSE_READY = "response_ready"


__all__ = [
    "AgentState",
    "RiskLevel",
    "IntentType",
    "ConfirmationDecision",
    "CallStatus",
    "ErrorKind",
    "TurnOutcome",
    "AbortReason",
    "TurnEventType",
]
