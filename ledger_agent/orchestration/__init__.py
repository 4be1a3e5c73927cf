"""
Orchestration Package

Per-turn control core of the ledger assistant:
- Intent rewriting with confidence gating
- Deterministic planning over the tool registry
- Risk classification and batched human confirmation
- Dependency-aware tool execution
- Outcome reflection and follow-up suggestions
"""

from .cancellation import CancellationToken, TurnCancelledError
from .context import AgentContext
from .controller import TurnController, TurnListener
from .enums import (
    AbortReason,
    AgentState,
    CallStatus,
    ConfirmationDecision,
    ErrorKind,
    IntentType,
    RiskLevel,
    TurnEventType,
    TurnOutcome,
)
from .executor import ExecutionOutcome, ExecutionRun, ToolExecutor
from .gate import ConfirmationError, ConfirmationGate, GateDecision, Resolution
from .planner import Planner
from .preferences import (
    CONFIDENCE_PRESETS,
    InMemoryPreferencesStore,
    PreferencesStore,
    Thresholds,
    UserPreferences,
)
from .reflector import Reflector
from .rewriter import IntentRewriter, RewriteBranch, RewriteDecision
from .risk import RiskClassifier
from .state import (
    ConfirmationRequest,
    Finished,
    Intent,
    Plan,
    ReflectionResult,
    RuntimeContext,
    SuggestedAction,
    ToolCall,
    Turn,
    TurnEvent,
    TurnResponse,
    TurnStep,
    Suspended,
)
from .state_machine import InvalidTransitionError, TurnStateMachine

__all__ = [
    "AbortReason",
    "AgentContext",
    "AgentState",
    "CONFIDENCE_PRESETS",
    "CallStatus",
    "CancellationToken",
    "ConfirmationDecision",
    "ConfirmationError",
    "ConfirmationGate",
    "ConfirmationRequest",
    "ErrorKind",
    "ExecutionOutcome",
    "ExecutionRun",
    "Finished",
    "GateDecision",
    "InMemoryPreferencesStore",
    "Intent",
    "IntentRewriter",
    "IntentType",
    "InvalidTransitionError",
    "Plan",
    "Planner",
    "PreferencesStore",
    "ReflectionResult",
    "Reflector",
    "Resolution",
    "RewriteBranch",
    "RewriteDecision",
    "RiskClassifier",
    "RiskLevel",
    "RuntimeContext",
    "SuggestedAction",
    "Suspended",
    "Thresholds",
    "ToolCall",
    "ToolExecutor",
    "Turn",
    "TurnCancelledError",
    "TurnController",
    "TurnEvent",
    "TurnEventType",
    "TurnListener",
    "TurnOutcome",
    "TurnResponse",
    "TurnStateMachine",
    "TurnStep",
    "UserPreferences",
]
