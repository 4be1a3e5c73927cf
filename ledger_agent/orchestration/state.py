from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .enums import (
    AbortReason,
    AgentState,
    CallStatus,
    ErrorKind,
    IntentType,
    RiskLevel,
    TurnEventType,
    TurnOutcome,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class DateRange(_CamelModel):
    start: str | None = None
    end: str | None = None


class TransactionDraft(_CamelModel):
    amount: float | None = None
    type: Literal["EXPENSE", "INCOME"] | None = None
    category: str | None = None
    description: str | None = None
    date: str | None = None
    time: str | None = None
    payment_method: str | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            normalized = value.strip().upper()
            return _TRANSACTION_TYPE_ALIASES.get(normalized, normalized) or None
        return value


_TRANSACTION_TYPE_ALIASES = {"支出": "EXPENSE", "收入": "INCOME", "OUT": "EXPENSE", "IN": "INCOME"}


class ExtractedInfo(TransactionDraft):
    date_range: DateRange | None = None
    limit: int | None = Field(default=None, ge=1)
    keyword: str | None = None
    transaction_id: int | None = None
    transaction_ids: tuple[int, ...] = ()
    items: tuple[TransactionDraft, ...] = ()


class CategoryRef(BaseModel):
    id: int
    name: str
    type: Literal["EXPENSE", "INCOME"] | None = None


class PaymentMethodRef(BaseModel):
    id: int
    name: str
    is_default: bool = False


class RuntimeContext(BaseModel):
    """Snapshot of the user's ledger context taken when a turn starts."""

    model_config = ConfigDict(extra="allow")

    user: dict[str, Any] | None = None
    ledger_id: int | None = None
    ledger_name: str | None = None
    categories: list[CategoryRef] = Field(default_factory=list)
    payment_methods: list[PaymentMethodRef] = Field(default_factory=list)
    current_datetime: str | None = None

    def find_category(self, name: str, kind: str | None = None) -> CategoryRef | None:
        needle = name.strip().lower()
        if not needle:
            return None
        candidates = [c for c in self.categories if kind is None or c.type in {None, kind}]
        for category in candidates:
            if category.name.lower() == needle:
                return category
        return None

    def find_payment_method(self, name: str) -> PaymentMethodRef | None:
        needle = name.strip().lower()
        for method in self.payment_methods:
            if method.name.lower() == needle:
                return method
        return None


class Intent(BaseModel):
    """Confidence-scored interpretation of one user message. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    action: IntentType
    parameters: ExtractedInfo = Field(default_factory=ExtractedInfo)
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    ambiguous: tuple[str, ...] = ()
    rewritten_prompt: str = ""
    clarify_question: str | None = None
    caveat: bool = False
    model_available: bool = True

    @classmethod
    def unknown(cls, raw_text: str) -> "Intent":
        return cls(action=IntentType.UNKNOWN, confidence=0.0, rewritten_prompt=raw_text, model_available=False)


@dataclass(slots=True)
class Turn:
    raw_input: str
    runtime_context: RuntimeContext = field(default_factory=RuntimeContext)
    attachments: tuple[Any, ...] = ()
    turn_id: str = field(default_factory=_new_id)
    started_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True, slots=True)
class ArgBinding:
    """Argument filled from another call's payload at execution time."""

    source: int
    path: str


@dataclass(slots=True)
class CallError:
    kind: ErrorKind
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "message": self.message}


@dataclass(slots=True)
class ToolCall:
    index: int
    tool_name: str
    arguments: dict[str, Any]
    depends_on: tuple[int, ...] = ()
    bindings: dict[str, ArgBinding] = field(default_factory=dict)
    purpose: str = ""
    position: int | None = None
    status: CallStatus = CallStatus.PENDING
    result: Any = None
    error: CallError | None = None

    @property
    def order(self) -> int:
        """Place of the call in the plan as drafted, shared by executed and rejected calls."""
        return self.index if self.position is None else self.position

    @property
    def settled(self) -> bool:
        return self.status is not CallStatus.PENDING

    def succeed(self, payload: Any) -> None:
        self.status = CallStatus.SUCCESS
        self.result = payload
        self.error = None

    def fail(self, kind: ErrorKind, message: str, *, skipped: bool = False) -> None:
        self.status = CallStatus.SKIPPED if skipped else CallStatus.FAILURE
        self.error = CallError(kind=kind, message=message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "position": self.order,
            "tool": self.tool_name,
            "arguments": dict(self.arguments),
            "depends_on": list(self.depends_on),
            "status": self.status.value,
            "result": self.result,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass(slots=True)
class Plan:
    calls: tuple[ToolCall, ...] = ()
    rejected: tuple[ToolCall, ...] = ()
    note: str | None = None

    @property
    def empty(self) -> bool:
        return not self.calls

    def dependents_of(self, index: int) -> list[ToolCall]:
        return [call for call in self.calls if index in call.depends_on]

    def to_dict(self) -> dict[str, Any]:
        return {
            "calls": [call.to_dict() for call in self.calls],
            "rejected": [call.to_dict() for call in self.rejected],
            "note": self.note,
        }


@dataclass(slots=True)
class ConfirmationItem:
    index: int
    tool_name: str
    title: str
    risk: RiskLevel
    details: dict[str, str] = field(default_factory=dict)
    impact: str = ""


@dataclass(slots=True)
class ConfirmationRequest:
    turn_id: str
    title: str
    message: str
    items: tuple[ConfirmationItem, ...]
    risk: RiskLevel
    tool_name: str
    request_id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utcnow)
    expires_at: datetime | None = None

    @property
    def indices(self) -> tuple[int, ...]:
        return tuple(item.index for item in self.items)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or _utcnow()) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "turn_id": self.turn_id,
            "title": self.title,
            "message": self.message,
            "risk": self.risk.value,
            "tool_name": self.tool_name,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "items": [
                {
                    "index": item.index,
                    "tool": item.tool_name,
                    "title": item.title,
                    "risk": item.risk.value,
                    "details": dict(item.details),
                    "impact": item.impact,
                }
                for item in self.items
            ],
        }


@dataclass(frozen=True, slots=True)
class SuggestedAction:
    label: str
    message: str


@dataclass(slots=True)
class ReflectionResult:
    confidence: float
    needs_clarification: bool = False
    clarifying_message: str | None = None
    warning: str | None = None
    suggested_actions: tuple[SuggestedAction, ...] = ()
    thought: str = ""


@dataclass(slots=True)
class TurnResponse:
    turn_id: str
    outcome: TurnOutcome
    message: str
    results: tuple[ToolCall, ...] = ()
    clarifying_question: str | None = None
    suggested_actions: tuple[SuggestedAction, ...] = ()
    abort_reason: AbortReason | None = None
    caveat: bool = False
    reflection: ReflectionResult | None = None

    @property
    def failures(self) -> tuple[ToolCall, ...]:
        return tuple(call for call in self.results if call.status in {CallStatus.FAILURE, CallStatus.SKIPPED})

    def to_dict(self) -> dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "outcome": self.outcome.value,
            "message": self.message,
            "results": [call.to_dict() for call in self.results],
            "clarifying_question": self.clarifying_question,
            "suggested_actions": [
                {"label": action.label, "message": action.message} for action in self.suggested_actions
            ],
            "abort_reason": self.abort_reason.value if self.abort_reason else None,
            "caveat": self.caveat,
        }


@dataclass(slots=True)
class TurnEvent:
    turn_id: str
    type: TurnEventType
    state: AgentState
    previous_state: AgentState | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True, slots=True)
class Suspended:
    """The turn is parked on a confirmation; resume the controller with a decision."""

    request: ConfirmationRequest


@dataclass(frozen=True, slots=True)
class Finished:
    response: TurnResponse


TurnStep = Union[Suspended, Finished]
