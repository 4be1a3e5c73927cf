from __future__ import annotations

import json
from typing import Any, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..core.logging import get_logger
from ..core.metrics import observe_reflection_confidence
from ..services.llm import LanguageModel, LLMUnavailableError, parse_json_object
from .enums import ErrorKind, IntentType
from .executor import ExecutionOutcome
from .preferences import Thresholds
from .state import Intent, Plan, ReflectionResult, SuggestedAction, ToolCall

logger = get_logger(name=__name__)

REFLECTOR_SYSTEM_PROMPT = """You review what a bookkeeping assistant just did for the user.
Reply with a single JSON object and nothing else:
{
  "thought": "one sentence on whether the outcome matches the request",
  "confidence": 0.0,
  "clarifyQuestion": "question for the user when the outcome may not be what they wanted, else null",
  "suggestedActions": [{"label": "short button text", "message": "follow-up message the user would send"}]
}
confidence is how likely the user is satisfied with the outcome (0 to 1)."""

CANNED_SUGGESTIONS: dict[IntentType, tuple[SuggestedAction, ...]] = {
    IntentType.CREATE: (
        SuggestedAction("Today's spending", "Show what I spent today"),
        SuggestedAction("Add another", "I want to record another transaction"),
        SuggestedAction("This month", "How much have I spent this month?"),
    ),
    IntentType.BATCH: (
        SuggestedAction("Review entries", "Show the transactions I just added"),
        SuggestedAction("This month", "How much have I spent this month?"),
    ),
    IntentType.QUERY: (
        SuggestedAction("Monthly summary", "Give me this month's income and expense summary"),
        SuggestedAction("By category", "Break my spending down by category"),
    ),
    IntentType.STATISTICS: (
        SuggestedAction("Compare months", "Compare this month with last month"),
        SuggestedAction("Largest expenses", "What were my largest expenses this month?"),
    ),
    IntentType.UPDATE: (
        SuggestedAction("Recent entries", "Show my recent transactions"),
    ),
    IntentType.DELETE: (
        SuggestedAction("Recent entries", "Show my recent transactions"),
    ),
    IntentType.CHAT: (
        SuggestedAction("Record expense", "Help me record an expense"),
        SuggestedAction("Monthly summary", "Give me this month's income and expense summary"),
    ),
}

_NON_ACTIONABLE = {IntentType.CHAT, IntentType.CLARIFY}


class _LLMReflection(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    thought: str = ""
    confidence: float = Field(0.0)
    clarify_question: str | None = Field(default=None, alias="clarifyQuestion")
    suggested_actions: list[dict[str, Any]] = Field(default_factory=list, alias="suggestedActions")

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.0
        if number != number:
            return 0.0
        return max(0.0, min(1.0, number))


class Reflector:
    """Scores a finished turn and decides between a clarifying question and suggestions.

    The structural assessment always runs. The model, when enabled, can only
    lower confidence; it never rescues an outcome the structure flags.
    """

    def __init__(
        self,
        llm: LanguageModel | None = None,
        *,
        use_llm: bool = False,
        max_suggestions: int = 3,
    ) -> None:
        self._llm = llm
        self._use_llm = use_llm and llm is not None
        self._max_suggestions = max_suggestions

    async def reflect(
        self,
        intent: Intent,
        plan: Plan,
        outcome: ExecutionOutcome | None,
        *,
        thresholds: Thresholds,
    ) -> ReflectionResult:
        result = self.assess(intent, plan, outcome, thresholds=thresholds)
        if self._use_llm and not result.needs_clarification:
            result = await self._refine_with_llm(intent, plan, outcome, result, thresholds=thresholds)
        observe_reflection_confidence(result.confidence)
        logger.info(
            "reflection_complete",
            intent=intent.action.value,
            confidence=result.confidence,
            needs_clarification=result.needs_clarification,
            suggestions=len(result.suggested_actions),
        )
        return result

    def assess(
        self,
        intent: Intent,
        plan: Plan,
        outcome: ExecutionOutcome | None,
        *,
        thresholds: Thresholds,
    ) -> ReflectionResult:
        executed = outcome.calls if outcome is not None else ()
        failures = [call for call in executed if call.error is not None] + list(plan.rejected)
        successes = [call for call in executed if call.error is None and call.settled]
        chain_failure = _first_chain_failure(plan, executed)
        total = len(plan.calls) + len(plan.rejected)
        ambiguous = (
            bool(failures)
            or (total > 0 and not successes)
            or (total == 0 and intent.action not in _NON_ACTIONABLE)
        )
        low = thresholds.reflector_low

        if chain_failure is not None:
            return ReflectionResult(
                confidence=_below(low),
                needs_clarification=True,
                clarifying_message=_chain_failure_message(chain_failure),
                thought="a call that later steps depended on did not succeed",
            )
        if intent.caveat and ambiguous:
            return ReflectionResult(
                confidence=_below(low),
                needs_clarification=True,
                clarifying_message=(
                    f"I wasn't completely sure I understood you as \"{intent.rewritten_prompt}\". "
                    "Is that what you meant?"
                ),
                thought="interpretation was uncertain and the outcome is ambiguous",
            )

        ratio = len(successes) / total if total else 1.0
        confidence = round(low + (1.0 - low) * (0.5 + 0.5 * ratio), 3)
        warning = None
        if failures:
            warning = "Some steps did not complete: " + "; ".join(_describe_failure(call) for call in failures)
        return ReflectionResult(
            confidence=confidence,
            warning=warning,
            suggested_actions=self._suggestions(intent.action),
            thought="outcome matches the request" if not failures else "partial success",
        )

    def _suggestions(self, action: IntentType, proposed: Sequence[SuggestedAction] = ()) -> tuple[SuggestedAction, ...]:
        pool = tuple(proposed) or CANNED_SUGGESTIONS.get(action, ())
        return pool[: self._max_suggestions]

    async def _refine_with_llm(
        self,
        intent: Intent,
        plan: Plan,
        outcome: ExecutionOutcome | None,
        structural: ReflectionResult,
        *,
        thresholds: Thresholds,
    ) -> ReflectionResult:
        assert self._llm is not None
        prompt = _build_prompt(intent, plan, outcome)
        try:
            raw = await self._llm.generate(prompt, system_prompt=REFLECTOR_SYSTEM_PROMPT, temperature=0.0)
            reviewed = _LLMReflection.model_validate(parse_json_object(raw))
        except LLMUnavailableError as exc:
            logger.warning("reflection_llm_unavailable", error=str(exc))
            return structural
        except (ValueError, ValidationError) as exc:
            logger.warning("reflection_llm_unparseable", error=str(exc))
            return structural

        proposed = tuple(
            SuggestedAction(label=str(item["label"]), message=str(item.get("message") or item["label"]))
            for item in reviewed.suggested_actions
            if isinstance(item, dict) and item.get("label")
        )
        confidence = min(structural.confidence, reviewed.confidence)
        if reviewed.confidence < thresholds.reflector_low:
            return ReflectionResult(
                confidence=confidence,
                needs_clarification=True,
                clarifying_message=reviewed.clarify_question or "Did that do what you wanted?",
                warning=structural.warning,
                thought=reviewed.thought or structural.thought,
            )
        return ReflectionResult(
            confidence=confidence,
            warning=structural.warning,
            suggested_actions=self._suggestions(intent.action, proposed),
            thought=reviewed.thought or structural.thought,
        )


def _below(threshold: float) -> float:
    return round(max(0.0, threshold * 0.5), 3)


def _first_chain_failure(plan: Plan, executed: Sequence[ToolCall]) -> ToolCall | None:
    for call in executed:
        if call.error is None:
            continue
        if call.error.kind in {ErrorKind.DEPENDENCY_FAILED, ErrorKind.BINDING_UNRESOLVED}:
            return call
        if plan.dependents_of(call.index):
            return call
    for call in plan.rejected:
        if call.error is not None and call.error.kind is ErrorKind.DEPENDENCY_FAILED:
            return call
    return None


def _chain_failure_message(call: ToolCall) -> str:
    target = call.purpose or call.tool_name
    reason = call.error.message if call.error else "it did not complete"
    return f"I couldn't {target}: {reason}. Could you check the details and tell me how to proceed?"


def _describe_failure(call: ToolCall) -> str:
    reason = call.error.message if call.error else call.status.value
    return f"{call.purpose or call.tool_name} ({reason})"


def _build_prompt(intent: Intent, plan: Plan, outcome: ExecutionOutcome | None) -> str:
    executed = outcome.calls if outcome is not None else ()
    summary = {
        "request": intent.rewritten_prompt,
        "intent": intent.action.value,
        "intentConfidence": intent.confidence,
        "plannedCalls": [call.tool_name for call in plan.calls],
        "results": [
            {
                "tool": call.tool_name,
                "status": call.status.value,
                "error": call.error.message if call.error else None,
            }
            for call in executed
        ],
        "note": plan.note,
    }
    return json.dumps(summary, ensure_ascii=False, default=str)


__all__ = ["CANNED_SUGGESTIONS", "REFLECTOR_SYSTEM_PROMPT", "Reflector"]
