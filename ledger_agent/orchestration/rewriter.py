from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Sequence

from pydantic import ValidationError

from ..core.logging import get_logger
from ..core.metrics import observe_intent_confidence
from ..services.llm import LanguageModel, LLMUnavailableError, parse_json_object
from .enums import IntentType
from .preferences import Thresholds
from .state import ExtractedInfo, Intent, RuntimeContext

logger = get_logger(name=__name__)

REWRITER_SYSTEM_PROMPT = """You normalize requests sent to a personal bookkeeping assistant.
Reply with a single JSON object and nothing else:
{
  "rewrittenPrompt": "the request restated clearly, with relative dates resolved",
  "intentType": "create|query|update|delete|statistics|batch|chat|clarify|unknown",
  "extractedInfo": {
    "amount": 35.0, "type": "EXPENSE|INCOME", "category": "...", "description": "...",
    "date": "YYYY-MM-DD", "time": "HH:mm", "paymentMethod": "...",
    "dateRange": {"start": "YYYY-MM-DD", "end": "YYYY-MM-DD"}, "limit": 10, "keyword": "...",
    "transactionId": 7, "transactionIds": [7, 8], "items": [{"amount": 12, "category": "..."}]
  },
  "confidence": 0.0,
  "clarifyQuestion": "question to ask when information is missing",
  "missingInfo": ["amount"]
}
confidence is how sure you are that the interpretation is what the user meant (0 to 1).
Omit fields you cannot extract; never guess amounts."""

_PARAMETER_LABELS = {
    "amount": "the amount",
    "type": "whether it is income or an expense",
    "category": "the category",
    "description": "what it was for",
    "date": "the date",
    "time": "the time",
    "paymentMethod": "the payment method",
    "payment_method": "the payment method",
    "dateRange": "the time period",
    "date_range": "the time period",
    "transactionId": "which transaction you mean",
    "transaction_id": "which transaction you mean",
    "items": "the individual entries",
}

_UNAVAILABLE_QUESTION = (
    "Sorry, I couldn't work out what you meant just now. Could you say it again in a bit more detail?"
)
_GENERIC_QUESTION = "Could you tell me a bit more about what you would like to do?"


class RewriteBranch(str, Enum):
    EXECUTE = "execute"
    CAVEAT = "caveat"
    CLARIFY = "clarify"


@dataclass(slots=True)
class RewriteDecision:
    intent: Intent
    branch: RewriteBranch
    clarifying_question: str | None = None

    @property
    def should_plan(self) -> bool:
        return self.branch is not RewriteBranch.CLARIFY


class IntentRewriter:
    """Turns raw user text into a confidence-scored ``Intent`` with one model call."""

    def __init__(self, llm: LanguageModel, *, temperature: float = 0.0) -> None:
        self._llm = llm
        self._temperature = temperature

    async def rewrite(
        self,
        text: str,
        *,
        thresholds: Thresholds,
        runtime_context: RuntimeContext | None = None,
        history: Sequence[Mapping[str, str]] = (),
    ) -> RewriteDecision:
        intent = await self.interpret(text, runtime_context=runtime_context, history=history)
        decision = self.decide(intent, thresholds)
        observe_intent_confidence(intent=decision.intent.action.value, confidence=decision.intent.confidence)
        logger.info(
            "intent_rewritten",
            intent=decision.intent.action.value,
            confidence=decision.intent.confidence,
            branch=decision.branch.value,
            model_available=decision.intent.model_available,
        )
        return decision

    async def interpret(
        self,
        text: str,
        *,
        runtime_context: RuntimeContext | None = None,
        history: Sequence[Mapping[str, str]] = (),
    ) -> Intent:
        prompt = self._build_prompt(text, runtime_context or RuntimeContext(), history)
        try:
            raw = await self._llm.generate(
                prompt,
                system_prompt=REWRITER_SYSTEM_PROMPT,
                temperature=self._temperature,
            )
        except LLMUnavailableError as exc:
            logger.warning("intent_rewrite_unavailable", error=str(exc))
            return Intent.unknown(text)
        except Exception as exc:
            logger.warning("intent_rewrite_failed", error=str(exc))
            return Intent.unknown(text)
        try:
            return self._parse_intent(raw, text)
        except (ValueError, ValidationError) as exc:
            logger.warning("intent_rewrite_unparseable", error=str(exc), response=raw[:500])
            return Intent.unknown(text)

    @staticmethod
    def decide(intent: Intent, thresholds: Thresholds) -> RewriteDecision:
        if not intent.model_available:
            return RewriteDecision(
                intent=intent, branch=RewriteBranch.CLARIFY, clarifying_question=_UNAVAILABLE_QUESTION
            )
        if intent.confidence < thresholds.rewriter_low or intent.action is IntentType.CLARIFY:
            return RewriteDecision(
                intent=intent,
                branch=RewriteBranch.CLARIFY,
                clarifying_question=build_clarifying_question(intent),
            )
        if intent.confidence < thresholds.rewriter_high:
            return RewriteDecision(intent=intent.model_copy(update={"caveat": True}), branch=RewriteBranch.CAVEAT)
        return RewriteDecision(intent=intent, branch=RewriteBranch.EXECUTE)

    def _parse_intent(self, raw: str, original_text: str) -> Intent:
        payload = parse_json_object(raw)
        action = _coerce_intent_type(payload.get("intentType"))
        info_payload = payload.get("extractedInfo") or {}
        if not isinstance(info_payload, Mapping):
            raise ValueError("extractedInfo must be an object")
        parameters = ExtractedInfo.model_validate(dict(info_payload))
        missing = payload.get("missingInfo") or []
        if isinstance(missing, str):
            missing = [missing]
        question = payload.get("clarifyQuestion")
        return Intent(
            action=action,
            parameters=parameters,
            confidence=_coerce_confidence(payload.get("confidence")),
            ambiguous=tuple(str(item) for item in missing if item),
            rewritten_prompt=str(payload.get("rewrittenPrompt") or original_text),
            clarify_question=str(question).strip() if question else None,
        )

    def _build_prompt(
        self,
        text: str,
        context: RuntimeContext,
        history: Sequence[Mapping[str, str]],
    ) -> str:
        now = context.current_datetime or datetime.now(timezone.utc).isoformat(timespec="minutes")
        sections = [f"Current time: {now}"]
        if context.ledger_name or context.ledger_id is not None:
            sections.append(f"Ledger: {context.ledger_name or ''} (id {context.ledger_id})")
        if context.categories:
            names = ", ".join(f"{c.name}[{c.type or 'ANY'}]" for c in context.categories)
            sections.append(f"Known categories: {names}")
        if context.payment_methods:
            sections.append("Payment methods: " + ", ".join(m.name for m in context.payment_methods))
        if history:
            lines = [f"{item.get('role', 'user')}: {item.get('content', '')}" for item in history]
            sections.append("Recent conversation:\n" + "\n".join(lines))
        sections.append(f"User request: {text}")
        return "\n\n".join(sections)


def build_clarifying_question(intent: Intent) -> str:
    if intent.clarify_question:
        return intent.clarify_question
    labels: list[str] = []
    for name in intent.ambiguous:
        label = _PARAMETER_LABELS.get(name, name)
        if label not in labels:
            labels.append(label)
    if not labels:
        return _GENERIC_QUESTION
    if len(labels) == 1:
        joined = labels[0]
    else:
        joined = ", ".join(labels[:-1]) + f" and {labels[-1]}"
    return f"Could you tell me {joined}?"


def _coerce_intent_type(raw_value: Any) -> IntentType:
    if isinstance(raw_value, str):
        try:
            return IntentType(raw_value.strip().lower())
        except ValueError:
            return IntentType.UNKNOWN
    return IntentType.UNKNOWN


def _coerce_confidence(raw_value: Any) -> float:
    try:
        value = float(raw_value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


__all__ = [
    "REWRITER_SYSTEM_PROMPT",
    "RewriteBranch",
    "RewriteDecision",
    "IntentRewriter",
    "build_clarifying_question",
]
