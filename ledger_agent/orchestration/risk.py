from __future__ import annotations

from typing import Any, Iterable, Mapping

from ..tools.registry import RiskTag, ToolRegistry, ToolSpec
from .enums import RiskLevel
from .preferences import UserPreferences
from .state import ToolCall

_BULK_ARGUMENT_KEYS = ("items", "ids")


class RiskClassifier:
    """Maps a prospective tool call to a risk level.

    Rules are evaluated in order and the first match wins:

    1. tools tagged ``critical`` are always ``critical``;
    2. ``destructive`` tools are ``high`` unless always-allowed, then ``low``;
    3. a plan whose create/update count exceeds the batch threshold escalates
       the call one level, and never below ``high``;
    4. everything else (reads and additive writes) is ``low``.

    The classifier holds no state of its own and never mutates its inputs.
    """

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry

    def classify(
        self,
        tool_name: str,
        arguments: Mapping[str, Any],
        pending_batch_size: int,
        preferences: UserPreferences,
    ) -> RiskLevel:
        spec = self._registry.spec(tool_name)
        return classify_spec(spec, arguments, pending_batch_size, preferences)

    def pending_batch_size(self, calls: Iterable[ToolCall]) -> int:
        return sum(
            _call_weight(self._registry.spec(call.tool_name), call.arguments)
            for call in calls
            if self._registry.spec(call.tool_name).counts_toward_batch
        )

    def assess(self, calls: Iterable[ToolCall], preferences: UserPreferences) -> dict[int, RiskLevel]:
        """Classify every call of a plan, keyed by plan index."""
        materialized = list(calls)
        batch_size = self.pending_batch_size(materialized)
        return {
            call.index: self.classify(call.tool_name, call.arguments, batch_size, preferences)
            for call in materialized
        }


def classify_spec(
    spec: ToolSpec,
    arguments: Mapping[str, Any],
    pending_batch_size: int,
    preferences: UserPreferences,
) -> RiskLevel:
    if spec.risk_tag is RiskTag.CRITICAL:
        return RiskLevel.CRITICAL
    if spec.risk_tag is RiskTag.DESTRUCTIVE:
        if preferences.is_always_allowed(spec.name):
            return RiskLevel.LOW
        return RiskLevel.HIGH
    effective_batch = max(pending_batch_size, _call_weight(spec, arguments) if spec.counts_toward_batch else 0)
    if spec.counts_toward_batch and effective_batch > preferences.batch_threshold:
        return RiskLevel.highest((RiskLevel.LOW.escalate(), RiskLevel.HIGH))
    return RiskLevel.LOW


def _call_weight(spec: ToolSpec, arguments: Mapping[str, Any]) -> int:
    for key in _BULK_ARGUMENT_KEYS:
        value = arguments.get(key)
        if isinstance(value, (list, tuple)) and value:
            return len(value)
    return 1


__all__ = ["RiskClassifier", "classify_spec"]
