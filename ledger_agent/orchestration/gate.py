from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from ..core.logging import get_logger
from ..core.metrics import increment_confirmation
from ..tools.registry import RiskTag, ToolOperation, ToolRegistry
from .enums import AbortReason, ConfirmationDecision, RiskLevel
from .preferences import PreferencesStore, UserPreferences, grant_always_allow
from .risk import RiskClassifier
from .state import ConfirmationItem, ConfirmationRequest, Plan, ToolCall

logger = get_logger(name=__name__)

_IMPACT = {
    ToolOperation.READ: "Only reads your data.",
    ToolOperation.CREATE: "Adds new records to your ledger.",
    ToolOperation.UPDATE: "Changes an existing record.",
    ToolOperation.DELETE: "Permanently removes data. This cannot be undone.",
}

_DETAIL_LABELS = (
    ("amount", "Amount"),
    ("type", "Type"),
    ("description", "Description"),
    ("category_id", "Category"),
    ("transaction_date_time", "Date"),
    ("id", "Transaction"),
    ("ids", "Transactions"),
    ("name", "Name"),
    ("ledger_id", "Ledger"),
)


class ConfirmationError(RuntimeError):
    """Raised when a decision does not match the pending confirmation request."""


@dataclass(slots=True)
class GateDecision:
    risks: dict[int, RiskLevel]
    gated: tuple[int, ...]
    request: ConfirmationRequest | None = None

    @property
    def requires_confirmation(self) -> bool:
        return self.request is not None


@dataclass(slots=True)
class Resolution:
    decision: ConfirmationDecision
    approved: bool
    abort_reason: AbortReason | None = None
    granted_tool: str | None = None
    reason: str | None = None


class ConfirmationGate:
    """Batches every call at or above the confirmation threshold into one request per plan."""

    def __init__(
        self,
        registry: ToolRegistry,
        classifier: RiskClassifier | None = None,
        *,
        timeout_seconds: float | None = 300.0,
    ) -> None:
        self._registry = registry
        self._classifier = classifier or RiskClassifier(registry)
        self._timeout = timedelta(seconds=timeout_seconds) if timeout_seconds else None

    def requires_confirmation(self, tool_name: str, risk: RiskLevel, preferences: UserPreferences) -> bool:
        if risk is RiskLevel.CRITICAL:
            return True
        if preferences.is_always_allowed(tool_name):
            return False
        return risk.at_least(preferences.confirmation_threshold)

    def evaluate(self, plan: Plan, preferences: UserPreferences, *, turn_id: str) -> GateDecision:
        risks = self._classifier.assess(plan.calls, preferences)
        gated = tuple(
            call.index
            for call in plan.calls
            if self.requires_confirmation(call.tool_name, risks[call.index], preferences)
        )
        if not gated:
            return GateDecision(risks=risks, gated=())
        request = self._build_request(plan, risks, gated, turn_id=turn_id)
        logger.info(
            "confirmation_required",
            turn_id=turn_id,
            request_id=request.request_id,
            gated=list(gated),
            risk=request.risk.value,
            tool=request.tool_name,
        )
        return GateDecision(risks=risks, gated=gated, request=request)

    def read_ahead(self, plan: Plan, decision: GateDecision) -> tuple[int, ...]:
        """Ungated read-only calls whose whole dependency chain is also safe to run early."""
        gated = set(decision.gated)
        safe: set[int] = set()
        for call in plan.calls:
            if call.index in gated or not self._registry.spec(call.tool_name).read_only:
                continue
            if all(dep in safe for dep in call.depends_on):
                safe.add(call.index)
        return tuple(sorted(safe))

    def resolve(
        self,
        request: ConfirmationRequest,
        decision: ConfirmationDecision,
        *,
        tool_name: str | None = None,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Resolution:
        """Map a host decision onto the request without touching stored preferences."""
        if request.is_expired(now):
            increment_confirmation(decision="timeout")
            logger.info("confirmation_expired", request_id=request.request_id, decision=decision.value)
            return Resolution(
                decision=decision,
                approved=False,
                abort_reason=AbortReason.TIMEOUT,
                reason="The confirmation request expired.",
            )
        increment_confirmation(decision=decision.value)
        if decision is ConfirmationDecision.REJECT:
            logger.info("confirmation_rejected", request_id=request.request_id, reason=reason)
            return Resolution(decision=decision, approved=False, abort_reason=AbortReason.REJECTED, reason=reason)
        if decision is ConfirmationDecision.APPROVE:
            logger.info("confirmation_approved", request_id=request.request_id)
            return Resolution(decision=decision, approved=True, reason=reason)

        target = tool_name or request.tool_name
        if target not in {item.tool_name for item in request.items}:
            raise ConfirmationError(f"Tool '{target}' is not part of confirmation {request.request_id}")
        spec = self._registry.spec(target)
        if spec.risk_tag is RiskTag.CRITICAL:
            logger.warning("always_allow_refused", request_id=request.request_id, tool=target)
            return Resolution(decision=decision, approved=True, reason=reason)
        return Resolution(decision=decision, approved=True, granted_tool=spec.name, reason=reason)

    async def commit(self, resolution: Resolution, store: PreferencesStore) -> None:
        """Persist the always-allow grant a resolution carries, if any."""
        if resolution.granted_tool is None:
            return
        await grant_always_allow(store, resolution.granted_tool)
        logger.info("always_allow_granted", tool=resolution.granted_tool)

    def expire(self, request: ConfirmationRequest) -> Resolution:
        increment_confirmation(decision="timeout")
        logger.info("confirmation_timed_out", request_id=request.request_id)
        return Resolution(
            decision=ConfirmationDecision.REJECT,
            approved=False,
            abort_reason=AbortReason.TIMEOUT,
            reason="No decision was made in time.",
        )

    def _build_request(
        self,
        plan: Plan,
        risks: Mapping[int, RiskLevel],
        gated: tuple[int, ...],
        *,
        turn_id: str,
    ) -> ConfirmationRequest:
        items = tuple(self._build_item(plan, plan.calls[index], risks[index]) for index in gated)
        top = items[0]
        for item in items[1:]:
            if item.risk.rank > top.risk.rank:
                top = item
        if len(items) == 1:
            title = f"Confirm: {top.title}"
            message = f"{top.title}. {top.impact}"
        else:
            title = f"Confirm {len(items)} actions"
            listed = "; ".join(item.title for item in items)
            message = f"The following actions need your approval: {listed}."
        created_at = datetime.now(timezone.utc)
        return ConfirmationRequest(
            turn_id=turn_id,
            title=title,
            message=message,
            items=items,
            risk=RiskLevel.highest(item.risk for item in items),
            tool_name=top.tool_name,
            created_at=created_at,
            expires_at=created_at + self._timeout if self._timeout else None,
        )

    def _build_item(self, plan: Plan, call: ToolCall, risk: RiskLevel) -> ConfirmationItem:
        spec = self._registry.spec(call.tool_name)
        return ConfirmationItem(
            index=call.index,
            tool_name=spec.name,
            title=spec.title,
            risk=risk,
            details=_format_details(plan, call),
            impact=_IMPACT[spec.operation],
        )


def _format_details(plan: Plan, call: ToolCall) -> dict[str, str]:
    details: dict[str, str] = {}
    for key, label in _DETAIL_LABELS:
        if key in call.bindings:
            source = plan.calls[call.bindings[key].source]
            details[label] = f"(from {source.purpose or source.tool_name})"
            continue
        if key not in call.arguments:
            continue
        details[label] = _format_value(key, call.arguments[key])
    return details


def _format_value(key: str, value: Any) -> str:
    if key == "amount" and isinstance(value, (int, float)):
        return f"{value:.2f}"
    if key == "type" and isinstance(value, str):
        return "Expense" if value == "EXPENSE" else "Income"
    if isinstance(value, (list, tuple)):
        preview = ", ".join(str(item) for item in value[:5])
        return f"{len(value)} items ({preview}{', ...' if len(value) > 5 else ''})"
    return str(value)


__all__ = ["ConfirmationError", "ConfirmationGate", "GateDecision", "Resolution"]
