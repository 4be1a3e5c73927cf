from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Mapping

from ..core.logging import get_logger
from ..tools.exceptions import ToolArgumentInvalidError
from ..tools.registry import ToolRegistry
from ..tools.validation import ToolArgumentValidator
from .enums import ErrorKind, IntentType
from .state import ArgBinding, ExtractedInfo, Intent, Plan, RuntimeContext, ToolCall, TransactionDraft

logger = get_logger(name=__name__)

FIRST_MATCH_ID = "0.id"

_UNKNOWN_ACTION_NOTE = (
    "I'm not sure which bookkeeping action you want. You can ask me to record, look up, change or delete transactions."
)


@dataclass(slots=True)
class _Draft:
    tool_name: str
    arguments: dict[str, Any]
    depends_on: tuple[int, ...] = ()
    bindings: dict[str, ArgBinding] = field(default_factory=dict)
    purpose: str = ""


class _PlanBuilder:
    def __init__(self, context: RuntimeContext) -> None:
        self.context = context
        self.drafts: list[_Draft] = []
        self._category_lookups: dict[tuple[str, str | None], int] = {}

    def add(self, tool_name: str, arguments: dict[str, Any], *, purpose: str = "", **extra: Any) -> int:
        self.drafts.append(_Draft(tool_name=tool_name, arguments=_compact(arguments), purpose=purpose, **extra))
        return len(self.drafts) - 1

    def category_argument(
        self, name: str | None, kind: str | None
    ) -> tuple[dict[str, Any], tuple[int, ...], dict[str, ArgBinding]]:
        """Resolve a category name to ``category_id``, adding a lookup call when the context lacks it."""
        if not name:
            return {}, (), {}
        match = self.context.find_category(name, kind)
        if match is not None:
            return {"category_id": match.id}, (), {}
        key = (name.strip().lower(), kind)
        lookup = self._category_lookups.get(key)
        if lookup is None:
            lookup = self.add(
                "search_categories",
                {"keyword": name.strip(), "type": kind, "ledger_id": self.context.ledger_id},
                purpose=f"find category '{name.strip()}'",
            )
            self._category_lookups[key] = lookup
        return {}, (lookup,), {"category_id": ArgBinding(source=lookup, path=FIRST_MATCH_ID)}

    def payment_method_id(self, name: str | None) -> int | None:
        if not name:
            return None
        match = self.context.find_payment_method(name)
        return match.id if match is not None else None


class Planner:
    """Deterministically expands an accepted ``Intent`` into an ordered ``Plan``.

    Lookups always precede the calls that consume their output, so plan order
    is also a valid execution order.
    """

    def __init__(self, registry: ToolRegistry, *, validator: ToolArgumentValidator | None = None) -> None:
        self._registry = registry
        self._validator = validator or ToolArgumentValidator()
        self._handlers: dict[IntentType, Callable[[_PlanBuilder, ExtractedInfo], None]] = {
            IntentType.CREATE: self._plan_create,
            IntentType.BATCH: self._plan_batch,
            IntentType.QUERY: self._plan_query,
            IntentType.STATISTICS: self._plan_statistics,
            IntentType.UPDATE: self._plan_update,
            IntentType.DELETE: self._plan_delete,
        }

    def plan(self, intent: Intent, *, runtime_context: RuntimeContext | None = None) -> Plan:
        context = runtime_context or RuntimeContext()
        handler = self._handlers.get(intent.action)
        if handler is None:
            note = _UNKNOWN_ACTION_NOTE if intent.action is IntentType.UNKNOWN else None
            logger.info("planner_plan_empty", intent=intent.action.value, reason="non_actionable")
            return Plan(note=note)

        builder = _PlanBuilder(context)
        handler(builder, intent.parameters)
        missing = sorted({draft.tool_name for draft in builder.drafts if draft.tool_name not in self._registry})
        if missing:
            logger.warning("planner_tools_unavailable", intent=intent.action.value, tools=missing)
            return Plan(note=f"That action isn't available right now ({', '.join(missing)} is not enabled).")
        plan = self._finalize(builder.drafts)
        logger.info(
            "planner_plan_ready",
            intent=intent.action.value,
            steps=len(plan.calls),
            rejected=len(plan.rejected),
            tools=[call.tool_name for call in plan.calls],
        )
        return plan

    def _finalize(self, drafts: list[_Draft]) -> Plan:
        failures: dict[int, tuple[ErrorKind, str, bool]] = {}
        for position, draft in enumerate(drafts):
            failed_dependency = next((dep for dep in draft.depends_on if dep in failures), None)
            if failed_dependency is not None:
                message = f"Skipped because {drafts[failed_dependency].tool_name} could not be planned"
                failures[position] = (ErrorKind.DEPENDENCY_FAILED, message, True)
                continue
            spec = self._registry.spec(draft.tool_name)
            try:
                self._validator.validate(spec, draft.arguments, deferred=draft.bindings.keys())
            except ToolArgumentInvalidError as exc:
                logger.warning("planner_call_dropped", tool=draft.tool_name, error=str(exc))
                failures[position] = (ErrorKind.TOOL_ARGUMENT_INVALID, str(exc), False)

        # executable calls take indices 0..n-1, dropped ones continue after them
        kept = [position for position in range(len(drafts)) if position not in failures]
        dropped = sorted(failures)
        numbering = {position: index for index, position in enumerate(kept + dropped)}
        calls = tuple(_to_call(numbering, position, drafts[position]) for position in kept)
        rejected: list[ToolCall] = []
        for position in dropped:
            call = _to_call(numbering, position, drafts[position])
            kind, message, skipped = failures[position]
            call.fail(kind, message, skipped=skipped)
            rejected.append(call)
        return Plan(calls=calls, rejected=tuple(rejected))

    def _plan_create(self, builder: _PlanBuilder, info: ExtractedInfo) -> None:
        self._add_transaction(builder, info)

    def _plan_batch(self, builder: _PlanBuilder, info: ExtractedInfo) -> None:
        if not info.items:
            self._add_transaction(builder, info)
            return
        for item in info.items:
            merged = item.model_copy(
                update={
                    "type": item.type or info.type,
                    "date": item.date or info.date,
                    "payment_method": item.payment_method or info.payment_method,
                }
            )
            self._add_transaction(builder, merged)

    def _add_transaction(self, builder: _PlanBuilder, draft: TransactionDraft) -> None:
        kind = draft.type or "EXPENSE"
        category_args, depends_on, bindings = builder.category_argument(draft.category, kind)
        arguments = {
            "amount": draft.amount,
            "type": kind,
            "description": draft.description or draft.category,
            "ledger_id": builder.context.ledger_id,
            "payment_method_id": builder.payment_method_id(draft.payment_method),
            "transaction_date_time": _combine_datetime(draft.date, draft.time),
            **category_args,
        }
        purpose = f"record {kind.lower()}" if draft.amount is None else f"record {kind.lower()} {draft.amount}"
        builder.add("create_transaction", arguments, depends_on=depends_on, bindings=bindings, purpose=purpose)

    def _plan_query(self, builder: _PlanBuilder, info: ExtractedInfo) -> None:
        start, end = _period(info)
        if info.keyword and not info.category:
            builder.add(
                "search_transactions",
                {
                    "keyword": info.keyword,
                    "ledger_id": builder.context.ledger_id,
                    "start_time": start,
                    "end_time": end,
                    "limit": info.limit,
                },
                purpose="search transactions",
            )
            return
        category_args, depends_on, bindings = builder.category_argument(info.category, info.type)
        builder.add(
            "query_transactions",
            {
                "ledger_id": builder.context.ledger_id,
                "type": info.type,
                "start_time": start,
                "end_time": end,
                "size": info.limit,
                **category_args,
            },
            depends_on=depends_on,
            bindings=bindings,
            purpose="list transactions",
        )

    def _plan_statistics(self, builder: _PlanBuilder, info: ExtractedInfo) -> None:
        start, end = _period(info)
        if start is None or end is None:
            start, end = _current_month(builder.context)
        builder.add(
            "get_transaction_statistics",
            {"ledger_id": builder.context.ledger_id, "start_time": start, "end_time": end},
            purpose="summarize period",
        )

    def _plan_update(self, builder: _PlanBuilder, info: ExtractedInfo) -> None:
        depends_on, bindings = self._locate_transaction(builder, info)
        category_args, category_deps, category_bindings = builder.category_argument(info.category, info.type)
        builder.add(
            "update_transaction",
            {
                "id": info.transaction_id,
                "amount": info.amount,
                "type": info.type,
                "description": info.description,
                "payment_method_id": builder.payment_method_id(info.payment_method),
                "transaction_date_time": _combine_datetime(info.date, info.time),
                **category_args,
            },
            depends_on=depends_on + category_deps,
            bindings={**bindings, **category_bindings},
            purpose="edit transaction",
        )

    def _plan_delete(self, builder: _PlanBuilder, info: ExtractedInfo) -> None:
        if len(info.transaction_ids) > 1:
            builder.add("batch_delete_transactions", {"ids": list(info.transaction_ids)}, purpose="bulk delete")
            return
        if info.transaction_ids and info.transaction_id is None:
            info = info.model_copy(update={"transaction_id": info.transaction_ids[0]})
        depends_on, bindings = self._locate_transaction(builder, info)
        builder.add(
            "delete_transaction",
            {"id": info.transaction_id},
            depends_on=depends_on,
            bindings=bindings,
            purpose="delete transaction",
        )

    def _locate_transaction(
        self, builder: _PlanBuilder, info: ExtractedInfo
    ) -> tuple[tuple[int, ...], dict[str, ArgBinding]]:
        if info.transaction_id is not None:
            return (), {}
        keyword = info.keyword or info.description or info.category
        start, end = _period(info)
        lookup = builder.add(
            "search_transactions",
            {
                "keyword": keyword,
                "ledger_id": builder.context.ledger_id,
                "start_time": start,
                "end_time": end,
                "limit": 1,
            },
            purpose="find the transaction",
        )
        return (lookup,), {"id": ArgBinding(source=lookup, path=FIRST_MATCH_ID)}


def _to_call(numbering: Mapping[int, int], position: int, draft: _Draft) -> ToolCall:
    return ToolCall(
        index=numbering[position],
        tool_name=draft.tool_name,
        arguments=dict(draft.arguments),
        depends_on=tuple(numbering[dep] for dep in draft.depends_on),
        bindings={
            name: ArgBinding(source=numbering[binding.source], path=binding.path)
            for name, binding in draft.bindings.items()
        },
        purpose=draft.purpose,
        position=position,
    )


def _compact(arguments: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in arguments.items() if value is not None}


def _combine_datetime(day: str | None, clock: str | None) -> str | None:
    if not day:
        return None
    if not clock:
        return day
    return f"{day}T{clock}"


def _period(info: ExtractedInfo) -> tuple[str | None, str | None]:
    if info.date_range is not None and (info.date_range.start or info.date_range.end):
        return info.date_range.start, info.date_range.end
    if info.date:
        return info.date, info.date
    return None, None


def _current_month(context: RuntimeContext) -> tuple[str, str]:
    today = _reference_date(context)
    start = today.replace(day=1)
    if start.month == 12:
        next_month = start.replace(year=start.year + 1, month=1)
    else:
        next_month = start.replace(month=start.month + 1)
    end = date.fromordinal(next_month.toordinal() - 1)
    return start.isoformat(), end.isoformat()


def _reference_date(context: RuntimeContext) -> date:
    if context.current_datetime:
        try:
            return datetime.fromisoformat(context.current_datetime).date()
        except ValueError:
            logger.debug("planner_context_datetime_invalid", value=context.current_datetime)
    return date.today()


__all__ = ["Planner", "FIRST_MATCH_ID"]
