"""Default catalog of ledger tools.

Handlers live with the host (they call the ledger backend); the catalog only
describes names, argument contracts, risk tags and rate limits.
"""

from __future__ import annotations

from typing import Any, Mapping

from .registry import RiskTag, ToolHandler, ToolOperation, ToolRegistry, ToolSpec

_TRANSACTION_TYPE = {"type": "string", "enum": ["EXPENSE", "INCOME"]}
_ID = {"type": "integer"}
_TEXT = {"type": "string"}


def _schema(properties: Mapping[str, Any] | None = None, *required: str) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": dict(properties or {}),
        "required": list(required),
        "additionalProperties": False,
    }


_TRANSACTION_FIELDS: dict[str, Any] = {
    "amount": {"type": "number", "exclusiveMinimum": 0},
    "type": _TRANSACTION_TYPE,
    "description": _TEXT,
    "ledger_id": _ID,
    "category_id": _ID,
    "payment_method_id": _ID,
    "transaction_date_time": _TEXT,
}

LEDGER_TOOL_SPECS: tuple[ToolSpec, ...] = (
    ToolSpec(
        name="get_user_info",
        title="Read user profile",
        description="Return the signed-in user's profile.",
        operation=ToolOperation.READ,
        arg_schema=_schema(),
    ),
    ToolSpec(
        name="get_current_ledger",
        title="Read current ledger",
        description="Return the ledger the user is working in.",
        operation=ToolOperation.READ,
        arg_schema=_schema(),
    ),
    ToolSpec(
        name="get_categories",
        title="List categories",
        description="List the categories of a ledger.",
        operation=ToolOperation.READ,
        arg_schema=_schema({"ledger_id": _ID, "type": _TRANSACTION_TYPE}),
    ),
    ToolSpec(
        name="search_categories",
        title="Find category",
        description="Search categories by keyword; returns a list of {id, name, type}.",
        operation=ToolOperation.READ,
        arg_schema=_schema({"keyword": _TEXT, "ledger_id": _ID, "type": _TRANSACTION_TYPE}, "keyword"),
    ),
    ToolSpec(
        name="get_payment_methods",
        title="List payment methods",
        description="List the user's payment methods.",
        operation=ToolOperation.READ,
        arg_schema=_schema(),
    ),
    ToolSpec(
        name="query_transactions",
        title="Query transactions",
        description="Page through transactions filtered by type, category and time range.",
        operation=ToolOperation.READ,
        arg_schema=_schema(
            {
                "ledger_id": _ID,
                "type": _TRANSACTION_TYPE,
                "category_id": _ID,
                "start_time": _TEXT,
                "end_time": _TEXT,
                "page": {"type": "integer"},
                "size": {"type": "integer"},
            }
        ),
    ),
    ToolSpec(
        name="search_transactions",
        title="Search transactions",
        description="Search transactions by keyword; returns a list of {id, amount, description, ...}.",
        operation=ToolOperation.READ,
        arg_schema=_schema(
            {
                "keyword": _TEXT,
                "ledger_id": _ID,
                "start_time": _TEXT,
                "end_time": _TEXT,
                "limit": {"type": "integer"},
            },
            "keyword",
        ),
    ),
    ToolSpec(
        name="get_transaction_statistics",
        title="Transaction statistics",
        description="Income/expense totals and category breakdown for a period.",
        operation=ToolOperation.READ,
        arg_schema=_schema({"ledger_id": _ID, "start_time": _TEXT, "end_time": _TEXT}, "start_time", "end_time"),
    ),
    ToolSpec(
        name="create_transaction",
        title="Record transaction",
        description="Record a single income or expense.",
        operation=ToolOperation.CREATE,
        arg_schema=_schema(_TRANSACTION_FIELDS, "amount", "type"),
    ),
    ToolSpec(
        name="create_category",
        title="Create category",
        description="Add a category to a ledger.",
        operation=ToolOperation.CREATE,
        arg_schema=_schema({"name": _TEXT, "type": _TRANSACTION_TYPE, "ledger_id": _ID, "icon": _TEXT}, "name", "type"),
    ),
    ToolSpec(
        name="create_payment_method",
        title="Create payment method",
        description="Add a payment method.",
        operation=ToolOperation.CREATE,
        arg_schema=_schema({"name": _TEXT, "icon": _TEXT}, "name"),
    ),
    ToolSpec(
        name="update_transaction",
        title="Edit transaction",
        description="Change fields of an existing transaction.",
        operation=ToolOperation.UPDATE,
        risk_tag=RiskTag.DESTRUCTIVE,
        arg_schema=_schema({"id": _ID, **_TRANSACTION_FIELDS}, "id"),
    ),
    ToolSpec(
        name="delete_transaction",
        title="Delete transaction",
        description="Delete a single transaction. Cannot be undone.",
        operation=ToolOperation.DELETE,
        risk_tag=RiskTag.DESTRUCTIVE,
        arg_schema=_schema({"id": _ID}, "id"),
        cooldown_seconds=2.0,
    ),
    ToolSpec(
        name="delete_category",
        title="Delete category",
        description="Delete a category; its transactions lose their category.",
        operation=ToolOperation.DELETE,
        risk_tag=RiskTag.DESTRUCTIVE,
        arg_schema=_schema({"id": _ID}, "id"),
    ),
    ToolSpec(
        name="batch_delete_transactions",
        title="Delete transactions in bulk",
        description="Delete several transactions at once. Cannot be undone.",
        operation=ToolOperation.DELETE,
        risk_tag=RiskTag.CRITICAL,
        arg_schema=_schema({"ids": {"type": "array", "minItems": 1}}, "ids"),
        max_calls_per_minute=2,
    ),
    ToolSpec(
        name="clear_all_data",
        title="Clear ledger",
        description="Remove every transaction in a ledger. Cannot be undone.",
        operation=ToolOperation.DELETE,
        risk_tag=RiskTag.CRITICAL,
        arg_schema=_schema({"ledger_id": _ID}, "ledger_id"),
        max_calls_per_minute=1,
    ),
)


def ledger_tool_spec(name: str) -> ToolSpec:
    for spec in LEDGER_TOOL_SPECS:
        if spec.name == name:
            return spec
    raise KeyError(name)


def register_ledger_tools(
    registry: ToolRegistry,
    handlers: Mapping[str, ToolHandler | Any],
    *,
    strict: bool = False,
) -> ToolRegistry:
    """Register every catalog tool that has a handler.

    With ``strict`` a catalog tool without a handler raises ``KeyError``.
    """
    for spec in LEDGER_TOOL_SPECS:
        handler = handlers.get(spec.name)
        if handler is None:
            if strict:
                raise KeyError(f"No handler supplied for {spec.name}")
            continue
        registry.register(spec, handler)
    return registry


__all__ = ["LEDGER_TOOL_SPECS", "ledger_tool_spec", "register_ledger_tools"]
