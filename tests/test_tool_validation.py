from __future__ import annotations

import pytest

from ledger_agent.tools.catalog import ledger_tool_spec
from ledger_agent.tools.exceptions import ToolArgumentInvalidError
from ledger_agent.tools.validation import ToolArgumentValidator


@pytest.fixture()
def validator() -> ToolArgumentValidator:
    return ToolArgumentValidator(max_string_length=50)


def test_valid_transaction_passes(validator: ToolArgumentValidator) -> None:
    validator.validate(
        ledger_tool_spec("create_transaction"),
        {"amount": 35, "type": "EXPENSE", "category_id": 3, "description": "lunch"},
    )


@pytest.mark.parametrize(
    ("arguments", "message"),
    [
        ({"type": "EXPENSE"}, "Missing required fields"),
        ({"amount": 0, "type": "EXPENSE"}, "greater than 0"),
        ({"amount": 10, "type": "REFUND"}, "must be one of"),
        ({"amount": "10", "type": "EXPENSE"}, "must be number"),
        ({"amount": True, "type": "EXPENSE"}, "must be number"),
        ({"amount": 10, "type": "EXPENSE", "memo": "x"}, "Unexpected fields"),
        ({"amount": 10, "type": "EXPENSE", "description": "x" * 51}, "exceeds 50 characters"),
    ],
)
def test_invalid_transaction_arguments(validator: ToolArgumentValidator, arguments, message) -> None:
    with pytest.raises(ToolArgumentInvalidError, match=message):
        validator.validate(ledger_tool_spec("create_transaction"), arguments)


def test_deferred_fields_satisfy_required(validator: ToolArgumentValidator) -> None:
    spec = ledger_tool_spec("delete_transaction")

    validator.validate(spec, {}, deferred={"id"})
    with pytest.raises(ToolArgumentInvalidError):
        validator.validate(spec, {})


def test_min_items_for_bulk_delete(validator: ToolArgumentValidator) -> None:
    spec = ledger_tool_spec("batch_delete_transactions")

    validator.validate(spec, {"ids": [1, 2]})
    with pytest.raises(ToolArgumentInvalidError, match="at least 1 items"):
        validator.validate(spec, {"ids": []})


def test_none_values_are_not_type_checked(validator: ToolArgumentValidator) -> None:
    validator.validate(ledger_tool_spec("query_transactions"), {"ledger_id": None, "size": 20})


def test_arguments_must_be_a_mapping(validator: ToolArgumentValidator) -> None:
    with pytest.raises(ToolArgumentInvalidError, match="must be an object"):
        validator.validate(ledger_tool_spec("get_categories"), [("ledger_id", 1)])  # type: ignore[arg-type]
