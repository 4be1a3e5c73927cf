from __future__ import annotations

import pytest

from ledger_agent.orchestration.enums import RiskLevel
from ledger_agent.orchestration.preferences import UserPreferences
from ledger_agent.orchestration.risk import RiskClassifier
from ledger_agent.orchestration.state import ToolCall
from ledger_agent.tools.exceptions import ToolNotFoundError
from tests.helpers.stubs import build_ledger_registry


@pytest.fixture()
def classifier() -> RiskClassifier:
    registry, _ = build_ledger_registry()
    return RiskClassifier(registry)


def _creates(count: int) -> list[ToolCall]:
    return [
        ToolCall(index=i, tool_name="create_transaction", arguments={"amount": 10 + i, "type": "EXPENSE"})
        for i in range(count)
    ]


def test_critical_tools_are_never_downgraded(classifier: RiskClassifier) -> None:
    prefs = UserPreferences(always_allow=frozenset({"batch_delete_transactions"}))

    assert classifier.classify("batch_delete_transactions", {"ids": [1, 2]}, 0, prefs) is RiskLevel.CRITICAL
    assert classifier.classify("clear_all_data", {"ledger_id": 1}, 0, UserPreferences()) is RiskLevel.CRITICAL


def test_destructive_tools_are_high_unless_always_allowed(classifier: RiskClassifier) -> None:
    prefs = UserPreferences()
    allowed = UserPreferences(always_allow=frozenset({"delete_transaction"}))

    assert classifier.classify("delete_transaction", {"id": 7}, 0, prefs) is RiskLevel.HIGH
    assert classifier.classify("delete_transaction", {"id": 7}, 0, allowed) is RiskLevel.LOW
    assert classifier.classify("update_transaction", {"id": 7}, 0, allowed) is RiskLevel.HIGH


def test_reads_and_single_creates_are_low(classifier: RiskClassifier) -> None:
    prefs = UserPreferences()

    assert classifier.classify("search_categories", {"keyword": "food"}, 0, prefs) is RiskLevel.LOW
    assert classifier.classify("create_transaction", {"amount": 35, "type": "EXPENSE"}, 1, prefs) is RiskLevel.LOW


def test_batch_escalation_raises_level(classifier: RiskClassifier) -> None:
    prefs = UserPreferences(batch_threshold=5)

    at_threshold = classifier.assess(_creates(5), prefs)
    above_threshold = classifier.assess(_creates(6), prefs)

    assert set(at_threshold.values()) == {RiskLevel.LOW}
    assert set(above_threshold.values()) == {RiskLevel.HIGH}
    single = classifier.classify("create_transaction", {"amount": 1, "type": "EXPENSE"}, 1, prefs)
    assert above_threshold[0].rank > single.rank


def test_batch_size_ignores_reads_and_deletes(classifier: RiskClassifier) -> None:
    calls = _creates(2) + [
        ToolCall(index=2, tool_name="search_categories", arguments={"keyword": "food"}),
        ToolCall(index=3, tool_name="delete_transaction", arguments={"id": 1}),
        ToolCall(index=4, tool_name="update_transaction", arguments={"id": 2}),
    ]

    assert classifier.pending_batch_size(calls) == 3


def test_reads_are_not_escalated_by_large_plans(classifier: RiskClassifier) -> None:
    prefs = UserPreferences(batch_threshold=1)

    assert classifier.classify("query_transactions", {}, 10, prefs) is RiskLevel.LOW


def test_unknown_tool_is_a_defect(classifier: RiskClassifier) -> None:
    with pytest.raises(ToolNotFoundError):
        classifier.classify("transfer_money", {}, 0, UserPreferences())


def test_risk_level_ordering_helpers() -> None:
    assert RiskLevel.HIGH.at_least(RiskLevel.MEDIUM)
    assert not RiskLevel.LOW.at_least(RiskLevel.MEDIUM)
    assert RiskLevel.CRITICAL.escalate() is RiskLevel.CRITICAL
    assert RiskLevel.LOW.escalate(2) is RiskLevel.HIGH
    assert RiskLevel.highest([RiskLevel.LOW, RiskLevel.CRITICAL, RiskLevel.HIGH]) is RiskLevel.CRITICAL
    assert RiskLevel.highest([]) is RiskLevel.LOW
