from __future__ import annotations

import pytest

from ledger_agent.orchestration.enums import ErrorKind, IntentType
from ledger_agent.orchestration.executor import ExecutionOutcome
from ledger_agent.orchestration.preferences import Thresholds
from ledger_agent.orchestration.reflector import CANNED_SUGGESTIONS, REFLECTOR_SYSTEM_PROMPT, Reflector
from ledger_agent.orchestration.state import Intent, Plan, ToolCall
from ledger_agent.services.llm import LLMUnavailableError
from tests.helpers.stubs import StubLLM

THRESHOLDS = Thresholds()


def _succeeded(index: int, tool: str = "create_transaction", depends_on: tuple[int, ...] = ()) -> ToolCall:
    call = ToolCall(index=index, tool_name=tool, arguments={}, depends_on=depends_on, purpose=f"run {tool}")
    call.succeed({"id": index})
    return call


def _failed(index: int, tool: str = "create_transaction", kind: ErrorKind = ErrorKind.TOOL_EXECUTION_FAILED, **kwargs) -> ToolCall:
    call = ToolCall(index=index, tool_name=tool, arguments={}, purpose=f"run {tool}", **kwargs)
    call.fail(kind, "backend 500", skipped=kind is ErrorKind.DEPENDENCY_FAILED)
    return call


def _intent(action: IntentType = IntentType.CREATE, *, caveat: bool = False) -> Intent:
    return Intent(action=action, confidence=0.9, caveat=caveat, rewritten_prompt="record 35 for lunch")


@pytest.mark.asyncio
async def test_clean_outcome_is_confident_with_suggestions() -> None:
    calls = (_succeeded(0),)
    reflector = Reflector(max_suggestions=2)

    result = await reflector.reflect(_intent(), Plan(calls=calls), ExecutionOutcome(calls=calls), thresholds=THRESHOLDS)

    assert result.confidence == pytest.approx(1.0)
    assert not result.needs_clarification
    assert result.clarifying_message is None
    assert result.suggested_actions == CANNED_SUGGESTIONS[IntentType.CREATE][:2]


@pytest.mark.asyncio
async def test_dependency_chain_failure_asks_to_clarify() -> None:
    lookup = _failed(0, tool="search_categories")
    create = _failed(1, kind=ErrorKind.DEPENDENCY_FAILED, depends_on=(0,))
    plan = Plan(calls=(lookup, create))

    result = await Reflector().reflect(_intent(), plan, ExecutionOutcome(calls=(lookup, create)), thresholds=THRESHOLDS)

    assert result.needs_clarification
    assert result.confidence < THRESHOLDS.reflector_low
    assert result.clarifying_message.startswith("I couldn't run search_categories: backend 500.")
    assert result.suggested_actions == ()


@pytest.mark.asyncio
async def test_independent_failure_is_a_warning_not_a_question() -> None:
    calls = (_succeeded(0), _failed(1))

    result = await Reflector().reflect(_intent(IntentType.BATCH), Plan(calls=calls), ExecutionOutcome(calls=calls), thresholds=THRESHOLDS)

    assert not result.needs_clarification
    assert result.confidence >= THRESHOLDS.reflector_low
    assert result.warning == "Some steps did not complete: run create_transaction (backend 500)"
    assert result.confidence < 1.0


@pytest.mark.asyncio
async def test_caveat_with_ambiguous_outcome_asks_for_interpretation() -> None:
    calls = (_failed(0),)

    result = await Reflector().reflect(
        _intent(caveat=True), Plan(calls=calls), ExecutionOutcome(calls=calls), thresholds=THRESHOLDS
    )

    assert result.needs_clarification
    assert "record 35 for lunch" in result.clarifying_message


@pytest.mark.asyncio
async def test_caveat_with_clean_outcome_proceeds() -> None:
    calls = (_succeeded(0),)

    result = await Reflector().reflect(
        _intent(caveat=True), Plan(calls=calls), ExecutionOutcome(calls=calls), thresholds=THRESHOLDS
    )

    assert not result.needs_clarification


@pytest.mark.asyncio
async def test_plan_rejected_by_dependency_is_a_chain_failure() -> None:
    lookup = _failed(0, tool="search_transactions", kind=ErrorKind.TOOL_ARGUMENT_INVALID)
    delete = _failed(1, tool="delete_transaction", kind=ErrorKind.DEPENDENCY_FAILED, depends_on=(0,))

    result = await Reflector().reflect(
        _intent(IntentType.DELETE), Plan(rejected=(lookup, delete)), None, thresholds=THRESHOLDS
    )

    assert result.needs_clarification


@pytest.mark.asyncio
async def test_pure_reply_is_confident() -> None:
    result = await Reflector().reflect(_intent(IntentType.CHAT), Plan(), None, thresholds=THRESHOLDS)

    assert not result.needs_clarification
    assert result.suggested_actions == CANNED_SUGGESTIONS[IntentType.CHAT]


@pytest.mark.asyncio
async def test_llm_review_can_only_lower_confidence() -> None:
    llm = StubLLM(
        {
            "thought": "user probably wanted a different category",
            "confidence": 0.1,
            "clarifyQuestion": "Should this be under Transport instead?",
        }
    )
    calls = (_succeeded(0),)

    result = await Reflector(llm, use_llm=True).reflect(
        _intent(), Plan(calls=calls), ExecutionOutcome(calls=calls), thresholds=THRESHOLDS
    )

    assert llm.prompts[0]["system_prompt"] == REFLECTOR_SYSTEM_PROMPT
    assert result.needs_clarification
    assert result.confidence == pytest.approx(0.1)
    assert result.clarifying_message == "Should this be under Transport instead?"


@pytest.mark.asyncio
async def test_llm_suggestions_replace_canned_ones() -> None:
    llm = StubLLM(
        {
            "confidence": 0.95,
            "suggestedActions": [{"label": "Set budget", "message": "Set a food budget"}, {"nope": 1}],
        }
    )
    calls = (_succeeded(0),)

    result = await Reflector(llm, use_llm=True).reflect(
        _intent(), Plan(calls=calls), ExecutionOutcome(calls=calls), thresholds=THRESHOLDS
    )

    assert not result.needs_clarification
    assert [action.label for action in result.suggested_actions] == ["Set budget"]
    assert result.confidence == pytest.approx(0.95)


@pytest.mark.asyncio
@pytest.mark.parametrize("reply", [LLMUnavailableError("down"), "no json here"])
async def test_llm_failure_falls_back_to_structural_result(reply) -> None:
    calls = (_succeeded(0),)

    result = await Reflector(StubLLM(reply), use_llm=True).reflect(
        _intent(), Plan(calls=calls), ExecutionOutcome(calls=calls), thresholds=THRESHOLDS
    )

    assert not result.needs_clarification
    assert result.confidence == pytest.approx(1.0)
