from __future__ import annotations

import pytest

from ledger_agent.orchestration.enums import IntentType
from ledger_agent.orchestration.preferences import Thresholds
from ledger_agent.orchestration.rewriter import (
    REWRITER_SYSTEM_PROMPT,
    IntentRewriter,
    RewriteBranch,
    build_clarifying_question,
)
from ledger_agent.orchestration.state import Intent
from ledger_agent.services.llm import LLMUnavailableError
from tests.helpers.stubs import StubLLM, intent_reply, ledger_context

THRESHOLDS = Thresholds()


@pytest.mark.asyncio
async def test_high_confidence_executes_verbatim() -> None:
    llm = StubLLM(intent_reply("create", 0.85, amount=35, category="Food", type="支出"))
    rewriter = IntentRewriter(llm)

    decision = await rewriter.rewrite("lunch 35", thresholds=THRESHOLDS, runtime_context=ledger_context())

    assert decision.branch is RewriteBranch.EXECUTE
    assert decision.should_plan
    assert decision.intent.action is IntentType.CREATE
    assert decision.intent.parameters.amount == 35
    assert decision.intent.parameters.type == "EXPENSE"
    assert decision.intent.caveat is False
    assert llm.prompts[0]["system_prompt"] == REWRITER_SYSTEM_PROMPT
    assert "Known categories: Food[EXPENSE]" in llm.prompts[0]["prompt"]


@pytest.mark.asyncio
async def test_medium_confidence_proceeds_with_caveat() -> None:
    rewriter = IntentRewriter(StubLLM(intent_reply("query", 0.55, keyword="coffee")))

    decision = await rewriter.rewrite("coffee?", thresholds=THRESHOLDS)

    assert decision.branch is RewriteBranch.CAVEAT
    assert decision.should_plan
    assert decision.intent.caveat is True


@pytest.mark.asyncio
async def test_low_confidence_asks_from_missing_fields() -> None:
    rewriter = IntentRewriter(StubLLM(intent_reply("create", 0.2, missing=["amount", "category"])))

    decision = await rewriter.rewrite("记一下", thresholds=THRESHOLDS)

    assert decision.branch is RewriteBranch.CLARIFY
    assert not decision.should_plan
    assert decision.clarifying_question == "Could you tell me the amount and the category?"


@pytest.mark.asyncio
async def test_clarify_intent_uses_model_question_even_when_confident() -> None:
    rewriter = IntentRewriter(StubLLM(intent_reply("clarify", 0.9, question="Which account?")))

    decision = await rewriter.rewrite("move it", thresholds=THRESHOLDS)

    assert decision.branch is RewriteBranch.CLARIFY
    assert decision.clarifying_question == "Which account?"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply",
    [
        LLMUnavailableError("connection refused"),
        RuntimeError("socket closed"),
        "I am not JSON at all",
        "[1, 2, 3]",
        '{"intentType": "create", "confidence": 0.9, "extractedInfo": "amount=3"}',
    ],
)
async def test_model_failures_force_clarify(reply) -> None:
    rewriter = IntentRewriter(StubLLM(reply))

    decision = await rewriter.rewrite("spent 3 on tea", thresholds=THRESHOLDS)

    assert decision.branch is RewriteBranch.CLARIFY
    assert decision.intent.action is IntentType.UNKNOWN
    assert decision.intent.confidence == 0.0
    assert decision.intent.model_available is False


@pytest.mark.asyncio
async def test_fenced_json_and_odd_values_are_tolerated() -> None:
    raw = '```json\n{"intentType": "STATISTICS", "confidence": "1.7", "rewrittenPrompt": "May totals"}\n```'
    rewriter = IntentRewriter(StubLLM(raw))

    intent = await rewriter.interpret("how much in May")

    assert intent.action is IntentType.STATISTICS
    assert intent.confidence == 1.0
    assert intent.rewritten_prompt == "May totals"


@pytest.mark.asyncio
async def test_unknown_intent_type_maps_to_unknown() -> None:
    rewriter = IntentRewriter(StubLLM(intent_reply("transfer", 0.95)))

    intent = await rewriter.interpret("move 5 to savings")

    assert intent.action is IntentType.UNKNOWN
    assert intent.model_available is True


@pytest.mark.asyncio
async def test_history_is_included_in_prompt() -> None:
    llm = StubLLM(intent_reply("chat", 0.9))
    rewriter = IntentRewriter(llm)

    await rewriter.interpret(
        "and yesterday?",
        history=[{"role": "user", "content": "what did I spend today"}, {"role": "assistant", "content": "12.00"}],
    )

    prompt = llm.prompts[0]["prompt"]
    assert "user: what did I spend today" in prompt
    assert "assistant: 12.00" in prompt
    assert prompt.endswith("User request: and yesterday?")


def test_thresholds_are_inclusive_at_boundaries() -> None:
    high = Intent(action=IntentType.QUERY, confidence=0.7)
    low = Intent(action=IntentType.QUERY, confidence=0.4)

    assert IntentRewriter.decide(high, THRESHOLDS).branch is RewriteBranch.EXECUTE
    assert IntentRewriter.decide(low, THRESHOLDS).branch is RewriteBranch.CAVEAT


def test_generic_clarifying_question() -> None:
    question = build_clarifying_question(Intent(action=IntentType.UNKNOWN))

    assert question == "Could you tell me a bit more about what you would like to do?"
