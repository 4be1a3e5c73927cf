from __future__ import annotations

import pytest

from ledger_agent.tools.catalog import ledger_tool_spec
from ledger_agent.tools.exceptions import ToolRateLimitedError
from ledger_agent.tools.rate_limit import ToolCallLimiter
from tests.helpers.stubs import FakeClock


def test_cooldown_blocks_rapid_repeat() -> None:
    clock = FakeClock()
    limiter = ToolCallLimiter(clock=clock)
    spec = ledger_tool_spec("delete_transaction")

    limiter.check(spec)
    limiter.record(spec)
    clock.advance(0.5)
    with pytest.raises(ToolRateLimitedError) as excinfo:
        limiter.check(spec)
    assert excinfo.value.retry_after == pytest.approx(1.5)

    clock.advance(1.5)
    limiter.check(spec)


def test_calls_per_minute_window() -> None:
    clock = FakeClock()
    limiter = ToolCallLimiter(clock=clock)
    spec = ledger_tool_spec("batch_delete_transactions")

    for _ in range(2):
        limiter.check(spec)
        limiter.record(spec)
        clock.advance(10)

    with pytest.raises(ToolRateLimitedError, match="2 calls per minute"):
        limiter.check(spec)

    clock.advance(41)
    limiter.check(spec)


def test_check_without_record_does_not_consume_budget() -> None:
    limiter = ToolCallLimiter(clock=FakeClock())
    spec = ledger_tool_spec("clear_all_data")

    for _ in range(3):
        limiter.check(spec)


def test_reset_clears_single_tool() -> None:
    limiter = ToolCallLimiter(clock=FakeClock())
    delete = ledger_tool_spec("delete_transaction")
    clear = ledger_tool_spec("clear_all_data")
    limiter.record(delete)
    limiter.record(clear)

    limiter.reset("delete_transaction")

    limiter.check(delete)
    with pytest.raises(ToolRateLimitedError):
        limiter.check(clear)
