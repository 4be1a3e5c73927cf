from __future__ import annotations

import structlog

from ledger_agent.core.config import ObservabilitySettings
from ledger_agent.core.logging import configure_logging, turn_log_context


def test_turn_log_context_binds_and_restores() -> None:
    with turn_log_context("turn-1", ledger_id=5):
        bound = structlog.contextvars.get_contextvars()
        assert bound["turn_id"] == "turn-1"
        assert bound["ledger_id"] == 5

    assert "turn_id" not in structlog.contextvars.get_contextvars()


def test_configure_logging_merges_turn_context() -> None:
    try:
        configure_logging(ObservabilitySettings(log_level="DEBUG"))
        processors = structlog.get_config()["processors"]
        assert processors[0] is structlog.contextvars.merge_contextvars
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
    finally:
        structlog.reset_defaults()

