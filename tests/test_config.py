from __future__ import annotations

import pytest
from pydantic import ValidationError

from ledger_agent.core.config import LLMSettings, Settings, get_settings


def test_defaults() -> None:
    settings = Settings(environment="test")

    assert settings.llm.port == 11434
    assert settings.preferences.preset == "default"
    assert settings.preferences.confirm_high_risk is True
    assert settings.preferences.batch_threshold == 5
    assert settings.confirmation.timeout_seconds == 300.0
    assert settings.execution.max_concurrency == 3
    assert settings.reflection.use_llm is False
    assert settings.conversation.history_window == 10


def test_nested_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PREFERENCES__PRESET", "strict")
    monkeypatch.setenv("PREFERENCES__BATCH_THRESHOLD", "2")
    monkeypatch.setenv("EXECUTION__MAX_CONCURRENCY", "8")

    settings = Settings()

    assert settings.preferences.preset == "strict"
    assert settings.preferences.batch_threshold == 2
    assert settings.execution.max_concurrency == 8


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValidationError):
        LLMSettings(port=0)
    with pytest.raises(ValidationError):
        Settings(preferences={"preset": "reckless"})


def test_get_settings_caches_defaults() -> None:
    assert get_settings() is get_settings()
    assert get_settings({"environment": "production"}).environment == "production"


def test_confirmation_timeout_can_be_left_to_the_host() -> None:
    settings = Settings(environment="test", confirmation={"timeout_seconds": None})

    assert settings.confirmation.timeout_seconds is None
    with pytest.raises(ValidationError):
        Settings(confirmation={"timeout_seconds": 0.5})
