from __future__ import annotations

import pytest
from pydantic import ValidationError

from ledger_agent.core.config import PreferenceDefaults
from ledger_agent.orchestration.enums import RiskLevel
from ledger_agent.orchestration.preferences import (
    CONFIDENCE_PRESETS,
    InMemoryPreferencesStore,
    Thresholds,
    UserPreferences,
    grant_always_allow,
)


def test_default_thresholds() -> None:
    thresholds = Thresholds()

    assert (thresholds.rewriter_high, thresholds.rewriter_low, thresholds.reflector_low) == (0.7, 0.4, 0.3)
    assert CONFIDENCE_PRESETS["default"] == thresholds


def test_thresholds_reject_inverted_range() -> None:
    with pytest.raises(ValidationError):
        Thresholds(rewriter_high=0.3, rewriter_low=0.6)
    with pytest.raises(ValueError):
        Thresholds.from_preset("reckless")  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("medium", "high", "expected"),
    [
        (True, True, RiskLevel.MEDIUM),
        (True, False, RiskLevel.MEDIUM),
        (False, True, RiskLevel.HIGH),
        (False, False, RiskLevel.CRITICAL),
    ],
)
def test_confirmation_threshold(medium: bool, high: bool, expected: RiskLevel) -> None:
    prefs = UserPreferences(confirm_medium_risk=medium, confirm_high_risk=high)

    assert prefs.confirmation_threshold is expected


def test_from_defaults_resolves_preset() -> None:
    prefs = UserPreferences.from_defaults(PreferenceDefaults(preset="strict", batch_threshold=3))

    assert prefs.thresholds == CONFIDENCE_PRESETS["strict"]
    assert prefs.batch_threshold == 3
    assert prefs.always_allow == frozenset()


def test_merged_applies_partial_thresholds_and_presets() -> None:
    prefs = UserPreferences()

    tweaked = prefs.merged({"thresholds": {"reflector_low": 0.5}, "confirm_medium_risk": True})
    preset = prefs.merged({"preset": "expert"})

    assert tweaked.thresholds.reflector_low == 0.5
    assert tweaked.thresholds.rewriter_high == 0.7
    assert tweaked.confirm_medium_risk is True
    assert preset.thresholds == CONFIDENCE_PRESETS["expert"]
    assert prefs.confirm_medium_risk is False


def test_merged_rejects_unknown_fields() -> None:
    with pytest.raises(ValidationError):
        UserPreferences().merged({"confirm_everything": True})


@pytest.mark.asyncio
async def test_grant_always_allow_is_persistent_and_idempotent() -> None:
    store = InMemoryPreferencesStore()

    first = await grant_always_allow(store, "delete_transaction")
    second = await grant_always_allow(store, "delete_transaction")

    assert first.is_always_allowed("delete_transaction")
    assert second is first
    assert (await store.get()).always_allow == frozenset({"delete_transaction"})
