from __future__ import annotations

import asyncio
from typing import Any, Mapping, Protocol

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..core.config import PreferenceDefaults, PresetName
from ..core.logging import get_logger
from .enums import RiskLevel

logger = get_logger(name=__name__)


class Thresholds(BaseModel):
    """Fully resolved confidence thresholds; no field is optional at the point of use."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rewriter_high: float = Field(0.7, ge=0.0, le=1.0)
    rewriter_low: float = Field(0.4, ge=0.0, le=1.0)
    reflector_low: float = Field(0.3, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_order(self) -> "Thresholds":
        if self.rewriter_low > self.rewriter_high:
            raise ValueError("rewriter_low must not exceed rewriter_high")
        return self

    @classmethod
    def from_preset(cls, preset: PresetName) -> "Thresholds":
        try:
            return CONFIDENCE_PRESETS[preset]
        except KeyError as exc:
            raise ValueError(f"Unknown confidence preset: {preset}") from exc


CONFIDENCE_PRESETS: dict[str, Thresholds] = {
    "default": Thresholds(rewriter_high=0.7, rewriter_low=0.4, reflector_low=0.3),
    "beginner": Thresholds(rewriter_high=0.8, rewriter_low=0.5, reflector_low=0.5),
    "expert": Thresholds(rewriter_high=0.6, rewriter_low=0.3, reflector_low=0.2),
    "automation": Thresholds(rewriter_high=0.5, rewriter_low=0.1, reflector_low=0.1),
    "strict": Thresholds(rewriter_high=0.9, rewriter_low=0.6, reflector_low=0.6),
}


class UserPreferences(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    thresholds: Thresholds = Field(default_factory=Thresholds)
    confirm_high_risk: bool = True
    confirm_medium_risk: bool = False
    batch_threshold: int = Field(5, ge=1)
    always_allow: frozenset[str] = Field(default_factory=frozenset)

    @classmethod
    def from_defaults(cls, defaults: PreferenceDefaults) -> "UserPreferences":
        return cls(
            thresholds=Thresholds.from_preset(defaults.preset),
            confirm_high_risk=defaults.confirm_high_risk,
            confirm_medium_risk=defaults.confirm_medium_risk,
            batch_threshold=defaults.batch_threshold,
        )

    @property
    def confirmation_threshold(self) -> RiskLevel:
        """Lowest risk level that requires a human decision."""
        if self.confirm_medium_risk:
            return RiskLevel.MEDIUM
        if self.confirm_high_risk:
            return RiskLevel.HIGH
        return RiskLevel.CRITICAL

    def is_always_allowed(self, tool_name: str) -> bool:
        return tool_name in self.always_allow

    def merged(self, partial: Mapping[str, Any]) -> "UserPreferences":
        """Return a validated copy with ``partial`` applied."""
        data = self.model_dump()
        for key, value in partial.items():
            if key == "thresholds" and isinstance(value, Mapping):
                data["thresholds"] = {**data["thresholds"], **value}
            elif key == "preset":
                data["thresholds"] = Thresholds.from_preset(value).model_dump()
            else:
                data[key] = value
        return UserPreferences.model_validate(data)


class PreferencesStore(Protocol):
    async def get(self) -> UserPreferences:
        ...

    async def set(self, partial: Mapping[str, Any]) -> UserPreferences:
        ...


class InMemoryPreferencesStore:
    """Fallback store used when preferences are not persisted by the host."""

    def __init__(self, preferences: UserPreferences | None = None) -> None:
        self._preferences = preferences or UserPreferences()
        self._lock = asyncio.Lock()

    async def get(self) -> UserPreferences:
        return self._preferences

    async def set(self, partial: Mapping[str, Any]) -> UserPreferences:
        async with self._lock:
            self._preferences = self._preferences.merged(partial)
        logger.info("preferences_updated", fields=sorted(partial))
        return self._preferences


async def grant_always_allow(store: PreferencesStore, tool_name: str) -> UserPreferences:
    current = await store.get()
    if current.is_always_allowed(tool_name):
        return current
    return await store.set({"always_allow": current.always_allow | {tool_name}})


__all__ = [
    "Thresholds",
    "CONFIDENCE_PRESETS",
    "UserPreferences",
    "PreferencesStore",
    "InMemoryPreferencesStore",
    "grant_always_allow",
]
