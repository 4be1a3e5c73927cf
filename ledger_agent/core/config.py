from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PresetName = Literal["default", "beginner", "expert", "automation", "strict"]


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class LLMSettings(BaseModel):
    host: str = Field("http://localhost", description="Base URL where Ollama is running.")
    port: int = Field(11434, ge=1, le=65535)
    model: str = Field("qwen2.5:7b", description="Model used for intent rewriting and reflection.")
    temperature: float = Field(0.0, ge=0.0, le=1.0, description="Sampling temperature for agent calls.")
    timeout_seconds: float = Field(30.0, ge=1.0, description="Timeout applied to each model attempt.")
    max_retries: int = Field(2, ge=1, description="Attempts made before the model is reported unavailable.")
    base_delay_seconds: float = Field(1.0, ge=0.0)
    max_delay_seconds: float = Field(10.0, ge=0.0)


class PreferenceDefaults(BaseModel):
    preset: PresetName = Field("default", description="Confidence preset applied to new conversations.")
    confirm_high_risk: bool = Field(True, description="Require confirmation for high-risk tool calls.")
    confirm_medium_risk: bool = Field(False, description="Require confirmation for medium-risk tool calls.")
    batch_threshold: int = Field(5, ge=1, description="Create/update calls per plan before risk escalates.")


class ConfirmationSettings(BaseModel):
    timeout_seconds: float | None = Field(
        300.0,
        ge=1.0,
        description=(
            "Seconds a confirmation request stays valid; later decisions count as a timeout. "
            "None leaves expiry to the host."
        ),
    )
    read_ahead: bool = Field(
        True,
        description="Dispatch ungated read-only calls while a confirmation is pending.",
    )


class ExecutionSettings(BaseModel):
    max_concurrency: int = Field(3, ge=1, description="Tool calls allowed in flight per turn.")
    tool_timeout_seconds: float = Field(30.0, ge=0.1)


class ReflectionSettings(BaseModel):
    enabled: bool = Field(True)
    use_llm: bool = Field(False, description="Ask the model to assess outcomes on top of structural signals.")
    max_suggestions: int = Field(3, ge=0)


class ConversationSettings(BaseModel):
    history_window: int = Field(10, ge=0, description="Recent messages handed to the intent rewriter.")
    state_history_limit: int = Field(100, ge=1)


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")

    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]
    llm: LLMSettings = Field(default_factory=LLMSettings)  # type: ignore[arg-type]
    preferences: PreferenceDefaults = Field(default_factory=PreferenceDefaults)  # type: ignore[arg-type]
    confirmation: ConfirmationSettings = Field(default_factory=ConfirmationSettings)  # type: ignore[arg-type]
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)  # type: ignore[arg-type]
    reflection: ReflectionSettings = Field(default_factory=ReflectionSettings)  # type: ignore[arg-type]
    conversation: ConversationSettings = Field(default_factory=ConversationSettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        materialized = dict(overrides)
        allowed_keys = {"environment"}
        filtered = {key: value for key, value in materialized.items() if key in allowed_keys}
        if filtered:
            return Settings(**filtered)
    return _get_cached_settings()
