from __future__ import annotations

from dataclasses import dataclass, field

from ..core.config import Settings, get_settings
from ..core.logging import configure_logging
from ..core.metrics import configure_metrics
from ..services.llm import LanguageModel, LLMService
from ..tools.rate_limit import ToolCallLimiter
from ..tools.registry import ToolRegistry
from .preferences import InMemoryPreferencesStore, PreferencesStore, UserPreferences


@dataclass(slots=True)
class AgentContext:
    """Collaborators shared by every component of one conversation's turn controller."""

    registry: ToolRegistry
    llm: LanguageModel
    preferences: PreferencesStore
    settings: Settings = field(default_factory=get_settings)
    limiter: ToolCallLimiter = field(default_factory=ToolCallLimiter)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        registry: ToolRegistry,
        llm: LanguageModel | None = None,
        preferences: PreferencesStore | None = None,
    ) -> "AgentContext":
        """Build a context for a host process, applying ``settings.observability`` to logging and metrics."""
        configure_logging(settings.observability)
        configure_metrics(settings.observability.prometheus_enabled)
        return cls(
            registry=registry,
            llm=llm or LLMService.from_settings(settings),
            preferences=preferences or InMemoryPreferencesStore(UserPreferences.from_defaults(settings.preferences)),
            settings=settings,
        )
