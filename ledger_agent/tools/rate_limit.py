from __future__ import annotations

import time
from collections import deque
from typing import Callable, Deque, Dict

from ..core.logging import get_logger
from .exceptions import ToolRateLimitedError
from .registry import ToolSpec

logger = get_logger(name=__name__)

_WINDOW_SECONDS = 60.0


class ToolCallLimiter:
    """Per-tool cooldown and calls-per-minute accounting.

    ``check`` is called before dispatch and ``record`` after a call was sent to
    its handler, so rejected attempts do not consume the budget.
    """

    def __init__(self, *, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.monotonic
        self._last_call: Dict[str, float] = {}
        self._window: Dict[str, Deque[float]] = {}

    def check(self, spec: ToolSpec) -> None:
        now = self._clock()
        last = self._last_call.get(spec.name)
        if spec.cooldown_seconds > 0 and last is not None:
            elapsed = now - last
            if elapsed < spec.cooldown_seconds:
                retry_after = spec.cooldown_seconds - elapsed
                logger.warning("tool_cooldown_active", tool=spec.name, retry_after=round(retry_after, 3))
                raise ToolRateLimitedError(
                    f"{spec.name} was called {elapsed:.1f}s ago; wait {retry_after:.1f}s",
                    retry_after=retry_after,
                )
        if spec.max_calls_per_minute is not None:
            window = self._trim(spec.name, now)
            if len(window) >= spec.max_calls_per_minute:
                retry_after = _WINDOW_SECONDS - (now - window[0])
                logger.warning(
                    "tool_rate_limit_exceeded",
                    tool=spec.name,
                    limit=spec.max_calls_per_minute,
                    retry_after=round(retry_after, 3),
                )
                raise ToolRateLimitedError(
                    f"{spec.name} allows {spec.max_calls_per_minute} calls per minute",
                    retry_after=retry_after,
                )

    def record(self, spec: ToolSpec) -> None:
        now = self._clock()
        self._last_call[spec.name] = now
        if spec.max_calls_per_minute is not None:
            self._trim(spec.name, now).append(now)

    def reset(self, name: str | None = None) -> None:
        if name is None:
            self._last_call.clear()
            self._window.clear()
            return
        self._last_call.pop(name, None)
        self._window.pop(name, None)

    def _trim(self, name: str, now: float) -> Deque[float]:
        window = self._window.setdefault(name, deque())
        while window and now - window[0] >= _WINDOW_SECONDS:
            window.popleft()
        return window
