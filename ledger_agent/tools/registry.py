from __future__ import annotations

import inspect
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, Mapping, Protocol, runtime_checkable

from .exceptions import ToolNotFoundError

__all__ = [
    "normalize_tool_name",
    "RiskTag",
    "ToolOperation",
    "ToolHandler",
    "FunctionTool",
    "ToolSpec",
    "ToolEntry",
    "ToolRegistry",
]


_NAME_PATTERN = re.compile(r"[\\/\s.\-]+")
_UNDERSCORE_COLLAPSE = re.compile(r"_+")


def normalize_tool_name(name: str) -> str:
    """Return a normalized identifier used for registry lookups."""
    if not isinstance(name, str):
        raise TypeError("Tool name must be a string")
    collapsed = _NAME_PATTERN.sub("_", name.strip())
    collapsed = _UNDERSCORE_COLLAPSE.sub("_", collapsed)
    return collapsed.strip("_").lower()


class RiskTag(str, Enum):
    LOW = "low"
    DESTRUCTIVE = "destructive"
    CRITICAL = "critical"


class ToolOperation(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@runtime_checkable
class ToolHandler(Protocol):
    async def invoke(self, arguments: Mapping[str, Any]) -> Any:
        ...


class FunctionTool:
    """Adapts a plain (async or sync) callable to the ToolHandler interface."""

    def __init__(self, func: Callable[[Mapping[str, Any]], Any | Awaitable[Any]]) -> None:
        self._func = func

    async def invoke(self, arguments: Mapping[str, Any]) -> Any:
        result = self._func(arguments)
        if inspect.isawaitable(result):
            return await result
        return result


@dataclass(frozen=True, slots=True)
class ToolSpec:
    name: str
    title: str
    description: str
    operation: ToolOperation
    risk_tag: RiskTag = RiskTag.LOW
    arg_schema: Mapping[str, Any] = field(default_factory=dict)
    cooldown_seconds: float = 0.0
    max_calls_per_minute: int | None = None

    @property
    def read_only(self) -> bool:
        return self.operation is ToolOperation.READ

    @property
    def mutating(self) -> bool:
        return not self.read_only

    @property
    def counts_toward_batch(self) -> bool:
        return self.operation in {ToolOperation.CREATE, ToolOperation.UPDATE}


@dataclass(slots=True)
class ToolEntry:
    spec: ToolSpec
    handler: ToolHandler

    @property
    def name(self) -> str:
        return self.spec.name

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        return await self.handler.invoke(arguments)


class ToolRegistry:
    """Catalog of tool entries keyed by normalized name, with alias resolution."""

    def __init__(self) -> None:
        self._entries: Dict[str, ToolEntry] = {}
        self._alias_index: Dict[str, str] = {}

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self._resolve_key(name) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def register(
        self,
        spec: ToolSpec,
        handler: ToolHandler | Callable[[Mapping[str, Any]], Any],
        *,
        aliases: Iterable[str] | None = None,
    ) -> ToolEntry:
        if not isinstance(handler, ToolHandler):
            handler = FunctionTool(handler)
        key = normalize_tool_name(spec.name)
        entry = ToolEntry(spec=spec, handler=handler)
        self._entries[key] = entry
        if aliases:
            for alias in aliases:
                self.register_alias(alias, spec.name)
        return entry

    def unregister(self, name: str) -> None:
        key = self._resolve_key(name)
        if key is None:
            return
        del self._entries[key]
        for alias_key, target_key in list(self._alias_index.items()):
            if target_key == key:
                del self._alias_index[alias_key]

    def clear(self) -> None:
        self._entries.clear()
        self._alias_index.clear()

    def register_alias(self, alias: str, target: str) -> None:
        alias_key = normalize_tool_name(alias)
        target_key = normalize_tool_name(target)
        if not alias_key or not target_key or alias_key == target_key:
            return
        self._alias_index[alias_key] = target_key

    def get(self, name: str) -> ToolEntry | None:
        key = self._resolve_key(name)
        if key is None:
            return None
        return self._entries[key]

    def require(self, name: str) -> ToolEntry:
        entry = self.get(name)
        if entry is None:
            raise ToolNotFoundError(f"Tool '{name}' is not registered")
        return entry

    def spec(self, name: str) -> ToolSpec:
        return self.require(name).spec

    def resolve(self, name: str) -> str | None:
        entry = self.get(name)
        return entry.spec.name if entry is not None else None

    def list(self) -> list[str]:
        return sorted(entry.spec.name for entry in self._entries.values())

    def aliases(self) -> dict[str, str]:
        return {
            alias: self._entries[target].spec.name
            for alias, target in sorted(self._alias_index.items())
            if target in self._entries
        }

    def items(self) -> Iterator[tuple[str, ToolEntry]]:
        for entry in self._entries.values():
            yield entry.spec.name, entry

    def _resolve_key(self, name: str) -> str | None:
        normalized = normalize_tool_name(name)
        if normalized in self._entries:
            return normalized
        target = self._alias_index.get(normalized)
        if target is not None and target in self._entries:
            return target
        return None
