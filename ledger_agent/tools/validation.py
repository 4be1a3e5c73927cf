from __future__ import annotations

import json
from typing import Any, Collection, Mapping

from ..core.logging import get_logger
from .exceptions import ToolArgumentInvalidError
from .registry import ToolSpec

logger = get_logger(name=__name__)

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}


class ToolArgumentValidator:
    """Checks tool arguments against the JSON-schema subset used by the catalog."""

    def __init__(self, *, max_string_length: int = 2_000) -> None:
        self._max_string_length = max_string_length

    def validate(
        self,
        spec: ToolSpec,
        arguments: Mapping[str, Any],
        *,
        deferred: Collection[str] = (),
    ) -> None:
        """Raise ``ToolArgumentInvalidError`` when ``arguments`` break ``spec``'s contract.

        Names in ``deferred`` are bound from another call's output at execution
        time, so they satisfy ``required`` without being type checked yet.
        """
        if not isinstance(arguments, Mapping):
            raise ToolArgumentInvalidError(f"Arguments for {spec.name} must be an object")
        schema = spec.arg_schema or {}
        self._validate_schema(spec.name, arguments, schema, deferred=deferred)
        self._guard_payload_shape(spec.name, arguments)
        self._ensure_serializable(spec.name, arguments)

    def _validate_schema(
        self,
        tool: str,
        arguments: Mapping[str, Any],
        schema: Mapping[str, Any],
        *,
        deferred: Collection[str],
    ) -> None:
        required = schema.get("required") or []
        missing = [name for name in required if name not in arguments and name not in deferred]
        if missing:
            raise ToolArgumentInvalidError(f"Missing required fields for {tool}: {', '.join(missing)}")
        properties = schema.get("properties") or {}
        if schema.get("additionalProperties") is False:
            unexpected = sorted(set(arguments) - set(properties))
            if unexpected:
                raise ToolArgumentInvalidError(f"Unexpected fields for {tool}: {', '.join(unexpected)}")
        for name, value in arguments.items():
            prop = properties.get(name)
            if prop is None or value is None:
                continue
            self._check_property(tool, name, value, prop)

    def _check_property(self, tool: str, name: str, value: Any, prop: Mapping[str, Any]) -> None:
        expected = prop.get("type")
        if isinstance(expected, str) and expected in _JSON_TYPES:
            allowed = _JSON_TYPES[expected]
            # bool is an int subclass; only accept it where the schema asks for booleans.
            if isinstance(value, bool) and expected != "boolean":
                raise ToolArgumentInvalidError(f"Field '{name}' for {tool} must be {expected}")
            if not isinstance(value, allowed):
                raise ToolArgumentInvalidError(f"Field '{name}' for {tool} must be {expected}")
        choices = prop.get("enum")
        if choices and value not in choices:
            raise ToolArgumentInvalidError(
                f"Field '{name}' for {tool} must be one of {', '.join(map(str, choices))}"
            )
        minimum = prop.get("exclusiveMinimum")
        if minimum is not None and isinstance(value, (int, float)) and value <= minimum:
            raise ToolArgumentInvalidError(f"Field '{name}' for {tool} must be greater than {minimum}")
        min_items = prop.get("minItems")
        if min_items is not None and isinstance(value, (list, tuple)) and len(value) < min_items:
            raise ToolArgumentInvalidError(f"Field '{name}' for {tool} needs at least {min_items} items")

    def _guard_payload_shape(self, tool: str, arguments: Mapping[str, Any]) -> None:
        for key, value in arguments.items():
            if isinstance(value, str) and len(value) > self._max_string_length:
                logger.warning("tool_argument_too_long", tool=tool, field=key, length=len(value))
                raise ToolArgumentInvalidError(f"Field '{key}' for {tool} exceeds {self._max_string_length} characters")

    def _ensure_serializable(self, tool: str, arguments: Mapping[str, Any]) -> None:
        try:
            json.dumps(arguments, default=str)
        except (TypeError, ValueError) as exc:
            raise ToolArgumentInvalidError(f"Arguments for {tool} are not JSON serializable") from exc
