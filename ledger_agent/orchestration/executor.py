from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from ..core.logging import get_logger
from ..core.metrics import increment_tool_call
from ..tools.exceptions import (
    ToolArgumentInvalidError,
    ToolError,
    ToolRateLimitedError,
    ToolTimeoutError,
    UnrecoverableToolError,
)
from ..tools.rate_limit import ToolCallLimiter
from ..tools.registry import ToolRegistry
from ..tools.validation import ToolArgumentValidator
from .cancellation import CancellationToken
from .enums import CallStatus, ErrorKind
from .state import ArgBinding, Plan, ToolCall

logger = get_logger(name=__name__)

_WRAPPER_KEYS = ("items", "data", "results", "content")


class BindingError(LookupError):
    """Raised when a bound argument cannot be read from its source payload."""


@dataclass(slots=True)
class ExecutionOutcome:
    calls: tuple[ToolCall, ...]
    unrecoverable: UnrecoverableToolError | None = None

    @property
    def failures(self) -> tuple[ToolCall, ...]:
        return tuple(call for call in self.calls if call.status in {CallStatus.FAILURE, CallStatus.SKIPPED})

    @property
    def dependency_failures(self) -> tuple[ToolCall, ...]:
        """Calls that never ran because something they consumed failed."""
        return tuple(
            call
            for call in self.calls
            if call.error is not None
            and call.error.kind in {ErrorKind.DEPENDENCY_FAILED, ErrorKind.BINDING_UNRESOLVED}
        )


class ExecutionRun:
    """Tasks for one plan; calls may be dispatched in several waves (read-ahead, then approved)."""

    def __init__(self, executor: "ToolExecutor", plan: Plan, token: CancellationToken) -> None:
        self._executor = executor
        self.plan = plan
        self.token = token
        self._tasks: dict[int, asyncio.Task[ToolCall]] = {}
        self._semaphore = asyncio.Semaphore(executor.max_concurrency)
        self.unrecoverable: UnrecoverableToolError | None = None

    def dispatch(self, indices: Iterable[int]) -> None:
        for index in sorted(set(indices)):
            if index in self._tasks:
                continue
            call = self.plan.calls[index]
            missing = [dep for dep in call.depends_on if dep not in self._tasks]
            if missing:
                raise RuntimeError(
                    f"Call {index} ({call.tool_name}) dispatched before its dependencies {missing}"
                )
            self._tasks[index] = asyncio.create_task(
                self._executor._run_call(self, call, [self._tasks[dep] for dep in call.depends_on]),
                name=f"tool:{call.tool_name}:{index}",
            )

    async def settle(self) -> ExecutionOutcome:
        if self._tasks:
            await asyncio.wait(list(self._tasks.values()))
        for task in self._tasks.values():
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()  # type: ignore[misc]
        calls = tuple(self.plan.calls[index] for index in sorted(self._tasks))
        return ExecutionOutcome(calls=calls, unrecoverable=self.unrecoverable)

    def discard(self) -> None:
        """Drop results of calls run ahead of a confirmation that was not granted."""
        for index, task in self._tasks.items():
            if not task.done():
                task.cancel()
            logger.debug("tool_call_discarded", tool=self.plan.calls[index].tool_name, index=index)
        self._tasks.clear()


class ToolExecutor:
    """Runs approved calls against their registry handlers.

    Independent calls run concurrently up to ``max_concurrency``; a call waits
    for every call it depends on and is skipped when any of them failed.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        limiter: ToolCallLimiter | None = None,
        validator: ToolArgumentValidator | None = None,
        max_concurrency: int = 3,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._registry = registry
        self._limiter = limiter or ToolCallLimiter()
        self._validator = validator or ToolArgumentValidator()
        self.max_concurrency = max(1, max_concurrency)
        self._timeout = timeout_seconds

    def start(self, plan: Plan, token: CancellationToken | None = None) -> ExecutionRun:
        return ExecutionRun(self, plan, token or CancellationToken())

    async def execute(
        self,
        plan: Plan,
        *,
        token: CancellationToken | None = None,
        indices: Sequence[int] | None = None,
    ) -> ExecutionOutcome:
        run = self.start(plan, token)
        run.dispatch(range(len(plan.calls)) if indices is None else indices)
        return await run.settle()

    async def _run_call(
        self,
        run: ExecutionRun,
        call: ToolCall,
        dependencies: Sequence[asyncio.Task[ToolCall]],
    ) -> ToolCall:
        for dependency in dependencies:
            upstream = await asyncio.shield(dependency)
            if upstream.status is not CallStatus.SUCCESS:
                call.fail(
                    ErrorKind.DEPENDENCY_FAILED,
                    f"Skipped because {upstream.tool_name} did not succeed",
                    skipped=True,
                )
                self._finish(call)
                return call
        if run.token.cancelled:
            call.fail(ErrorKind.CANCELLED, "Turn was cancelled before this call started", skipped=True)
            self._finish(call)
            return call

        entry = self._registry.require(call.tool_name)
        try:
            arguments = self._bind_arguments(run.plan, call)
        except BindingError as exc:
            call.fail(ErrorKind.BINDING_UNRESOLVED, str(exc))
            self._finish(call)
            return call
        try:
            self._validator.validate(entry.spec, arguments)
            self._limiter.check(entry.spec)
        except ToolArgumentInvalidError as exc:
            call.fail(ErrorKind.TOOL_ARGUMENT_INVALID, str(exc))
            self._finish(call)
            return call
        except ToolRateLimitedError as exc:
            call.fail(ErrorKind.RATE_LIMITED, str(exc))
            self._finish(call)
            return call

        async with run._semaphore:
            if run.token.cancelled:
                call.fail(ErrorKind.CANCELLED, "Turn was cancelled before this call started", skipped=True)
                self._finish(call)
                return call
            self._limiter.record(entry.spec)
            started = time.perf_counter()
            try:
                payload = await asyncio.wait_for(entry.execute(arguments), timeout=self._timeout)
            except asyncio.TimeoutError:
                call.fail(ErrorKind.TOOL_TIMEOUT, f"{call.tool_name} timed out after {self._timeout} seconds")
            except ToolTimeoutError as exc:
                call.fail(ErrorKind.TOOL_TIMEOUT, str(exc))
            except UnrecoverableToolError as exc:
                run.unrecoverable = run.unrecoverable or exc
                call.fail(ErrorKind.TOOL_EXECUTION_FAILED, str(exc))
            except ToolError as exc:
                call.fail(ErrorKind.TOOL_EXECUTION_FAILED, str(exc))
            except Exception as exc:
                logger.exception("tool_call_crashed", tool=call.tool_name, index=call.index)
                call.fail(ErrorKind.TOOL_EXECUTION_FAILED, str(exc) or exc.__class__.__name__)
            else:
                call.succeed(payload)
            self._finish(call, latency=time.perf_counter() - started)
        return call

    def _bind_arguments(self, plan: Plan, call: ToolCall) -> dict[str, Any]:
        arguments = dict(call.arguments)
        for name, binding in call.bindings.items():
            arguments[name] = resolve_binding(plan, binding)
        return arguments

    def _finish(self, call: ToolCall, *, latency: float | None = None) -> None:
        increment_tool_call(tool=call.tool_name, status=call.status.value, latency=latency)
        if call.status is CallStatus.SUCCESS:
            logger.info("tool_call_succeeded", tool=call.tool_name, index=call.index, latency=latency)
        else:
            logger.warning(
                "tool_call_failed",
                tool=call.tool_name,
                index=call.index,
                status=call.status.value,
                error=call.error.to_dict() if call.error else None,
            )


def resolve_binding(plan: Plan, binding: ArgBinding) -> Any:
    source = plan.calls[binding.source]
    if source.status is not CallStatus.SUCCESS:
        raise BindingError(f"{source.tool_name} has no result to read '{binding.path}' from")
    try:
        return _resolve_path(source.result, binding.path)
    except (LookupError, TypeError, ValueError) as exc:
        raise BindingError(f"Could not read '{binding.path}' from {source.tool_name}: nothing matched") from exc


def _resolve_path(payload: Any, path: str) -> Any:
    current = payload
    for segment in path.split("."):
        if segment.isdigit():
            if isinstance(current, Mapping):
                current = next(
                    (current[key] for key in _WRAPPER_KEYS if isinstance(current.get(key), (list, tuple))),
                    current,
                )
            if not isinstance(current, (list, tuple)):
                raise TypeError(f"Expected a list at '{segment}'")
            current = current[int(segment)]
        else:
            if not isinstance(current, Mapping):
                raise TypeError(f"Expected an object at '{segment}'")
            current = current[segment]
    if current is None:
        raise ValueError("Bound value is empty")
    return current


__all__ = ["BindingError", "ExecutionOutcome", "ExecutionRun", "ToolExecutor", "resolve_binding"]
