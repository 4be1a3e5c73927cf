from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Iterable, Mapping

from ..core.logging import get_logger, turn_log_context
from ..core.metrics import increment_turn, track_active_turn
from ..tools.exceptions import ToolNotFoundError
from ..tools.validation import ToolArgumentValidator
from .cancellation import CancellationToken, TurnCancelledError
from .context import AgentContext
from .enums import AbortReason, AgentState, ConfirmationDecision, TurnEventType, TurnOutcome
from .executor import ExecutionOutcome, ExecutionRun, ToolExecutor
from .gate import ConfirmationError, ConfirmationGate, GateDecision, Resolution
from .planner import Planner
from .preferences import UserPreferences
from .reflector import Reflector
from .rewriter import IntentRewriter
from .risk import RiskClassifier
from .state import (
    ConfirmationRequest,
    Finished,
    Intent,
    Plan,
    ReflectionResult,
    RuntimeContext,
    SuggestedAction,
    ToolCall,
    Turn,
    TurnEvent,
    TurnResponse,
    TurnStep,
    Suspended,
)
from .state_machine import TurnStateMachine

logger = get_logger(name=__name__)

TurnListener = Callable[[TurnEvent], None]

_ABORT_MESSAGES = {
    AbortReason.REJECTED: "Okay, I won't do that. Nothing was changed.",
    AbortReason.TIMEOUT: "The confirmation expired, so nothing was changed.",
    AbortReason.CANCELLED: "Stopped. Anything not yet started was not performed.",
    AbortReason.SUPERSEDED: "Stopped to handle your new message. Anything not yet started was not performed.",
}


@dataclass(slots=True)
class _ActiveTurn:
    turn: Turn
    machine: TurnStateMachine
    token: CancellationToken
    started: float
    preferences: UserPreferences | None = None
    intent: Intent | None = None
    plan: Plan | None = None
    gate: GateDecision | None = None
    run: ExecutionRun | None = None
    response: TurnResponse | None = None
    resolving: bool = False


class TurnController:
    """Drives one conversation through the per-turn state machine.

    ``handle_message`` runs a turn until it either finishes or parks on a
    confirmation. A parked turn is continued with ``resume`` (or closed by
    ``expire_confirmation``/``cancel``). A new message while a turn is still
    open cancels that turn first; turns are never queued.
    """

    def __init__(
        self,
        context: AgentContext,
        *,
        rewriter: IntentRewriter | None = None,
        planner: Planner | None = None,
        gate: ConfirmationGate | None = None,
        executor: ToolExecutor | None = None,
        reflector: Reflector | None = None,
    ) -> None:
        settings = context.settings
        validator = ToolArgumentValidator()
        classifier = RiskClassifier(context.registry)
        self._context = context
        self._settings = settings
        self._rewriter = rewriter or IntentRewriter(context.llm, temperature=settings.llm.temperature)
        self._planner = planner or Planner(context.registry, validator=validator)
        self._gate = gate or ConfirmationGate(
            context.registry,
            classifier,
            timeout_seconds=settings.confirmation.timeout_seconds,
        )
        self._executor = executor or ToolExecutor(
            context.registry,
            limiter=context.limiter,
            validator=validator,
            max_concurrency=settings.execution.max_concurrency,
            timeout_seconds=settings.execution.tool_timeout_seconds,
        )
        self._reflector = reflector or Reflector(
            context.llm,
            use_llm=settings.reflection.use_llm,
            max_suggestions=settings.reflection.max_suggestions,
        )
        self._listeners: list[TurnListener] = []
        self._history: Deque[dict[str, str]] = deque(maxlen=settings.conversation.history_window)
        self._active: _ActiveTurn | None = None
        self._last_response: TurnResponse | None = None

    @property
    def state(self) -> AgentState:
        if self._active is None:
            return AgentState.IDLE
        return self._active.machine.state

    @property
    def active_turn(self) -> Turn | None:
        return self._active.turn if self._active is not None else None

    @property
    def pending_confirmation(self) -> ConfirmationRequest | None:
        active = self._active
        if active is None or active.resolving or active.gate is None:
            return None
        if active.machine.state is not AgentState.AWAITING_CONFIRMATION:
            return None
        return active.gate.request

    @property
    def last_response(self) -> TurnResponse | None:
        return self._last_response

    @property
    def history(self) -> list[dict[str, str]]:
        return list(self._history)

    def subscribe(self, listener: TurnListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def handle_message(
        self,
        text: str,
        *,
        attachments: Iterable[Any] = (),
        runtime_context: RuntimeContext | Mapping[str, Any] | None = None,
    ) -> TurnStep:
        if self._active is not None:
            self.cancel(AbortReason.SUPERSEDED)

        if runtime_context is None:
            context = RuntimeContext()
        elif isinstance(runtime_context, RuntimeContext):
            context = runtime_context
        else:
            context = RuntimeContext.model_validate(dict(runtime_context))
        turn = Turn(raw_input=text, runtime_context=context, attachments=tuple(attachments))
        machine = TurnStateMachine(
            turn_id=turn.turn_id,
            history_limit=self._settings.conversation.state_history_limit,
        )
        active = _ActiveTurn(turn=turn, machine=machine, token=CancellationToken(), started=time.perf_counter())
        machine.subscribe(
            lambda previous, current: self._emit(
                TurnEvent(
                    turn_id=turn.turn_id,
                    type=TurnEventType.STATE_CHANGED,
                    state=current,
                    previous_state=previous,
                )
            )
        )
        self._active = active
        track_active_turn(1)
        history = list(self._history)
        self._history.append({"role": "user", "content": text})
        logger.info("turn_started", turn_id=turn.turn_id, attachments=len(turn.attachments))
        return await self._guard(active, self._start(active, history))

    async def resume(
        self,
        request_id: str,
        decision: ConfirmationDecision | str,
        *,
        tool_name: str | None = None,
        reason: str | None = None,
    ) -> TurnStep:
        active, request = self._require_pending(request_id)
        resolution = self._gate.resolve(request, ConfirmationDecision(decision), tool_name=tool_name, reason=reason)
        # claimed before the first await so a concurrent resume sees nothing pending
        active.resolving = True
        return await self._guard(active, self._apply_resolution(active, resolution))

    async def expire_confirmation(self) -> TurnStep | None:
        """Treat the pending confirmation as timed out; a no-op when nothing is pending."""
        request = self.pending_confirmation
        if request is None or self._active is None:
            return None
        active = self._active
        active.resolving = True
        return await self._guard(active, self._apply_resolution(active, self._gate.expire(request)))

    def cancel(self, reason: AbortReason = AbortReason.CANCELLED) -> TurnResponse | None:
        active = self._active
        if active is None or active.machine.terminal:
            return None
        if not active.token.cancel(reason):
            return active.response
        if active.run is not None and active.machine.state is AgentState.AWAITING_CONFIRMATION:
            active.run.discard()
        logger.info(
            "turn_cancelled", turn_id=active.turn.turn_id, reason=reason.value, state=active.machine.state.value
        )
        finished = self._finish(
            active,
            outcome=TurnOutcome.ABORTED,
            message=_ABORT_MESSAGES[reason],
            abort_reason=reason,
        )
        return finished.response

    async def _guard(self, active: _ActiveTurn, step: Awaitable[TurnStep]) -> TurnStep:
        with turn_log_context(active.turn.turn_id):
            try:
                return await step
            except TurnCancelledError:
                if active.response is None:
                    return self._finish(
                        active,
                        outcome=TurnOutcome.ABORTED,
                        message=_ABORT_MESSAGES[active.token.reason or AbortReason.CANCELLED],
                        abort_reason=active.token.reason or AbortReason.CANCELLED,
                    )
                return Finished(active.response)
            except ToolNotFoundError as exc:
                logger.error("turn_registry_mismatch", turn_id=active.turn.turn_id, error=str(exc))
                self._fail(active, "This request needs a tool that is not available.")
                raise
            except Exception as exc:
                logger.exception("turn_failed", turn_id=active.turn.turn_id, state=active.machine.state.value)
                message = f"Something went wrong while handling your request ({exc.__class__.__name__})."
                return self._fail(active, message)

    async def _start(self, active: _ActiveTurn, history: list[dict[str, str]]) -> TurnStep:
        machine = active.machine
        machine.transition(AgentState.PARSING)
        preferences = await self._context.preferences.get()
        active.preferences = preferences
        active.token.raise_if_cancelled()

        decision = await self._rewriter.rewrite(
            active.turn.raw_input,
            thresholds=preferences.thresholds,
            runtime_context=active.turn.runtime_context,
            history=history,
        )
        active.token.raise_if_cancelled()
        active.intent = decision.intent
        if not decision.should_plan:
            question = decision.clarifying_question
            return self._finish(
                active,
                outcome=TurnOutcome.CLARIFY,
                message=question or "",
                clarifying_question=question,
            )

        machine.transition(AgentState.PLANNING)
        plan = self._planner.plan(decision.intent, runtime_context=active.turn.runtime_context)
        active.plan = plan
        self._emit(
            TurnEvent(
                turn_id=active.turn.turn_id,
                type=TurnEventType.PLAN_READY,
                state=machine.state,
                payload=plan.to_dict(),
            )
        )
        if plan.empty:
            machine.transition(AgentState.REFLECTING)
            return await self._reflect(active, None)

        gate = self._gate.evaluate(plan, preferences, turn_id=active.turn.turn_id)
        active.gate = gate
        if gate.request is not None:
            active.run = self._executor.start(plan, active.token)
            if self._settings.confirmation.read_ahead:
                active.run.dispatch(self._gate.read_ahead(plan, gate))
            machine.transition(AgentState.AWAITING_CONFIRMATION)
            self._emit(
                TurnEvent(
                    turn_id=active.turn.turn_id,
                    type=TurnEventType.CONFIRMATION_REQUIRED,
                    state=machine.state,
                    payload=gate.request.to_dict(),
                )
            )
            return Suspended(gate.request)

        machine.transition(AgentState.EXECUTING)
        return await self._execute(active)

    async def _apply_resolution(self, active: _ActiveTurn, resolution: Resolution) -> TurnStep:
        if not resolution.approved:
            if active.run is not None:
                active.run.discard()
            reason = resolution.abort_reason or AbortReason.REJECTED
            message = _ABORT_MESSAGES[reason]
            if resolution.reason and reason is AbortReason.REJECTED:
                message = f"{message} ({resolution.reason})"
            return self._finish(active, outcome=TurnOutcome.ABORTED, message=message, abort_reason=reason)
        await self._gate.commit(resolution, self._context.preferences)
        active.token.raise_if_cancelled()
        active.machine.transition(AgentState.EXECUTING, note=resolution.decision.value)
        return await self._execute(active)

    async def _execute(self, active: _ActiveTurn) -> TurnStep:
        assert active.plan is not None
        run = active.run or self._executor.start(active.plan, active.token)
        active.run = run
        run.dispatch(range(len(active.plan.calls)))
        outcome = await run.settle()
        active.token.raise_if_cancelled()
        if outcome.unrecoverable is not None:
            logger.error(
                "turn_unrecoverable_tool_error",
                turn_id=active.turn.turn_id,
                error=str(outcome.unrecoverable),
            )
            return self._fail(
                active,
                f"The ledger service failed and the request was stopped: {outcome.unrecoverable}",
                results=self._results(active, outcome),
            )
        active.machine.transition(AgentState.REFLECTING)
        return await self._reflect(active, outcome)

    async def _reflect(self, active: _ActiveTurn, outcome: ExecutionOutcome | None) -> TurnStep:
        assert active.intent is not None and active.plan is not None and active.preferences is not None
        thresholds = active.preferences.thresholds
        results = self._results(active, outcome)
        if not self._settings.reflection.enabled:
            return self._finish(
                active,
                outcome=TurnOutcome.COMPLETED,
                message=_summarize(active.plan, results, None),
                results=results,
            )
        reflection = await self._reflector.reflect(active.intent, active.plan, outcome, thresholds=thresholds)
        active.token.raise_if_cancelled()
        if reflection.needs_clarification or reflection.confidence < thresholds.reflector_low:
            return self._finish(
                active,
                outcome=TurnOutcome.CLARIFY,
                message=reflection.clarifying_message or _summarize(active.plan, results, reflection),
                results=results,
                clarifying_question=reflection.clarifying_message,
                reflection=reflection,
            )
        return self._finish(
            active,
            outcome=TurnOutcome.COMPLETED,
            message=_summarize(active.plan, results, reflection),
            results=results,
            suggestions=reflection.suggested_actions,
            reflection=reflection,
        )

    def _results(self, active: _ActiveTurn, outcome: ExecutionOutcome | None) -> tuple[ToolCall, ...]:
        executed = outcome.calls if outcome is not None else ()
        rejected = active.plan.rejected if active.plan is not None else ()
        return tuple(sorted((*executed, *rejected), key=lambda call: call.order))

    def _fail(self, active: _ActiveTurn, message: str, *, results: tuple[ToolCall, ...] = ()) -> Finished:
        if active.response is not None:
            return Finished(active.response)
        if active.machine.can_transition(AgentState.ERROR):
            active.machine.transition(AgentState.ERROR)
        return self._finish(active, outcome=TurnOutcome.FAILED, message=message, results=results)

    def _finish(
        self,
        active: _ActiveTurn,
        *,
        outcome: TurnOutcome,
        message: str,
        results: tuple[ToolCall, ...] = (),
        clarifying_question: str | None = None,
        suggestions: tuple[SuggestedAction, ...] = (),
        abort_reason: AbortReason | None = None,
        reflection: ReflectionResult | None = None,
    ) -> Finished:
        if active.response is not None:
            return Finished(active.response)
        if not active.machine.terminal:
            active.machine.transition(AgentState.COMPLETED, note=outcome.value)
        response = TurnResponse(
            turn_id=active.turn.turn_id,
            outcome=outcome,
            message=message,
            results=results,
            clarifying_question=clarifying_question,
            suggested_actions=suggestions,
            abort_reason=abort_reason,
            caveat=bool(active.intent and active.intent.caveat),
            reflection=reflection,
        )
        active.response = response
        self._last_response = response
        if message:
            self._history.append({"role": "assistant", "content": message})
        track_active_turn(-1)
        increment_turn(outcome=outcome.value, latency=time.perf_counter() - active.started)
        logger.info(
            "turn_completed",
            turn_id=active.turn.turn_id,
            outcome=outcome.value,
            abort_reason=abort_reason.value if abort_reason else None,
            results=len(results),
        )
        self._emit(
            TurnEvent(
                turn_id=active.turn.turn_id,
                type=TurnEventType.RESPONSE_READY,
                state=AgentState.COMPLETED,
                payload=response.to_dict(),
            )
        )
        if self._active is active:
            self._active = None
            self._emit(
                TurnEvent(
                    turn_id=active.turn.turn_id,
                    type=TurnEventType.STATE_CHANGED,
                    state=AgentState.IDLE,
                    previous_state=AgentState.COMPLETED,
                )
            )
        return Finished(response)

    def _require_pending(self, request_id: str) -> tuple[_ActiveTurn, ConfirmationRequest]:
        request = self.pending_confirmation
        if request is None or self._active is None:
            raise ConfirmationError("No confirmation is pending")
        if request.request_id != request_id:
            raise ConfirmationError(f"Confirmation {request_id} is not the pending request")
        return self._active, request

    def _emit(self, event: TurnEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("turn_listener_failed", turn_id=event.turn_id, event_type=event.type.value)


def _summarize(plan: Plan, results: tuple[ToolCall, ...], reflection: ReflectionResult | None) -> str:
    if not results:
        return plan.note or "Got it."
    succeeded = [call for call in results if call.error is None]
    parts = [f"Completed {len(succeeded)} of {len(results)} actions."]
    if reflection is not None and reflection.warning:
        parts.append(reflection.warning)
    return " ".join(parts)


__all__ = ["TurnController", "TurnListener"]
