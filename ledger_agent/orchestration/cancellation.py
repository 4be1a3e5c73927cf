from __future__ import annotations

from dataclasses import dataclass

from .enums import AbortReason


class TurnCancelledError(RuntimeError):
    """Raised at a checkpoint when the owning turn has been cancelled."""

    def __init__(self, reason: AbortReason) -> None:
        super().__init__(f"Turn cancelled: {reason.value}")
        self.reason = reason


@dataclass(slots=True)
class CancellationToken:
    """Cooperative cancellation flag checked between turn phases.

    Cancelling never interrupts a tool call already handed to its handler; it
    only stops work that has not started yet.
    """

    reason: AbortReason | None = None

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def cancel(self, reason: AbortReason = AbortReason.CANCELLED) -> bool:
        if self.reason is not None:
            return False
        self.reason = reason
        return True

    def raise_if_cancelled(self) -> None:
        if self.reason is not None:
            raise TurnCancelledError(self.reason)
