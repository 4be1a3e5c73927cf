from __future__ import annotations


class ToolError(RuntimeError):
    """Base class for tooling-related failures."""


class ToolNotFoundError(ToolError):
    """Raised when a requested tool cannot be resolved."""


class ToolArgumentInvalidError(ToolError, ValueError):
    """Raised when tool arguments violate the registry contract."""


class ToolExecutionFailedError(ToolError):
    """Raised by a tool handler when the backend reports a failure."""

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code


class ToolTimeoutError(ToolExecutionFailedError):
    """Raised when a tool invocation exceeds the configured timeout."""


class ToolRateLimitedError(ToolError):
    """Raised when a tool is called more often than its permission allows."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class UnrecoverableToolError(ToolExecutionFailedError):
    """Raised when a tool failure leaves the ledger backend unusable for the rest of the turn."""
