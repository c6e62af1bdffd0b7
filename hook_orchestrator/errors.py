"""Error taxonomy surfaced by the orchestrator."""

from collections.abc import Sequence


class OrchestrationError(Exception):
    """Base class for errors the orchestrator reports to callers."""

    kind = "orchestration"


class ValidationError(OrchestrationError):
    """The operation context failed required-field, type or freshness checks."""

    kind = "validation"

    def __init__(self, errors: Sequence[str], warnings: Sequence[str] = ()) -> None:
        self.errors = list(errors)
        self.warnings = list(warnings)
        super().__init__("Context validation failed: " + "; ".join(self.errors))


class ConflictError(OrchestrationError):
    """The idempotency key is currently being executed by another caller.

    Callers should retry later rather than immediately.
    """

    kind = "conflict"

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Operation already in progress for key {key}")


class HandlerError(OrchestrationError):
    """The caller-supplied main logic raised."""

    kind = "handler"

    def __init__(self, operation: str, cause: BaseException) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {type(cause).__name__}: {cause}")


class OperationCancelledError(OrchestrationError):
    """The operation was cancelled or exceeded its deadline."""

    kind = "cancelled"

    def __init__(self, operation: str, timeout: float | None = None) -> None:
        self.operation = operation
        self.timeout = timeout
        if timeout is not None:
            message = f"{operation} exceeded its {timeout:g}s deadline"
        else:
            message = f"{operation} was cancelled"
        super().__init__(message)


class ResultSerializationError(OrchestrationError):
    """The handler succeeded but its result cannot be cached faithfully.

    The idempotency key is released as failed, so a retry runs the handler
    again.
    """

    kind = "serialization"

    def __init__(self, operation: str, cause: BaseException) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} returned an uncacheable result: {cause}")
