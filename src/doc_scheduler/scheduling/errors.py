"""
Exception hierarchy for the scheduling core.

Every error carries a ``kind`` that is surfaced to callers as the operation's
``error_kind`` together with a human-readable message.
"""

from typing import Any


class ConversionError(Exception):
    """Base class for all scheduling and conversion errors."""

    kind = "ConversionError"
    retryable = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class TransientIOError(ConversionError):
    """Network or storage hiccup. Retried with backoff."""

    kind = "TransientIOError"
    retryable = True


class ResourceExhaustedError(ConversionError):
    """Memory pressure during conversion.

    Triggers an immediate concurrency reduction and a requeue that does not
    consume the job's retry budget.
    """

    kind = "ResourceExhaustedError"


class UnrecoverableInputError(ConversionError):
    """Malformed or corrupt input. Never retried."""

    kind = "UnrecoverableInputError"


class PartialChunkFailure(ConversionError):
    """Too many chunks failed and the whole-document fallback failed as well."""

    kind = "PartialChunkFailure"

    def __init__(
        self,
        message: str,
        failed_indices: list[int] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        if failed_indices is not None:
            details["failed_indices"] = list(failed_indices)
        super().__init__(message, details)


class OperationNotFoundError(ConversionError):
    kind = "OperationNotFound"

    def __init__(self, operation_id: str, details: dict[str, Any] | None = None) -> None:
        details = details or {}
        details["operation_id"] = operation_id
        super().__init__(f"Operation not found: {operation_id}", details)


class ResultNotReadyError(ConversionError):
    kind = "NotReady"

    def __init__(self, operation_id: str, status: str) -> None:
        super().__init__(
            f"Result of operation {operation_id} is not available (status: {status})",
            {"operation_id": operation_id, "status": status},
        )


class InvalidTransitionError(ConversionError):
    """Raised when a state machine is asked for a transition it does not allow."""

    kind = "InvalidTransition"

    def __init__(self, current: str, target: str, details: dict[str, Any] | None = None) -> None:
        details = details or {}
        details.update({"current": current, "target": target})
        super().__init__(f"Transition {current} -> {target} is not allowed", details)


def classify_error(exc: BaseException) -> ConversionError:
    """Map an arbitrary exception raised by a collaborator onto the taxonomy."""
    if isinstance(exc, ConversionError):
        return exc
    if isinstance(exc, MemoryError):
        return ResourceExhaustedError(str(exc) or "out of memory")
    if isinstance(exc, (FileNotFoundError, IsADirectoryError, PermissionError)):
        return UnrecoverableInputError(str(exc), {"exception": type(exc).__name__})
    if isinstance(exc, (TimeoutError, ConnectionError, OSError)):
        return TransientIOError(str(exc) or type(exc).__name__)
    return UnrecoverableInputError(str(exc) or type(exc).__name__, {"exception": type(exc).__name__})
