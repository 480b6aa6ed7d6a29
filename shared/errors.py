"""
Exception taxonomy shared by every orchestration component.
"""

from typing import Any

from shared.enums import ErrorClass


class OrchestrationError(Exception):
    """Base class for all orchestration errors."""

    def __init__(self, message: str, *, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message, **self.detail}


class ValidationError(OrchestrationError):
    """Bad input. Rejected synchronously and never retried."""


class NotFoundError(OrchestrationError):
    """Unknown identifier."""


class ConflictError(OrchestrationError):
    """Concurrent update race or invalid state change. Re-fetch and retry."""


class ProviderError(OrchestrationError):
    """Raised by the provider gateway."""


class TransientProviderError(ProviderError):
    """Retryable provider failure."""


class ProviderUnavailableError(TransientProviderError):
    """Provider could not be reached or returned a server error."""


class ProviderTimeoutError(TransientProviderError, TimeoutError):
    """Operation exceeded its capability-specific maximum wait."""


class PermanentProviderError(ProviderError):
    """Non-retryable provider failure."""


class ProviderRejectedError(PermanentProviderError):
    """Provider rejected the payload as invalid."""


class RetryExhaustedError(OrchestrationError):
    """A unit of work ran out of attempts or failed permanently."""

    def __init__(self, message: str, *, last_error: BaseException, attempts: int, error_class: ErrorClass) -> None:
        super().__init__(message, detail={"attempts": attempts, "error_class": error_class.value})
        self.last_error = last_error
        self.attempts = attempts
        self.error_class = error_class


def describe_error(exc: BaseException) -> dict[str, Any]:
    """Render an exception as the error detail stored on a transaction."""
    if isinstance(exc, RetryExhaustedError):
        inner = describe_error(exc.last_error)
        inner["attempts"] = exc.attempts
        inner["error_class"] = exc.error_class.value
        return inner
    if isinstance(exc, OrchestrationError):
        return exc.to_dict()
    return {"error": type(exc).__name__, "message": str(exc)}


class DispatchFailedError(OrchestrationError):
    """Submitting a recorded operation to its provider failed for good."""

    def __init__(self, handle: Any, cause: BaseException) -> None:
        super().__init__(
            f"Dispatch of {getattr(handle, 'capability', 'operation')} failed: {cause}",
            detail={"handle_id": getattr(handle, "handle_id", None)},
        )
        self.handle = handle
        self.cause = cause
