"""Bounded retry with exponential backoff and error classification."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from shared.enums import ErrorClass
from shared.errors import (
    ConflictError,
    NotFoundError,
    PermanentProviderError,
    RetryExhaustedError,
    TransientProviderError,
    ValidationError,
)
from shared.utils import config, setup_logging

logger = setup_logging("retry-policy")

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientProviderError,
    ConflictError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)
PERMANENT_ERRORS: tuple[type[BaseException], ...] = (
    PermanentProviderError,
    ValidationError,
    NotFoundError,
)


def classify(error: BaseException) -> ErrorClass:
    """Map an exception onto the retry taxonomy."""
    if isinstance(error, PERMANENT_ERRORS):
        return ErrorClass.PERMANENT
    if isinstance(error, TRANSIENT_ERRORS):
        return ErrorClass.TRANSIENT
    return ErrorClass.UNKNOWN


class RetryPolicy:
    """Retry an async unit of work a bounded number of times.

    Transient errors are retried with exponential backoff. Permanent errors
    stop immediately. Unknown errors are treated as transient until the
    attempt cap is reached, then reported as permanent.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        jitter: bool = True,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = max(0.0, base_delay)
        self.max_delay = max(self.base_delay, max_delay)
        self.jitter = jitter

    @classmethod
    def from_config(cls) -> RetryPolicy:
        return cls(
            max_attempts=int(config.get_pipeline_value("retry.max_attempts", 3)),
            base_delay=float(config.get_pipeline_value("retry.base_delay_seconds", 0.5)),
            max_delay=float(config.get_pipeline_value("retry.max_delay_seconds", 30.0)),
            jitter=bool(config.get_pipeline_value("retry.jitter", True)),
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-based)."""
        delay = min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))
        if self.jitter and delay > 0:
            delay = random.uniform(delay / 2, delay)
        return delay

    def should_retry(self, error_class: ErrorClass, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        return error_class != ErrorClass.PERMANENT

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        description: str = "operation",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> T:
        """Run ``operation`` until it succeeds or the policy gives up.

        Raises RetryExhaustedError carrying the last error and the number of attempts made.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as error:  # noqa: BLE001 - classified below
                error_class = classify(error)
                if not self.should_retry(error_class, attempt):
                    final_class = ErrorClass.PERMANENT if error_class == ErrorClass.UNKNOWN else error_class
                    logger.warning(
                        "Giving up on %s after %d attempt(s): %s (%s)",
                        description,
                        attempt,
                        error,
                        final_class.value,
                    )
                    raise RetryExhaustedError(
                        f"{description} failed after {attempt} attempt(s): {error}",
                        last_error=error,
                        attempts=attempt,
                        error_class=final_class,
                    ) from error

                delay = self.delay_for(attempt)
                logger.info(
                    "Retrying %s (attempt %d/%d) in %.2fs after %s: %s",
                    description,
                    attempt + 1,
                    self.max_attempts,
                    delay,
                    type(error).__name__,
                    error,
                )
                await sleep(delay)
