"""Quarantine for work that ran out of attempts or failed permanently."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from services.store import JobStore
from shared.enums import DeadLetterKind, ErrorClass, EventType
from shared.errors import RetryExhaustedError, describe_error
from shared.models import DeadLetter
from shared.utils import serialize_value, setup_logging

if TYPE_CHECKING:
    from services.notifications import NotificationPublisher

logger = setup_logging("dead-letter-queue")


class DeadLetterQueue:
    """Persist failed work with its error, raise an operator alert and notify subscribers."""

    def __init__(self, store: JobStore | None = None, notifications: NotificationPublisher | None = None) -> None:
        self._store = store
        self._notifications = notifications

    @property
    def store(self) -> JobStore:
        if self._store is None:
            self._store = JobStore()
        return self._store

    @store.setter
    def store(self, value: JobStore) -> None:
        self._store = value

    @property
    def notifications(self) -> NotificationPublisher:
        if self._notifications is None:
            from services.notifications import NotificationPublisher

            self._notifications = NotificationPublisher(store=self.store)
        return self._notifications

    @notifications.setter
    def notifications(self, value: NotificationPublisher) -> None:
        self._notifications = value

    async def quarantine(
        self,
        kind: DeadLetterKind,
        reference_id: str,
        error: BaseException,
        *,
        job_id: str | None = None,
        payload: dict[str, Any] | None = None,
        attempts: int | None = None,
    ) -> DeadLetter:
        if isinstance(error, RetryExhaustedError):
            error_class = error.error_class
            attempt_count = attempts if attempts is not None else error.attempts
        else:
            error_class = ErrorClass.PERMANENT
            attempt_count = attempts if attempts is not None else 1

        letter = self.store.quarantine(
            kind,
            reference_id,
            job_id=job_id,
            payload=serialize_value(payload or {}),
            error_class=error_class,
            error_detail=describe_error(error),
            attempts=attempt_count,
        )
        logger.error(
            "ALERT %s %s quarantined as %s after %d attempt(s) (job=%s): %s",
            kind.value,
            reference_id,
            letter.dead_letter_id,
            attempt_count,
            job_id,
            error,
        )
        if job_id:
            await self.notifications.publish(
                job_id,
                EventType.QUARANTINED,
                {"dead_letter_id": letter.dead_letter_id, "kind": kind.value, "reference_id": reference_id},
            )
        return letter

    def list(self, *, acknowledged: bool | None = False, job_id: str | None = None) -> list[DeadLetter]:
        return self.store.list_dead_letters(acknowledged=acknowledged, job_id=job_id)

    def acknowledge(self, dead_letter_id: str) -> DeadLetter:
        letter = self.store.acknowledge_dead_letter(dead_letter_id)
        logger.info("Dead letter %s acknowledged", dead_letter_id)
        return letter
