"""Outbound job notifications.

Every event is appended to a redis list (the durable audit sink) and pushed to
WebSocket subscribers of the job. The list write is the delivery that counts:
it is retried under the retry policy and quarantined once exhausted. WebSocket
fan-out is best effort.
"""

from __future__ import annotations

from typing import Any

from services.queue import QueueManager
from services.retry.policy import RetryPolicy
from services.store import JobStore
from shared.enums import DeadLetterKind, EventType
from shared.errors import RetryExhaustedError, describe_error
from shared.models import NotificationEvent
from shared.utils import config, serialize_value, setup_logging, utcnow

from .stream import JobEventStreamManager, event_stream

logger = setup_logging("notifications")


class NotificationPublisher:
    """Emit job lifecycle events to the audit queue and live subscribers."""

    def __init__(
        self,
        store: JobStore | None = None,
        queue: QueueManager | None = None,
        stream: JobEventStreamManager | None = None,
        retry_policy: RetryPolicy | None = None,
        queue_key: str | None = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self.stream = stream or event_stream
        self.retry_policy = retry_policy or RetryPolicy.from_config()
        self.queue_key = queue_key or config.get("notification_queue", "orchestration:notifications")

    @property
    def store(self) -> JobStore:
        if self._store is None:
            self._store = JobStore()
        return self._store

    @store.setter
    def store(self, value: JobStore) -> None:
        self._store = value

    @property
    def queue(self) -> QueueManager:
        if self._queue is None:
            self._queue = QueueManager()
        return self._queue

    @queue.setter
    def queue(self, value: QueueManager) -> None:
        self._queue = value

    async def publish(self, job_id: str, event_type: EventType, detail: dict[str, Any] | None = None) -> bool:
        """Publish an event. Returns False when it had to be quarantined instead."""
        event = NotificationEvent(
            job_id=job_id,
            event_type=event_type,
            timestamp=utcnow(),
            detail=serialize_value(detail or {}),
        )
        payload = serialize_value(event.model_dump())

        async def _append() -> None:
            self.queue.enqueue_json(self.queue_key, payload)

        try:
            await self.retry_policy.execute(_append, description=f"notification {event_type.value} for job {job_id}")
        except RetryExhaustedError as exc:
            self.store.quarantine(
                DeadLetterKind.NOTIFICATION,
                f"{job_id}:{event_type.value}",
                job_id=job_id,
                payload=payload,
                error_class=exc.error_class,
                error_detail=describe_error(exc),
                attempts=exc.attempts,
            )
            logger.error(
                "ALERT notification %s for job %s quarantined after %d attempt(s): %s",
                event_type.value,
                job_id,
                exc.attempts,
                exc.last_error,
            )
            return False

        delivered = await self.stream.send_job_event(job_id, payload)
        logger.info("Published %s for job %s (%d live subscriber(s))", event_type.value, job_id, delivered)
        return True

    def drain(self, limit: int = 100) -> list[dict[str, Any]]:
        """Pop up to ``limit`` events from the audit queue (oldest first)."""
        events: list[dict[str, Any]] = []
        while len(events) < limit:
            item = self.queue.dequeue_json(self.queue_key)
            if item is None:
                break
            events.append(item)
        return events
