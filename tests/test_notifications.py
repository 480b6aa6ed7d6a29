"""Tests for job notifications: audit queue delivery, live fan-out and quarantine."""

from unittest.mock import patch

import pytest

from services.notifications import JobEventStreamManager, NotificationPublisher
from services.queue import QueueManager
from services.retry import RetryPolicy
from services.store import JobStore
from shared.enums import DeadLetterKind, ErrorClass, EventType


class StubWebSocket:
    def __init__(self) -> None:
        self.sent_messages = []

    async def accept(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def send_json(self, message: dict) -> None:
        self.sent_messages.append(message)


@pytest.fixture
def stream() -> JobEventStreamManager:
    return JobEventStreamManager()


@pytest.fixture
def publisher(store: JobStore, queue: QueueManager, stream: JobEventStreamManager) -> NotificationPublisher:
    return NotificationPublisher(
        store=store,
        queue=queue,
        stream=stream,
        retry_policy=RetryPolicy(max_attempts=2, base_delay=0, jitter=False),
    )


class TestPublish:
    @pytest.mark.asyncio
    async def test_event_reaches_queue_and_subscribers(
        self, publisher: NotificationPublisher, stream: JobEventStreamManager
    ) -> None:
        websocket = StubWebSocket()
        client_id = await stream.connect(websocket, "watcher")
        await stream.subscribe(client_id, "job-1")

        assert await publisher.publish("job-1", EventType.JOB_COMPLETED, {"failed_transactions": 0}) is True

        queued = publisher.drain()
        assert len(queued) == 1
        assert queued[0]["job_id"] == "job-1"
        assert queued[0]["event_type"] == "job_completed"
        assert queued[0]["detail"] == {"failed_transactions": 0}
        assert websocket.sent_messages == queued

    @pytest.mark.asyncio
    async def test_events_for_other_jobs_are_not_streamed(
        self, publisher: NotificationPublisher, stream: JobEventStreamManager
    ) -> None:
        websocket = StubWebSocket()
        client_id = await stream.connect(websocket, "watcher")
        await stream.subscribe(client_id, "job-1")

        await publisher.publish("job-2", EventType.JOB_CANCELLED)

        assert websocket.sent_messages == []
        assert [e["job_id"] for e in publisher.drain()] == ["job-2"]

    @pytest.mark.asyncio
    async def test_drain_respects_limit(self, publisher: NotificationPublisher) -> None:
        for _ in range(3):
            await publisher.publish("job-1", EventType.REVIEW_CASE_CREATED)

        assert len(publisher.drain(limit=2)) == 2
        assert len(publisher.drain()) == 1
        assert publisher.drain() == []


class TestQuarantine:
    @pytest.mark.asyncio
    async def test_unreachable_queue_quarantines_event(
        self, publisher: NotificationPublisher, queue: QueueManager, store: JobStore, stream: JobEventStreamManager
    ) -> None:
        websocket = StubWebSocket()
        client_id = await stream.connect(websocket, "watcher")
        await stream.subscribe(client_id, "job-9")

        with patch.object(queue, "enqueue", side_effect=ConnectionError("redis down")) as enqueue:
            delivered = await publisher.publish("job-9", EventType.JOB_FAILED, {"reason": "fail_fast"})

        assert delivered is False
        assert enqueue.call_count == 2
        assert websocket.sent_messages == []
        letters = store.list_dead_letters(job_id="job-9")
        assert len(letters) == 1
        assert letters[0].kind == DeadLetterKind.NOTIFICATION
        assert letters[0].reference_id == "job-9:job_failed"
        assert letters[0].error_class == ErrorClass.TRANSIENT
        assert letters[0].attempts == 2
        assert letters[0].payload["detail"] == {"reason": "fail_fast"}
