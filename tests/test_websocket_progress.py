import pytest

from services.notifications import JobEventStreamManager


class StubWebSocket:
    def __init__(self, fail_sends: bool = False) -> None:
        self.accepted = False
        self.closed = False
        self.fail_sends = fail_sends
        self.sent_messages = []

    async def accept(self) -> None:
        self.accepted = True

    async def close(self) -> None:
        self.closed = True

    async def send_json(self, message: dict) -> None:
        if self.fail_sends:
            raise RuntimeError("socket closed")
        self.sent_messages.append(message)


@pytest.mark.asyncio
async def test_stream_ignores_jobs_without_subscribers() -> None:
    manager = JobEventStreamManager()
    websocket = StubWebSocket()

    client_id = await manager.connect(websocket, "client-test")
    assert websocket.accepted is True

    await manager.subscribe(client_id, "job-existing")

    assert await manager.send_job_event("job-missing", {"job_id": "job-missing"}) == 0
    assert websocket.sent_messages == []

    await manager.unsubscribe(client_id, "job-missing")
    assert await manager.send_job_event("job-existing", {"job_id": "job-existing"}) == 1
    assert websocket.sent_messages == [{"job_id": "job-existing"}]

    await manager.disconnect(client_id)
    assert websocket.closed is True
    assert manager.connection_count == 0


@pytest.mark.asyncio
async def test_stream_broadcast_and_unsubscribe() -> None:
    manager = JobEventStreamManager()
    websocket = StubWebSocket()
    client_id = await manager.connect(websocket, None)
    await manager.subscribe(client_id, "job-456")

    await manager.send_job_event("job-456", {"job_id": "job-456", "event_type": "job_completed"})
    assert websocket.sent_messages == [{"job_id": "job-456", "event_type": "job_completed"}]

    await manager.unsubscribe(client_id, "job-456")
    await manager.send_job_event("job-456", {"job_id": "job-456", "event_type": "job_failed"})
    assert len(websocket.sent_messages) == 1

    assert await manager.broadcast({"event": "ping"}) == 1
    assert websocket.sent_messages[-1] == {"event": "ping"}


@pytest.mark.asyncio
async def test_stream_drops_clients_that_fail() -> None:
    manager = JobEventStreamManager()
    healthy, broken = StubWebSocket(), StubWebSocket(fail_sends=True)
    healthy_id = await manager.connect(healthy, "healthy")
    broken_id = await manager.connect(broken, "broken")
    await manager.subscribe(healthy_id, "job-1")
    await manager.subscribe(broken_id, "job-1")

    assert await manager.send_job_event("job-1", {"job_id": "job-1"}) == 1

    assert manager.connection_count == 1
    assert broken.closed is True
    assert healthy.sent_messages == [{"job_id": "job-1"}]


@pytest.mark.asyncio
async def test_subscribe_requires_connection() -> None:
    manager = JobEventStreamManager()

    with pytest.raises(RuntimeError):
        await manager.subscribe("ghost", "job-1")
