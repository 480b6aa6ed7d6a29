import asyncio
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Generator

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

# Must be in place before database.py builds its engine
_DB_DIR = tempfile.mkdtemp(prefix="orchestration-db-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/test.db"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["PIPELINE_FLAG_RETRY_BASE_DELAY_SECONDS"] = "0"
os.environ["PIPELINE_FLAG_RETRY_JITTER"] = "false"

from database import Base, engine, init_database  # noqa: E402
from services.events import CompletionEventRouter  # noqa: E402
from services.notifications import NotificationPublisher, event_stream  # noqa: E402
from services.orchestrator import WorkflowOrchestrator  # noqa: E402
from services.providers import ProviderGateway, StubProviderBackend  # noqa: E402
from services.queue import QueueManager, redis as redis_module  # noqa: E402
from services.retry import DeadLetterQueue, RetryPolicy  # noqa: E402
from services.review import HumanReviewGate  # noqa: E402
from services.store import JobStore  # noqa: E402
from services.watchdog import TimeoutWatchdog  # noqa: E402
from shared.enums import CompletionOutcome  # noqa: E402
from shared.utils import config as service_config  # noqa: E402


class DummyRedis:
    """In-memory stand-in for the few list commands the queue uses."""

    lists: dict[str, list[str]] = {}
    fail_writes = False

    def ping(self) -> bool:
        return True

    def rpush(self, key: str, value: str) -> None:
        if DummyRedis.fail_writes:
            raise redis_module.ConnectionError("redis is down")
        DummyRedis.lists.setdefault(key, []).append(value)

    def lpop(self, key: str):
        queue = DummyRedis.lists.get(key)
        if not queue:
            return None
        value = queue.pop(0)
        if not queue:
            DummyRedis.lists.pop(key, None)
        return value

    def llen(self, key: str) -> int:
        return len(DummyRedis.lists.get(key, []))


@pytest.fixture(scope="session", autouse=True)
def fake_redis() -> Generator[None, None, None]:
    """Patch redis client to use in-memory storage for tests."""
    original_from_url = redis_module.Redis.from_url

    def fake_from_url(cls, url: str, *args, **kwargs):  # type: ignore[unused-argument]
        return DummyRedis()

    redis_module.Redis.from_url = classmethod(fake_from_url)  # type: ignore[assignment]
    try:
        yield
    finally:
        redis_module.Redis.from_url = original_from_url  # type: ignore[assignment]


@pytest.fixture(autouse=True)
def test_environment() -> Generator[None, None, None]:
    """Fresh tables, queues, pipeline config and WebSocket state per test."""
    Base.metadata.drop_all(bind=engine)
    init_database()
    DummyRedis.lists.clear()
    DummyRedis.fail_writes = False
    service_config.load_pipeline_config()

    loop = asyncio.new_event_loop()
    try:
        loop.run_until_complete(event_stream.reset())
    finally:
        loop.close()

    yield

    service_config.load_pipeline_config()


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=0, jitter=False)


@pytest.fixture
def store() -> JobStore:
    return JobStore()


@pytest.fixture
def queue() -> QueueManager:
    return QueueManager()


@pytest.fixture
def backend() -> StubProviderBackend:
    return StubProviderBackend(confidence=0.95)


@pytest.fixture
def notifications(store: JobStore, queue: QueueManager, retry_policy: RetryPolicy) -> NotificationPublisher:
    return NotificationPublisher(store=store, queue=queue, retry_policy=retry_policy)


@pytest.fixture
def dead_letters(store: JobStore, notifications: NotificationPublisher) -> DeadLetterQueue:
    return DeadLetterQueue(store=store, notifications=notifications)


@pytest.fixture
def gateway(
    store: JobStore,
    retry_policy: RetryPolicy,
    backend: StubProviderBackend,
    dead_letters: DeadLetterQueue,
) -> ProviderGateway:
    return ProviderGateway(store=store, retry_policy=retry_policy, backend=backend, dead_letters=dead_letters)


@pytest.fixture
def orchestrator(
    store: JobStore,
    gateway: ProviderGateway,
    notifications: NotificationPublisher,
    dead_letters: DeadLetterQueue,
    retry_policy: RetryPolicy,
) -> WorkflowOrchestrator:
    orchestrator = WorkflowOrchestrator(
        store=store,
        gateway=gateway,
        notifications=notifications,
        dead_letters=dead_letters,
        retry_policy=retry_policy,
    )
    orchestrator.review_gate = HumanReviewGate(store=store, orchestrator=orchestrator)
    return orchestrator


@pytest.fixture
def review_gate(orchestrator: WorkflowOrchestrator) -> HumanReviewGate:
    return orchestrator.review_gate


@pytest.fixture
def router(orchestrator: WorkflowOrchestrator, queue: QueueManager, retry_policy: RetryPolicy) -> CompletionEventRouter:
    return CompletionEventRouter(orchestrator, queue=queue, retry_policy=retry_policy)


@pytest.fixture
def watchdog(router: CompletionEventRouter, orchestrator: WorkflowOrchestrator) -> TimeoutWatchdog:
    return TimeoutWatchdog(router, orchestrator)


@pytest.fixture
def complete(router: CompletionEventRouter, store: JobStore):
    """Deliver a provider completion for the live handle of (transaction, capability)."""

    async def _complete(
        transaction_id: str,
        capability,
        outcome: CompletionOutcome = CompletionOutcome.SUCCEEDED,
        confidence: float | None = 0.95,
        result_ref: str | None = None,
        error: Any = None,
    ):
        handle = next(
            h
            for h in store.list_live_handles()
            if h.transaction_id == transaction_id and h.capability == capability
        )
        succeeded = outcome == CompletionOutcome.SUCCEEDED
        if succeeded and result_ref is None:
            result_ref = f"results://{capability.value}/{transaction_id}"
        return await router.on_completion(
            handle.provider_operation_id,
            outcome,
            result_ref=result_ref,
            error_detail=error,
            confidence=confidence if succeeded else None,
        )

    return _complete


@pytest.fixture
def drain(router: CompletionEventRouter, store: JobStore):
    """Complete every live handle of a job until nothing is outstanding."""

    async def _drain(job_id: str, confidence: float = 0.95) -> int:
        delivered = 0
        while True:
            live = store.list_live_handles(job_id=job_id)
            if not live:
                return delivered
            for handle in live:
                await router.on_completion(
                    handle.provider_operation_id,
                    CompletionOutcome.SUCCEEDED,
                    result_ref=f"results://{handle.capability.value}/{handle.transaction_id}",
                    confidence=confidence,
                )
                delivered += 1

    return _drain


@pytest.fixture
def archive_step() -> None:
    """Run the archive post-step after consolidation."""
    service_config.pipeline_config.setdefault("post_processing", {})["steps"] = ["archive"]
