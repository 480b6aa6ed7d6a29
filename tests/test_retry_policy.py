"""Tests for retry classification, backoff and dead-letter quarantine."""

import asyncio

import pytest

from services.retry import DeadLetterQueue, RetryPolicy, classify
from services.store import JobStore
from shared.enums import DeadLetterKind, ErrorClass, EventType
from shared.errors import (
    ConflictError,
    NotFoundError,
    ProviderRejectedError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RetryExhaustedError,
    ValidationError,
)


class TestClassify:
    @pytest.mark.parametrize(
        "error, expected",
        [
            (ProviderUnavailableError("down"), ErrorClass.TRANSIENT),
            (ProviderTimeoutError("slow"), ErrorClass.TRANSIENT),
            (ConflictError("race"), ErrorClass.TRANSIENT),
            (ConnectionError("reset"), ErrorClass.TRANSIENT),
            (asyncio.TimeoutError(), ErrorClass.TRANSIENT),
            (ProviderRejectedError("bad payload"), ErrorClass.PERMANENT),
            (ValidationError("bad input"), ErrorClass.PERMANENT),
            (NotFoundError("gone"), ErrorClass.PERMANENT),
            (KeyError("surprise"), ErrorClass.UNKNOWN),
        ],
    )
    def test_classification(self, error, expected) -> None:
        assert classify(error) == expected


class TestBackoff:
    def test_exponential_and_capped(self) -> None:
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=5.0, jitter=False)
        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_within_bounds(self) -> None:
        policy = RetryPolicy(max_attempts=5, base_delay=2.0, max_delay=30.0, jitter=True)
        for _ in range(20):
            assert 2.0 <= policy.delay_for(2) <= 4.0

    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_from_config(self) -> None:
        from shared.utils import config

        config.set_pipeline_config({"retry": {"max_attempts": 7, "max_delay_seconds": 9}})
        policy = RetryPolicy.from_config()
        assert policy.max_attempts == 7
        assert policy.max_delay == 9.0


class TestExecute:
    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self) -> None:
        policy = RetryPolicy(max_attempts=3, base_delay=1.0, jitter=False)
        sleeps: list[float] = []
        calls = {"count": 0}

        async def flaky() -> str:
            calls["count"] += 1
            if calls["count"] < 3:
                raise ProviderUnavailableError("503")
            return "ok"

        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)

        assert await policy.execute(flaky, sleep=fake_sleep) == "ok"
        assert calls["count"] == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_attempts_are_bounded(self) -> None:
        policy = RetryPolicy(max_attempts=3, base_delay=0, jitter=False)
        calls = {"count": 0}

        async def always_down() -> None:
            calls["count"] += 1
            raise ProviderUnavailableError("503")

        with pytest.raises(RetryExhaustedError) as exc_info:
            await policy.execute(always_down)

        assert calls["count"] == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.error_class == ErrorClass.TRANSIENT
        assert isinstance(exc_info.value.last_error, ProviderUnavailableError)

    @pytest.mark.asyncio
    async def test_permanent_errors_stop_immediately(self) -> None:
        policy = RetryPolicy(max_attempts=5, base_delay=0, jitter=False)
        calls = {"count": 0}

        async def rejected() -> None:
            calls["count"] += 1
            raise ProviderRejectedError("400")

        with pytest.raises(RetryExhaustedError) as exc_info:
            await policy.execute(rejected)

        assert calls["count"] == 1
        assert exc_info.value.error_class == ErrorClass.PERMANENT

    @pytest.mark.asyncio
    async def test_unknown_errors_become_permanent_at_the_cap(self) -> None:
        policy = RetryPolicy(max_attempts=2, base_delay=0, jitter=False)

        async def broken() -> None:
            raise KeyError("field")

        with pytest.raises(RetryExhaustedError) as exc_info:
            await policy.execute(broken)

        assert exc_info.value.attempts == 2
        assert exc_info.value.error_class == ErrorClass.PERMANENT


class TestDeadLetterQueue:
    @pytest.mark.asyncio
    async def test_quarantine_records_and_alerts(self, store: JobStore, dead_letters: DeadLetterQueue, notifications) -> None:
        job_id = store.create_job("owner-1", ["ocr"], ["a.pdf"])
        exhausted = RetryExhaustedError(
            "dispatch failed",
            last_error=ProviderUnavailableError("503"),
            attempts=3,
            error_class=ErrorClass.TRANSIENT,
        )

        letter = await dead_letters.quarantine(
            DeadLetterKind.DISPATCH, "handle-1", exhausted, job_id=job_id, payload={"capability": "ocr"}
        )

        assert letter.kind == DeadLetterKind.DISPATCH
        assert letter.error_class == ErrorClass.TRANSIENT
        assert letter.attempts == 3
        assert letter.error_detail["error"] == "ProviderUnavailableError"
        assert [d.dead_letter_id for d in dead_letters.list(job_id=job_id)] == [letter.dead_letter_id]

        events = notifications.drain()
        assert [e["event_type"] for e in events] == [EventType.QUARANTINED.value]
        assert events[0]["detail"]["dead_letter_id"] == letter.dead_letter_id

    @pytest.mark.asyncio
    async def test_plain_errors_are_permanent(self, dead_letters: DeadLetterQueue) -> None:
        letter = await dead_letters.quarantine(DeadLetterKind.POST_STEP, "handle-2", ValueError("bad"))

        assert letter.error_class == ErrorClass.PERMANENT
        assert letter.attempts == 1
        assert dead_letters.acknowledge(letter.dead_letter_id).acknowledged is True
