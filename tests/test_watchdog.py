"""Tests for the timeout watchdog and the background scheduler."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from services.store import JobStore
from services.watchdog import BackgroundScheduler, TimeoutWatchdog
from shared.enums import Capability, DeadLetterKind, HandleState, JobStatus, ReviewDecision
from shared.errors import NotFoundError
from shared.utils import utcnow


def _later(hours: float = 5):
    return utcnow() + timedelta(hours=hours)


class TestScan:
    @pytest.mark.asyncio
    async def test_nothing_expires_before_the_deadline(self, orchestrator, watchdog: TimeoutWatchdog) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])
        await orchestrator.start_job(job_id)

        assert await watchdog.scan() == 0

    @pytest.mark.asyncio
    async def test_expired_operation_is_redispatched(
        self, orchestrator, store: JobStore, watchdog: TimeoutWatchdog
    ) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])
        await orchestrator.start_job(job_id)
        original = store.list_live_handles(job_id=job_id)[0]

        assert await watchdog.scan(now=_later()) == 1

        assert store.get_handle(original.handle_id).state == HandleState.SETTLED
        assert store.get_handle(original.handle_id).outcome["outcome"] == "timed_out"
        replacement = store.list_live_handles(job_id=job_id)
        assert [h.attempt for h in replacement] == [2]
        assert store.get_job(job_id).status == JobStatus.AWAITING_PROVIDERS

    @pytest.mark.asyncio
    async def test_repeated_timeouts_fail_and_quarantine(
        self, orchestrator, store: JobStore, watchdog: TimeoutWatchdog
    ) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])
        await orchestrator.start_job(job_id)

        for _ in range(3):
            assert await watchdog.scan(now=_later()) == 1

        job = store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.transactions[0].error_detail["error"] == "ProviderTimeoutError"
        assert [d.kind for d in store.list_dead_letters(job_id=job_id)] == [DeadLetterKind.COMPLETION]
        assert await watchdog.scan(now=_later()) == 0


class TestRecoverAndPurge:
    @pytest.mark.asyncio
    async def test_recover_advances_stalled_jobs(
        self, orchestrator, store: JobStore, watchdog: TimeoutWatchdog, complete
    ) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])
        job = await orchestrator.start_job(job_id)
        with patch.object(orchestrator, "_advance_from_providers", AsyncMock()):
            await complete(job.transactions[0].transaction_id, Capability.OCR)

        assert await watchdog.recover(timedelta(seconds=-1)) == 1
        assert store.get_job(job_id).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_recover_applies_a_decision_that_never_settled(
        self, orchestrator, store: JobStore, watchdog: TimeoutWatchdog, review_gate, complete
    ) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["scan.pdf"])
        job = await orchestrator.start_job(job_id)
        await complete(job.transactions[0].transaction_id, Capability.OCR, confidence=0.5)
        case = review_gate.list_pending(job_id=job_id)[0]

        with patch.object(store, "settle_review", side_effect=RuntimeError("process died")):
            with pytest.raises(RuntimeError):
                await review_gate.submit_decision(case.case_id, ReviewDecision.APPROVED, reviewer="alice")

        assert store.get_job(job_id).status == JobStatus.AWAITING_REVIEW
        assert store.list_unsettled_decisions() == [store.get_review_case(case.case_id)]

        assert await watchdog.recover(timedelta(seconds=-1)) == 1
        job = store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.pending_reviews == 0
        assert job.transactions[0].consolidated_result["review"]["reviewer"] == "alice"
        assert store.list_unsettled_decisions() == []
        assert await watchdog.recover(timedelta(seconds=-1)) == 0

    @pytest.mark.asyncio
    async def test_default_grace_leaves_fresh_jobs_alone(
        self, orchestrator, store: JobStore, watchdog: TimeoutWatchdog, complete
    ) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])
        job = await orchestrator.start_job(job_id)
        with patch.object(orchestrator, "_advance_from_providers", AsyncMock()):
            await complete(job.transactions[0].transaction_id, Capability.OCR)

        assert watchdog.stall_grace == timedelta(seconds=60)
        assert await watchdog.recover() == 0
        assert store.get_job(job_id).status == JobStatus.AWAITING_PROVIDERS

    @pytest.mark.asyncio
    async def test_purge_removes_jobs_past_retention(
        self, orchestrator, store: JobStore, watchdog: TimeoutWatchdog, backend
    ) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])
        await orchestrator.start_job(job_id)
        keep_id = orchestrator.create_job("owner-1", ["ocr"], ["b.pdf"])

        assert await watchdog.purge_expired() == 0
        assert await watchdog.purge_expired(now=_later(hours=24 * 365)) == 2

        with pytest.raises(NotFoundError):
            store.get_job(job_id)
        with pytest.raises(NotFoundError):
            store.get_job(keep_id)
        assert len(backend.cancellations) == 1


class TestBackgroundScheduler:
    @pytest.mark.asyncio
    async def test_run_once_polls_poll_mode_operations(
        self, orchestrator, store: JobStore, watchdog: TimeoutWatchdog
    ) -> None:
        scheduler = BackgroundScheduler(watchdog, interval_seconds=60)
        job_id = orchestrator.create_job("owner-1", ["video_analysis"], ["clip.mp4"])
        await orchestrator.start_job(job_id)

        summary = await scheduler.run_once()

        assert summary == {"polled": 1, "timed_out": 0, "redelivered": 0, "recovered": 0, "purged": 0}
        job = store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.transactions[0].results["video_analysis"]["result_ref"].startswith("stub://video_analysis/")

    @pytest.mark.asyncio
    async def test_failing_step_does_not_stop_the_sweep(self, watchdog: TimeoutWatchdog) -> None:
        scheduler = BackgroundScheduler(watchdog, interval_seconds=60)

        with patch.object(watchdog, "scan", AsyncMock(side_effect=RuntimeError("db locked"))), patch.object(
            watchdog, "purge_expired", AsyncMock(return_value=4)
        ):
            summary = await scheduler.run_once()

        assert summary["timed_out"] == 0
        assert summary["purged"] == 4

    @pytest.mark.asyncio
    async def test_start_and_stop(self, watchdog: TimeoutWatchdog) -> None:
        scheduler = BackgroundScheduler(watchdog, interval_seconds=3600)
        assert scheduler.running is False

        with patch.object(scheduler, "run_once", AsyncMock(return_value={})) as run_once:
            scheduler.start()
            assert scheduler.running is True
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            await scheduler.stop()

        assert scheduler.running is False
        run_once.assert_awaited()

    def test_interval_defaults_from_config(self, watchdog: TimeoutWatchdog) -> None:
        assert BackgroundScheduler(watchdog).interval_seconds == 15.0
