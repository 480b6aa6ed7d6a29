"""End-to-end workflow tests for the orchestrator, router and store together."""

import asyncio
import random
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from services.orchestrator import WorkflowOrchestrator
from services.orchestrator.consolidation import consolidate_results
from services.store import JobStore
from shared.enums import (
    TERMINAL_TRANSACTION_STATUSES,
    Capability,
    CompletionOutcome,
    DeadLetterKind,
    EventType,
    FailurePolicy,
    HandleState,
    JobStatus,
    TransactionStatus,
)
from shared.errors import ConflictError, ProviderRejectedError, ProviderUnavailableError


def _assert_all_terminal(job) -> None:
    assert all(t.status in TERMINAL_TRANSACTION_STATUSES for t in job.transactions)


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_single_ocr_transaction_completes(
        self, orchestrator: WorkflowOrchestrator, store: JobStore, complete, notifications
    ) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])
        job = await orchestrator.start_job(job_id)
        assert job.status == JobStatus.AWAITING_PROVIDERS
        transaction_id = job.transactions[0].transaction_id

        receipt = await complete(transaction_id, Capability.OCR, result_ref="results://ocr/a", confidence=0.95)
        assert receipt.duplicate is False

        job = store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.completed_at is not None
        assert job.pending_operations == 0
        assert store.list_live_handles(job_id=job_id) == []
        transaction = job.transactions[0]
        assert transaction.status == TransactionStatus.SUCCEEDED
        assert transaction.results["ocr"]["result_ref"] == "results://ocr/a"
        assert transaction.consolidated_result["result_refs"] == ["results://ocr/a"]
        _assert_all_terminal(job)

        events = [e["event_type"] for e in notifications.drain()]
        assert events == [EventType.JOB_COMPLETED.value]

    @pytest.mark.asyncio
    async def test_archive_step_holds_the_job_until_archived(
        self, orchestrator: WorkflowOrchestrator, store: JobStore, complete, drain, archive_step
    ) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])
        job = await orchestrator.start_job(job_id)

        await complete(job.transactions[0].transaction_id, Capability.OCR, result_ref="results://ocr/a")

        assert store.get_job(job_id).status == JobStatus.POST_PROCESSING
        assert [h.capability for h in store.list_live_handles(job_id=job_id)] == [Capability.ARCHIVE]
        assert await drain(job_id) == 1
        job = store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert "archive" in job.transactions[0].consolidated_result["post_steps"]

    @pytest.mark.asyncio
    async def test_reverse_order_completions_consolidate(
        self, orchestrator: WorkflowOrchestrator, store: JobStore, router, drain
    ) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr", "classification"], ["a.pdf", "b.pdf", "c.pdf"])
        await orchestrator.start_job(job_id)

        live = store.list_live_handles(job_id=job_id)
        assert len(live) == 6
        for handle in reversed(live):
            await router.on_completion(
                handle.provider_operation_id,
                CompletionOutcome.SUCCEEDED,
                result_ref=f"results://{handle.capability.value}/{handle.transaction_id}",
                confidence=0.9,
            )
        await drain(job_id)

        job = store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.completed_transactions == 3
        for transaction in job.transactions:
            consolidated = transaction.consolidated_result
            assert consolidated["result_refs"] == [
                f"results://classification/{transaction.transaction_id}",
                f"results://ocr/{transaction.transaction_id}",
            ]
            assert consolidated["missing"] == []

    @pytest.mark.asyncio
    async def test_consolidation_ignores_arrival_order(
        self, orchestrator: WorkflowOrchestrator, store: JobStore, router
    ) -> None:
        file_refs = ["a.pdf", "b.pdf", "c.pdf"]
        snapshots = []
        for seed in (1, 2, 3):
            job_id = orchestrator.create_job("owner-1", ["ocr", "translation"], file_refs)
            job = await orchestrator.start_job(job_id)
            sources = {t.transaction_id: t.source_ref for t in job.transactions}

            live = store.list_live_handles(job_id=job_id)
            random.Random(seed).shuffle(live)
            for handle in live:
                await router.on_completion(
                    handle.provider_operation_id,
                    CompletionOutcome.SUCCEEDED,
                    result_ref=f"results://{handle.capability.value}/{sources[handle.transaction_id]}",
                    confidence=0.85 if handle.capability == Capability.OCR else 0.9,
                )

            job = store.get_job(job_id)
            snapshots.append({t.source_ref: t.consolidated_result for t in job.transactions})

        assert snapshots[0] == snapshots[1] == snapshots[2]
        assert snapshots[0]["a.pdf"]["confidence"] == 0.85

    def test_consolidate_results_is_order_free(self) -> None:
        first = {"ocr": {"result_ref": "o", "confidence": 0.9}, "translation": {"result_ref": "t", "confidence": 0.7}}
        second = dict(reversed(list(first.items())))

        assert consolidate_results(first, [Capability.OCR, Capability.TRANSLATION]) == consolidate_results(
            second, [Capability.TRANSLATION, Capability.OCR]
        )


class TestFailurePolicy:
    @pytest.mark.asyncio
    async def test_dispatch_exhaustion_fails_only_transaction(
        self, orchestrator: WorkflowOrchestrator, store: JobStore, backend
    ) -> None:
        backend.fail_next(Capability.OCR, ProviderUnavailableError("503"), times=3)
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])

        await orchestrator.start_job(job_id)

        job = store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.failed_transactions == 1
        assert job.transactions[0].error_detail["capability"] == "ocr"
        assert job.transactions[0].error_detail["error"] == "ProviderUnavailableError"
        letters = store.list_dead_letters(job_id=job_id)
        assert [(d.kind, d.attempts) for d in letters] == [(DeadLetterKind.DISPATCH, 3)]
        _assert_all_terminal(job)

    @pytest.mark.asyncio
    async def test_partial_completion_when_others_succeed(
        self, orchestrator: WorkflowOrchestrator, store: JobStore, backend, drain
    ) -> None:
        backend.fail_next(Capability.OCR, ProviderUnavailableError("503"), times=3)
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf", "b.pdf"])

        await orchestrator.start_job(job_id)
        await drain(job_id)

        job = store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.failed_transactions == 1
        statuses = sorted(t.status.value for t in job.transactions)
        assert statuses == ["failed", "succeeded"]
        _assert_all_terminal(job)

    @pytest.mark.asyncio
    async def test_permanent_dispatch_error_is_not_retried(
        self, orchestrator: WorkflowOrchestrator, store: JobStore, backend
    ) -> None:
        backend.fail_next(Capability.OCR, ProviderRejectedError("unsupported format"))
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.bin"])

        await orchestrator.start_job(job_id)

        job = store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert [d.attempts for d in store.list_dead_letters(job_id=job_id)] == [1]

    @pytest.mark.asyncio
    async def test_fail_fast_cancels_outstanding_work(
        self, orchestrator: WorkflowOrchestrator, store: JobStore, backend, complete, notifications
    ) -> None:
        job_id = orchestrator.create_job(
            "owner-1", ["ocr"], ["a.pdf", "b.pdf"], failure_policy=FailurePolicy.FAIL_FAST
        )
        job = await orchestrator.start_job(job_id)
        first, second = job.transactions
        survivor = next(h for h in store.list_live_handles(job_id=job_id) if h.transaction_id == second.transaction_id)

        await complete(first.transaction_id, Capability.OCR, CompletionOutcome.FAILED, error="corrupt page")

        job = store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_detail["capability"] == "ocr"
        assert survivor.provider_operation_id in backend.cancellations
        assert store.get_handle(survivor.handle_id).state == HandleState.CANCELLED
        assert store.list_live_handles(job_id=job_id) == []
        events = [e["event_type"] for e in notifications.drain()]
        assert events == [EventType.JOB_FAILED.value]

    @pytest.mark.asyncio
    async def test_retry_transaction_reopens_job(
        self, orchestrator: WorkflowOrchestrator, store: JobStore, backend, drain
    ) -> None:
        backend.fail_next(Capability.OCR, ProviderUnavailableError("503"), times=3)
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf", "b.pdf"])
        await orchestrator.start_job(job_id)
        await drain(job_id)
        failed = next(t for t in store.get_job(job_id).transactions if t.status == TransactionStatus.FAILED)

        transaction = await orchestrator.retry_transaction(failed.transaction_id)

        assert transaction.status == TransactionStatus.DISPATCHED
        assert store.get_job(job_id).status == JobStatus.AWAITING_PROVIDERS
        await drain(job_id)
        job = store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.failed_transactions == 0
        _assert_all_terminal(job)

    @pytest.mark.asyncio
    async def test_only_failed_transactions_can_be_retried(
        self, orchestrator: WorkflowOrchestrator, store: JobStore
    ) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])
        job = await orchestrator.start_job(job_id)

        with pytest.raises(ConflictError):
            await orchestrator.retry_transaction(job.transactions[0].transaction_id)


class TestTransientCompletions:
    @pytest.mark.asyncio
    async def test_timed_out_operation_is_redispatched(
        self, orchestrator: WorkflowOrchestrator, store: JobStore, complete
    ) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])
        job = await orchestrator.start_job(job_id)
        transaction_id = job.transactions[0].transaction_id

        await complete(transaction_id, Capability.OCR, CompletionOutcome.TIMED_OUT)

        live = store.list_live_handles(job_id=job_id)
        assert [(h.capability, h.attempt) for h in live] == [(Capability.OCR, 2)]
        job = store.get_job(job_id)
        assert job.status == JobStatus.AWAITING_PROVIDERS
        assert job.pending_operations == 1

    @pytest.mark.asyncio
    async def test_transient_outcomes_are_bounded_then_quarantined(
        self, orchestrator: WorkflowOrchestrator, store: JobStore, complete
    ) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])
        job = await orchestrator.start_job(job_id)
        transaction_id = job.transactions[0].transaction_id

        for _ in range(orchestrator.retry_policy.max_attempts):
            await complete(transaction_id, Capability.OCR, CompletionOutcome.UNAVAILABLE)

        assert store.list_live_handles(job_id=job_id) == []
        job = store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.transactions[0].error_detail["error"] == "ProviderUnavailableError"
        letters = store.list_dead_letters(job_id=job_id)
        assert [(d.kind, d.attempts) for d in letters] == [(DeadLetterKind.COMPLETION, 3)]


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_duplicate_completion_leaves_state_unchanged(
        self, orchestrator: WorkflowOrchestrator, store: JobStore, router, drain
    ) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])
        await orchestrator.start_job(job_id)
        handle = store.list_live_handles(job_id=job_id)[0]
        await router.on_completion(handle.provider_operation_id, CompletionOutcome.SUCCEEDED, result_ref="r1")
        await drain(job_id)
        before = store.get_job(job_id, include_history=True)

        receipt = await router.on_completion(handle.provider_operation_id, CompletionOutcome.SUCCEEDED, result_ref="r2")

        assert receipt.duplicate is True
        after = store.get_job(job_id, include_history=True)
        assert after.version == before.version
        assert len(after.history) == len(before.history)
        assert after.transactions[0].results["ocr"]["result_ref"] == "r1"

    @pytest.mark.asyncio
    async def test_concurrent_final_completions_consolidate_once(
        self, orchestrator: WorkflowOrchestrator, store: JobStore, router, notifications
    ) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr", "classification"], ["a.pdf", "b.pdf"])
        await orchestrator.start_job(job_id)
        live = store.list_live_handles(job_id=job_id)
        notifications.drain()

        receipts = await asyncio.gather(
            *(
                router.on_completion(
                    handle.provider_operation_id,
                    CompletionOutcome.SUCCEEDED,
                    result_ref=f"results://{handle.capability.value}/{handle.transaction_id}",
                    confidence=0.9,
                )
                for handle in live
            )
        )

        assert len(receipts) == 4
        assert all(r.accepted and not r.duplicate for r in receipts)
        job = store.get_job(job_id, include_history=True)
        assert job.status == JobStatus.COMPLETED
        assert job.pending_operations == 0
        consolidating = [
            change
            for change in job.history
            if change.entity_type == "job" and change.to_status == JobStatus.CONSOLIDATING.value
        ]
        assert len(consolidating) == 1
        events = [e["event_type"] for e in notifications.drain()]
        assert events.count(EventType.JOB_COMPLETED.value) == 1

    @pytest.mark.asyncio
    async def test_resume_is_safe_to_repeat(self, orchestrator: WorkflowOrchestrator, store: JobStore) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])
        await orchestrator.start_job(job_id)
        handle = store.list_live_handles(job_id=job_id)[0]
        context = {"outcome": "succeeded", "result_ref": "results://a", "confidence": 0.9}
        store.consume_handle(handle.handle_id, context)

        first = await orchestrator.resume(handle.continuation_token, context)
        second = await orchestrator.resume(handle.continuation_token, context)

        assert first.applied is True
        assert second.applied is False

    @pytest.mark.asyncio
    async def test_start_twice_is_a_conflict(self, orchestrator: WorkflowOrchestrator) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])
        await orchestrator.start_job(job_id)

        with pytest.raises(ConflictError):
            await orchestrator.start_job(job_id)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_stale_completion_after_cancel_is_a_no_op(
        self, orchestrator: WorkflowOrchestrator, store: JobStore, router, backend, notifications
    ) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr", "video_analysis"], ["a.mp4"])
        await orchestrator.start_job(job_id)
        handles = store.list_live_handles(job_id=job_id)

        job = await orchestrator.cancel_job(job_id)

        assert job.status == JobStatus.CANCELLED
        assert job.transactions[0].status == TransactionStatus.CANCELLED
        assert sorted(backend.cancellations) == sorted(h.provider_operation_id for h in handles)
        receipt = await router.on_completion(handles[0].provider_operation_id, CompletionOutcome.SUCCEEDED, "r")
        assert receipt.duplicate is True
        assert store.get_job(job_id).status == JobStatus.CANCELLED
        assert store.get_job(job_id).transactions[0].results == {}
        events = notifications.drain()
        assert [e["event_type"] for e in events] == [EventType.JOB_CANCELLED.value]
        assert events[0]["detail"]["cancelled_operations"] == 2

    @pytest.mark.asyncio
    async def test_cancelling_a_finished_job_is_a_conflict(
        self, orchestrator: WorkflowOrchestrator, drain
    ) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])
        await orchestrator.start_job(job_id)
        await drain(job_id)

        with pytest.raises(ConflictError):
            await orchestrator.cancel_job(job_id)


class TestRecovery:
    @pytest.mark.asyncio
    async def test_stalled_job_is_advanced(
        self, orchestrator: WorkflowOrchestrator, store: JobStore, complete
    ) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])
        job = await orchestrator.start_job(job_id)
        # Simulate a crash after the last settle but before the stage moved on
        with patch.object(orchestrator, "_advance_from_providers", AsyncMock()):
            await complete(job.transactions[0].transaction_id, Capability.OCR)
        assert store.get_job(job_id).status == JobStatus.AWAITING_PROVIDERS

        assert await orchestrator.recover_stalled_jobs(timedelta(seconds=-1)) == 1

        assert store.get_job(job_id).status == JobStatus.COMPLETED
        assert await orchestrator.recover_stalled_jobs(timedelta(seconds=-1)) == 0

    @pytest.mark.asyncio
    async def test_active_jobs_are_left_alone(self, orchestrator: WorkflowOrchestrator, store: JobStore) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])
        await orchestrator.start_job(job_id)

        assert await orchestrator.recover_stalled_jobs(timedelta(seconds=-1)) == 0
        assert store.get_job(job_id).status == JobStatus.AWAITING_PROVIDERS

    @pytest.mark.asyncio
    async def test_delete_job_cancels_live_operations(
        self, orchestrator: WorkflowOrchestrator, store: JobStore, backend
    ) -> None:
        job_id = orchestrator.create_job("owner-1", ["ocr"], ["a.pdf"])
        await orchestrator.start_job(job_id)
        handle = store.list_live_handles(job_id=job_id)[0]

        await orchestrator.delete_job(job_id)

        assert backend.cancellations == [handle.provider_operation_id]
        assert store.list_live_handles(job_id=job_id) == []
