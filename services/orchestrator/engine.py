"""Workflow orchestrator.

Drives a job through CREATED -> DISPATCHED -> AWAITING_PROVIDERS ->
CONSOLIDATING -> (AWAITING_REVIEW ->) POST_PROCESSING -> COMPLETED/FAILED.
Nothing here waits on a provider or a reviewer: every wait is a persisted
continuation, and every resume is a single atomic settle in the store.

Fan-in: each outstanding operation holds one unit of ``pending_operations``.
While a batch of dispatches is being issued the orchestrator holds one extra
unit (the dispatch guard), so the count cannot reach zero before the batch
is complete. Whoever brings it to zero advances the job.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any

from services.notifications import NotificationPublisher
from services.providers import ProviderGateway
from services.retry import DeadLetterQueue, RetryPolicy
from services.store import JobStore
from shared.enums import (
    TERMINAL_JOB_STATUSES,
    TERMINAL_TRANSACTION_STATUSES,
    TRANSACTION_STATUS_RANK,
    TRANSIENT_OUTCOMES,
    Capability,
    CompletionOutcome,
    DeadLetterKind,
    ErrorClass,
    EventType,
    FailurePolicy,
    JobStatus,
    ReviewDecision,
    TransactionStatus,
    WorkflowStage,
)
from shared.errors import (
    ConflictError,
    DispatchFailedError,
    NotFoundError,
    OrchestrationError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RetryExhaustedError,
    describe_error,
)
from shared.models import (
    Continuation,
    JobPage,
    JobView,
    ProviderOperationHandle,
    SettleResult,
    TransactionChange,
    TransactionView,
)
from shared.utils import config, setup_logging

from .consolidation import consolidate_results, has_all_results, needs_review

if TYPE_CHECKING:
    from services.review import HumanReviewGate

logger = setup_logging("workflow-orchestrator")

PROVIDER_STAGE_STATUSES = (JobStatus.DISPATCHED, JobStatus.AWAITING_PROVIDERS)
POST_PROCESSING_READY = (TransactionStatus.PROVIDER_COMPLETE, TransactionStatus.REVIEWED)


class WorkflowOrchestrator:
    """Coordinate jobs across providers, review and post-processing."""

    def __init__(
        self,
        store: JobStore | None = None,
        gateway: ProviderGateway | None = None,
        review_gate: HumanReviewGate | None = None,
        notifications: NotificationPublisher | None = None,
        dead_letters: DeadLetterQueue | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._review_gate = review_gate
        self._notifications = notifications
        self._dead_letters = dead_letters
        self.retry_policy = retry_policy or RetryPolicy.from_config()

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

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
            self._notifications = NotificationPublisher(store=self.store, retry_policy=self.retry_policy)
        return self._notifications

    @notifications.setter
    def notifications(self, value: NotificationPublisher) -> None:
        self._notifications = value

    @property
    def dead_letters(self) -> DeadLetterQueue:
        if self._dead_letters is None:
            self._dead_letters = DeadLetterQueue(store=self.store, notifications=self.notifications)
        return self._dead_letters

    @dead_letters.setter
    def dead_letters(self, value: DeadLetterQueue) -> None:
        self._dead_letters = value

    @property
    def gateway(self) -> ProviderGateway:
        if self._gateway is None:
            self._gateway = ProviderGateway(
                store=self.store,
                retry_policy=self.retry_policy,
                dead_letters=self.dead_letters,
            )
        return self._gateway

    @gateway.setter
    def gateway(self, value: ProviderGateway) -> None:
        self._gateway = value

    @property
    def review_gate(self) -> HumanReviewGate:
        if self._review_gate is None:
            from services.review import HumanReviewGate

            self._review_gate = HumanReviewGate(store=self.store, orchestrator=self)
        return self._review_gate

    @review_gate.setter
    def review_gate(self, value: HumanReviewGate) -> None:
        self._review_gate = value

    @property
    def confidence_threshold(self) -> float:
        return float(config.get_pipeline_value("review.confidence_threshold", 0.8))

    @property
    def max_escalations(self) -> int:
        return int(config.get_pipeline_value("review.max_escalations", 2))

    @property
    def post_steps(self) -> list[Capability]:
        steps: list[Capability] = []
        for raw in config.get_pipeline_value("post_processing.steps", []) or []:
            try:
                steps.append(Capability(raw))
            except ValueError:
                logger.warning("Ignoring unknown post-processing step '%s'", raw)
        return steps

    # ------------------------------------------------------------------
    # Job operations
    # ------------------------------------------------------------------

    def create_job(
        self,
        owner_id: str,
        capabilities: list[Capability | str],
        file_refs: list[str],
        label: str | None = None,
        failure_policy: FailurePolicy | str | None = None,
    ) -> str:
        return self.store.create_job(owner_id, capabilities, file_refs, label=label, failure_policy=failure_policy)

    def get_job(self, job_id: str, include_history: bool = False) -> JobView:
        return self.store.get_job(job_id, include_history=include_history)

    def list_jobs(self, status: JobStatus | str, cursor: str | None = None, limit: int | None = None) -> JobPage:
        return self.store.list_by_status(status, cursor=cursor, limit=limit)

    async def start_job(self, job_id: str) -> JobView:
        """Dispatch every (transaction, capability) pair and suspend."""
        if not self.store.acquire_dispatch_guard(job_id, [JobStatus.CREATED], JobStatus.DISPATCHED):
            job = self.store.get_job(job_id)
            raise ConflictError(
                f"Job {job_id} is {job.status.value}; only created jobs can be started",
                detail={"job_id": job_id, "status": job.status.value},
            )

        job = self.store.get_job(job_id)
        logger.info(
            "Starting job %s: %d transaction(s) x %d capability(ies)",
            job_id,
            len(job.transactions),
            len(job.capabilities),
        )
        for transaction in job.transactions:
            for capability in job.capabilities:
                await self._dispatch(
                    job_id,
                    transaction.transaction_id,
                    transaction.source_ref,
                    capability,
                    stage=WorkflowStage.AWAITING_PROVIDERS,
                )
        self.store.transition_job(job_id, [JobStatus.DISPATCHED], JobStatus.AWAITING_PROVIDERS)
        await self._release_guard(job_id, WorkflowStage.AWAITING_PROVIDERS)
        return self.store.get_job(job_id)

    async def cancel_job(self, job_id: str) -> JobView:
        live = self.store.cancel_job_records(job_id)
        cancelled = await self.gateway.cancel_all(live)
        logger.info("Cancelled job %s (%d/%d live operation(s) cancelled at provider)", job_id, cancelled, len(live))
        await self.notifications.publish(job_id, EventType.JOB_CANCELLED, {"cancelled_operations": len(live)})
        return self.store.get_job(job_id)

    async def delete_job(self, job_id: str) -> None:
        live = self.store.delete_job(job_id)
        if live:
            await self.gateway.cancel_all(live)

    async def retry_transaction(self, transaction_id: str) -> TransactionView:
        """Re-run a failed transaction from the start of the provider stage."""
        transaction = self.store.retry_transaction(transaction_id)
        job = self.store.get_job(transaction.job_id)
        logger.info("Retrying transaction %s of job %s", transaction_id, job.job_id)
        for capability in job.capabilities:
            await self._dispatch(
                job.job_id,
                transaction_id,
                transaction.source_ref,
                capability,
                stage=WorkflowStage.AWAITING_PROVIDERS,
            )
        self.store.transition_job(job.job_id, [JobStatus.DISPATCHED], JobStatus.AWAITING_PROVIDERS)
        await self._release_guard(job.job_id, WorkflowStage.AWAITING_PROVIDERS)
        return self.store.get_transaction(transaction_id)

    async def resume(self, continuation_token: str, context: dict[str, Any] | None = None) -> SettleResult:
        """Resume a suspended workflow. Safe to call more than once for the same token."""
        continuation = self.store.get_continuation(continuation_token)
        if continuation is None:
            raise NotFoundError(f"Continuation {continuation_token} not found")
        if continuation.consumed_at is not None:
            return SettleResult(applied=False)

        if continuation.stage == WorkflowStage.AWAITING_REVIEW:
            return await self._resume_review(continuation)

        context = context or {}
        handle = self.store.get_handle(continuation.context["handle_id"])
        outcome = CompletionOutcome(context.get("outcome", CompletionOutcome.FAILED.value))
        if outcome == CompletionOutcome.SUCCEEDED:
            return await self._settle_success(handle, context)
        if outcome in TRANSIENT_OUTCOMES:
            return await self._settle_transient(handle, outcome, context)
        return await self._settle_failure(handle, self._error_from(outcome, context))

    async def recover_stalled_jobs(self, older_than: timedelta | None = None) -> int:
        """Advance jobs whose outstanding work drained without the stage moving on."""
        if older_than is None:
            older_than = timedelta(seconds=float(config.get_pipeline_value("scheduler.stall_grace_seconds", 60)))
        recovered = 0
        for job in self.store.list_stalled_jobs(older_than):
            try:
                if job.status == JobStatus.AWAITING_PROVIDERS:
                    await self._advance_from_providers(job.job_id)
                elif job.status == JobStatus.CONSOLIDATING:
                    await self._consolidate(job.job_id)
                elif job.status == JobStatus.AWAITING_REVIEW:
                    await self._close_review_stage(job.job_id)
                elif job.status == JobStatus.POST_PROCESSING:
                    await self._finalize(job.job_id)
                else:
                    continue
            except OrchestrationError as exc:
                logger.warning("Recovery of job %s (%s) failed: %s", job.job_id, job.status.value, exc)
                continue
            recovered += 1
            logger.info("Recovered stalled job %s from %s", job.job_id, job.status.value)
        return recovered

    async def resume_decided_reviews(self, older_than: timedelta | None = None) -> int:
        """Apply review decisions that were recorded but never settled."""
        resumed = 0
        for case in self.store.list_unsettled_decisions(older_than):
            try:
                result = await self.resume(case.continuation_token)
            except OrchestrationError as exc:
                logger.warning("Resuming decided review case %s failed: %s", case.case_id, exc)
                continue
            if result.applied:
                resumed += 1
                logger.info("Applied %s decision of review case %s", case.decision.value, case.case_id)
        return resumed

    # ------------------------------------------------------------------
    # Dispatch and settlement
    # ------------------------------------------------------------------

    async def _dispatch(
        self,
        job_id: str,
        transaction_id: str,
        source_ref: str,
        capability: Capability,
        *,
        stage: WorkflowStage,
        attempt: int = 1,
        context: dict[str, Any] | None = None,
    ) -> ProviderOperationHandle | None:
        try:
            return await self.gateway.dispatch(
                transaction_id,
                capability,
                source_ref,
                job_id=job_id,
                stage=stage,
                context=context,
                attempt=attempt,
            )
        except DispatchFailedError as exc:
            await self._settle_failure(exc.handle, describe_error(exc.cause))
        except ConflictError as exc:
            logger.info("Skipped %s dispatch for transaction %s: %s", capability.value, transaction_id, exc)
        return None

    async def _release_guard(self, job_id: str, stage: WorkflowStage) -> None:
        if self.store.release_dispatch_guard(job_id) == 0:
            await self._on_stage_drained(job_id, stage)

    async def _on_stage_drained(self, job_id: str, stage: WorkflowStage) -> None:
        if stage == WorkflowStage.AWAITING_PROVIDERS:
            await self._advance_from_providers(job_id)
        elif stage == WorkflowStage.POST_PROCESSING:
            await self._finalize(job_id)

    async def _after_settle(self, handle: ProviderOperationHandle, result: SettleResult) -> None:
        if result.applied and result.remaining == 0:
            await self._on_stage_drained(handle.job_id, handle.stage)

    async def _settle_success(self, handle: ProviderOperationHandle, context: dict[str, Any]) -> SettleResult:
        capability = handle.capability.value
        entry = {
            "result_ref": context.get("result_ref"),
            "confidence": context.get("confidence"),
            "detail": context.get("detail") or {},
            "attempt": handle.attempt,
        }

        if handle.stage == WorkflowStage.POST_PROCESSING:

            def mutate(transaction: TransactionView, job: JobView) -> TransactionChange | None:
                consolidated = dict(transaction.consolidated_result or {})
                consolidated["post_steps"] = {**(consolidated.get("post_steps") or {}), capability: entry}
                return TransactionChange(consolidated_result=consolidated)

        else:

            def mutate(transaction: TransactionView, job: JobView) -> TransactionChange | None:
                results = {**transaction.results, capability: entry}
                status = None
                if (
                    transaction.status not in TERMINAL_TRANSACTION_STATUSES
                    and TRANSACTION_STATUS_RANK[transaction.status]
                    < TRANSACTION_STATUS_RANK[TransactionStatus.PROVIDER_COMPLETE]
                    and has_all_results(results, job.capabilities)
                ):
                    status = TransactionStatus.PROVIDER_COMPLETE
                return TransactionChange(status=status, results=results)

        result = self.store.settle_operation(handle.continuation_token, mutate)
        await self._after_settle(handle, result)
        return result

    async def _settle_failure(self, handle: ProviderOperationHandle, error_detail: dict[str, Any]) -> SettleResult:
        detail = {**error_detail, "capability": handle.capability.value, "stage": handle.stage.value}

        def mutate(transaction: TransactionView, job: JobView) -> TransactionChange | None:
            if transaction.status in TERMINAL_TRANSACTION_STATUSES:
                return None
            return TransactionChange(status=TransactionStatus.FAILED, error_detail=detail)

        result = self.store.settle_operation(handle.continuation_token, mutate)
        if result.applied and result.transaction and result.transaction.status == TransactionStatus.FAILED:
            logger.warning(
                "Transaction %s failed on %s: %s",
                handle.transaction_id,
                handle.capability.value,
                detail.get("message"),
            )
            if await self._apply_failure_policy(handle.job_id, detail):
                return result
        await self._after_settle(handle, result)
        return result

    async def _settle_transient(
        self,
        handle: ProviderOperationHandle,
        outcome: CompletionOutcome,
        context: dict[str, Any],
    ) -> SettleResult:
        job = self.store.get_job(handle.job_id)
        if handle.attempt < self.retry_policy.max_attempts and job.status not in TERMINAL_JOB_STATUSES:
            transaction = self.store.get_transaction(handle.transaction_id)
            logger.info(
                "%s for %s of transaction %s, redispatching (attempt %d/%d)",
                outcome.value,
                handle.capability.value,
                handle.transaction_id,
                handle.attempt + 1,
                self.retry_policy.max_attempts,
            )
            # The replacement takes its slot before the old handle releases one
            await self._dispatch(
                handle.job_id,
                handle.transaction_id,
                transaction.source_ref,
                handle.capability,
                stage=handle.stage,
                attempt=handle.attempt + 1,
                context=self._stage_context(handle.stage, transaction),
            )
            result = self.store.settle_operation(handle.continuation_token, None)
            await self._after_settle(handle, result)
            return result

        error_cls = ProviderTimeoutError if outcome == CompletionOutcome.TIMED_OUT else ProviderUnavailableError
        last_error = error_cls(
            self._error_from(outcome, context).get("message", outcome.value),
            detail={"handle_id": handle.handle_id},
        )
        exhausted = RetryExhaustedError(
            f"{handle.capability.value} for transaction {handle.transaction_id} "
            f"did not complete after {handle.attempt} attempt(s)",
            last_error=last_error,
            attempts=handle.attempt,
            error_class=ErrorClass.TRANSIENT,
        )
        kind = DeadLetterKind.POST_STEP if handle.stage == WorkflowStage.POST_PROCESSING else DeadLetterKind.COMPLETION
        await self.dead_letters.quarantine(
            kind,
            handle.handle_id,
            exhausted,
            job_id=handle.job_id,
            payload={
                "transaction_id": handle.transaction_id,
                "capability": handle.capability.value,
                "outcome": outcome.value,
                "provider_operation_id": handle.provider_operation_id,
            },
        )
        return await self._settle_failure(handle, describe_error(exhausted))

    async def _apply_failure_policy(self, job_id: str, detail: dict[str, Any]) -> bool:
        """Fail the whole job under fail_fast. Returns True when the job was failed."""
        job = self.store.get_job(job_id)
        if job.failure_policy != FailurePolicy.FAIL_FAST or job.status in TERMINAL_JOB_STATUSES:
            return False
        try:
            live = self.store.cancel_job_records(job_id, to_status=JobStatus.FAILED, error_detail=detail)
        except ConflictError as exc:
            logger.info("Job %s already settled before fail-fast: %s", job_id, exc)
            return True
        await self.gateway.cancel_all(live)
        logger.warning("Job %s failed fast; %d live operation(s) cancelled", job_id, len(live))
        await self.notifications.publish(job_id, EventType.JOB_FAILED, {"reason": "fail_fast", "error": detail})
        return True

    # ------------------------------------------------------------------
    # Stage transitions
    # ------------------------------------------------------------------

    async def _advance_from_providers(self, job_id: str) -> None:
        if not self.store.transition_job(job_id, PROVIDER_STAGE_STATUSES, JobStatus.CONSOLIDATING):
            return
        await self._consolidate(job_id)

    async def _consolidate(self, job_id: str) -> None:
        job = self.store.get_job(job_id)
        if job.status != JobStatus.CONSOLIDATING:
            return

        threshold = self.confidence_threshold
        candidates: list[dict[str, Any]] = []
        incomplete: dict[str, Any] | None = None
        for transaction in job.transactions:
            if transaction.status == TransactionStatus.DISPATCHED or transaction.status == TransactionStatus.PENDING:
                missing = [c.value for c in job.capabilities if c.value not in transaction.results]
                incomplete = {
                    "error": "IncompleteResults",
                    "message": "Provider stage ended without results for every capability",
                    "missing": missing,
                }
                self.store.update_transaction_status(
                    transaction.transaction_id, TransactionStatus.FAILED, error_detail=incomplete
                )
                continue
            if transaction.status != TransactionStatus.PROVIDER_COMPLETE:
                continue

            consolidated = consolidate_results(transaction.results, job.capabilities)
            self.store.update_transaction_status(
                transaction.transaction_id,
                TransactionStatus.PROVIDER_COMPLETE,
                consolidated_result=consolidated,
            )
            if needs_review(consolidated, threshold):
                candidates.append(
                    {
                        "transaction_id": transaction.transaction_id,
                        "proposed_result": consolidated,
                        "confidence": consolidated["confidence"],
                    }
                )

        if incomplete is not None and await self._apply_failure_policy(job_id, incomplete):
            return

        if candidates:
            try:
                cases = self.store.open_review_cases(job_id, candidates)
            except ConflictError as exc:
                logger.info("Review cases for job %s not opened: %s", job_id, exc)
                return
            logger.info("Job %s awaiting review of %d transaction(s)", job_id, len(cases))
            for case in cases:
                await self.notifications.publish(
                    job_id,
                    EventType.REVIEW_CASE_CREATED,
                    {
                        "case_id": case.case_id,
                        "transaction_id": case.transaction_id,
                        "confidence": case.confidence,
                        "escalation_level": case.escalation_level,
                    },
                )
            return

        await self._start_post_processing(job_id)

    async def _start_post_processing(self, job_id: str) -> None:
        if not self.store.acquire_dispatch_guard(job_id, [JobStatus.CONSOLIDATING], JobStatus.POST_PROCESSING):
            return
        job = self.store.get_job(job_id)
        steps = self.post_steps
        for transaction in job.transactions:
            if transaction.status not in POST_PROCESSING_READY:
                continue
            moved = self.store.update_transaction_status(transaction.transaction_id, TransactionStatus.POST_PROCESSING)
            for step in steps:
                await self._dispatch(
                    job_id,
                    transaction.transaction_id,
                    transaction.source_ref,
                    step,
                    stage=WorkflowStage.POST_PROCESSING,
                    context=self._stage_context(WorkflowStage.POST_PROCESSING, moved),
                )
        await self._release_guard(job_id, WorkflowStage.POST_PROCESSING)

    async def _close_review_stage(self, job_id: str) -> None:
        if self.store.transition_job(job_id, [JobStatus.AWAITING_REVIEW], JobStatus.CONSOLIDATING):
            await self._start_post_processing(job_id)

    async def _finalize(self, job_id: str) -> None:
        outcome = self.store.finalize_job(job_id)
        if outcome is None:
            return
        job = self.store.get_job(job_id)
        event = EventType.JOB_COMPLETED if outcome == JobStatus.COMPLETED else EventType.JOB_FAILED
        logger.info(
            "Job %s %s: %d succeeded, %d failed of %d",
            job_id,
            outcome.value,
            job.completed_transactions,
            job.failed_transactions,
            job.total_transactions,
        )
        await self.notifications.publish(
            job_id,
            event,
            {
                "status": outcome.value,
                "total_transactions": job.total_transactions,
                "completed_transactions": job.completed_transactions,
                "failed_transactions": job.failed_transactions,
            },
        )

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    async def _resume_review(self, continuation: Continuation) -> SettleResult:
        case = self.store.get_review_case(continuation.context["case_id"])
        if case.decision == ReviewDecision.PENDING:
            raise ConflictError(f"Review case {case.case_id} has no decision yet", detail={"case_id": case.case_id})
        if case.decision == ReviewDecision.CANCELLED:
            return SettleResult(applied=False)

        review = {
            "case_id": case.case_id,
            "decision": case.decision.value,
            "reviewer": case.reviewer,
            "escalation_level": case.escalation_level,
        }
        final_result: dict[str, Any] | None = None
        failure: dict[str, Any] | None = None
        successor: dict[str, Any] | None = None

        if case.decision == ReviewDecision.APPROVED:
            final_result = {**case.proposed_result, "review": review}
        elif case.decision == ReviewDecision.REJECTED:
            if case.final_result:
                final_result = {**case.final_result, "review": {**review, "override": True}}
            else:
                failure = {"error": "ReviewRejected", "message": "Reviewer rejected the result without an override", **review}
        elif case.decision == ReviewDecision.ESCALATED:
            next_level = case.escalation_level + 1
            if next_level > self.max_escalations:
                failure = {
                    "error": "EscalationLimitExceeded",
                    "message": f"Escalated beyond level {self.max_escalations}",
                    **review,
                }
            else:
                successor = {
                    "transaction_id": case.transaction_id,
                    "proposed_result": case.proposed_result,
                    "confidence": case.confidence,
                    "escalation_level": next_level,
                }

        def mutate(transaction: TransactionView, job: JobView) -> TransactionChange | None:
            if transaction.status in TERMINAL_TRANSACTION_STATUSES or successor is not None:
                return None
            if failure is not None:
                return TransactionChange(status=TransactionStatus.FAILED, error_detail=failure)
            return TransactionChange(status=TransactionStatus.REVIEWED, consolidated_result=final_result)

        result = self.store.settle_review(case.continuation_token, mutate, successor=successor)
        if not result.applied:
            return result

        logger.info("Review case %s settled as %s", case.case_id, case.decision.value)
        if successor is not None:
            await self.notifications.publish(
                case.job_id,
                EventType.REVIEW_CASE_CREATED,
                {
                    "transaction_id": case.transaction_id,
                    "escalated_from": case.case_id,
                    "escalation_level": successor["escalation_level"],
                    "confidence": case.confidence,
                },
            )
            return result
        if failure is not None and await self._apply_failure_policy(case.job_id, failure):
            return result
        if result.remaining == 0:
            await self._close_review_stage(case.job_id)
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _stage_context(stage: WorkflowStage, transaction: TransactionView) -> dict[str, Any]:
        if stage == WorkflowStage.POST_PROCESSING:
            return {"consolidated_result": transaction.consolidated_result or {}}
        return {}

    @staticmethod
    def _error_from(outcome: CompletionOutcome, context: dict[str, Any]) -> dict[str, Any]:
        error = context.get("error")
        if isinstance(error, dict):
            detail = dict(error)
        elif error:
            detail = {"error": "ProviderFailure", "message": str(error)}
        else:
            detail = {"error": "ProviderFailure", "message": f"Provider reported {outcome.value}"}
        detail.setdefault("message", f"Provider reported {outcome.value}")
        detail["outcome"] = outcome.value
        return detail
