"""Durable job/transaction store.

Every mutation of workflow state goes through this module. Status changes are
guarded by compare-and-swap statements (``UPDATE ... WHERE version = :seen``
or ``WHERE status IN (...)``) whose ``rowcount`` decides the winner, and every
multi-record effect (settling an operation, opening review cases, cancelling a
job) commits in a single session transaction.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from models.database import (
    ContinuationRecord,
    DeadLetterRecord,
    JobRecord,
    ProviderOperationRecord,
    ReviewCaseRecord,
    StatusHistoryRecord,
    TransactionRecord,
)
from shared.enums import (
    REQUESTABLE_CAPABILITIES,
    RETRY_ENTRY_STATUS,
    TERMINAL_JOB_STATUSES,
    TERMINAL_TRANSACTION_STATUSES,
    TRANSACTION_STATUS_RANK,
    Capability,
    CompletionMode,
    DeadLetterKind,
    ErrorClass,
    FailurePolicy,
    HandleState,
    JobStatus,
    ReviewDecision,
    TransactionStatus,
    WorkflowStage,
)
from shared.errors import ConflictError, NotFoundError, ValidationError
from shared.models import (
    Continuation,
    DeadLetter,
    JobPage,
    JobSummary,
    JobView,
    ProviderOperationHandle,
    ReviewCase,
    SettleResult,
    StatusChange,
    TransactionChange,
    TransactionView,
)
from shared.utils import config, decode_cursor, encode_cursor, new_id, setup_logging, utcnow

logger = setup_logging("job-store")

TransactionMutator = Callable[[TransactionView, JobView], TransactionChange | None]

ACTIVE_JOB_STATUSES = tuple(status for status in JobStatus if status not in TERMINAL_JOB_STATUSES)


class JobStore:
    """Single source of truth for jobs, transactions, handles, continuations and review cases."""

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        if session_factory is None:
            from database import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Jobs and transactions
    # ------------------------------------------------------------------

    def create_job(
        self,
        owner_id: str,
        capabilities: Iterable[Capability | str],
        file_refs: Iterable[str],
        label: str | None = None,
        failure_policy: FailurePolicy | str | None = None,
        ttl_hours: float | None = None,
    ) -> str:
        """Create a job in CREATED state together with one transaction per file reference."""
        requested = self._validate_capabilities(capabilities)
        refs = [ref for ref in file_refs]
        if not owner_id or not owner_id.strip():
            raise ValidationError("owner_id is required")
        if not refs:
            raise ValidationError("At least one file reference is required")
        if any(not isinstance(ref, str) or not ref.strip() for ref in refs):
            raise ValidationError("File references must be non-empty strings")

        policy_value = failure_policy or config.get_pipeline_value("jobs.failure_policy", FailurePolicy.PARTIAL.value)
        try:
            policy = FailurePolicy(policy_value)
        except ValueError as exc:
            raise ValidationError(f"Unknown failure policy '{policy_value}'") from exc

        ttl = ttl_hours if ttl_hours is not None else float(config.get_pipeline_value("jobs.ttl_hours", 72))
        now = utcnow()
        job_id = new_id()

        with self._transaction() as session:
            session.add(
                JobRecord(
                    job_id=job_id,
                    owner_id=owner_id,
                    label=label,
                    status=JobStatus.CREATED.value,
                    capabilities=[capability.value for capability in requested],
                    failure_policy=policy.value,
                    total_transactions=0,
                    created_at=now,
                    updated_at=now,
                    expires_at=now + timedelta(hours=ttl),
                )
            )
            self._record_history(session, "job", job_id, job_id, None, JobStatus.CREATED.value)
            session.flush()
            self._add_transactions(session, job_id, refs)

        logger.info("Created job %s for owner %s with %d file(s)", job_id, owner_id, len(refs))
        return job_id

    def create_transactions(self, job_id: str, file_refs: Iterable[str]) -> list[str]:
        """Attach further transactions to a job that has not started yet."""
        refs = list(file_refs)
        if not refs:
            raise ValidationError("At least one file reference is required")
        with self._transaction() as session:
            job = self._load_job(session, job_id)
            if job.status != JobStatus.CREATED.value:
                raise ConflictError(
                    f"Job {job_id} is {job.status}; transactions can only be added before start",
                    detail={"job_id": job_id, "status": job.status},
                )
            return self._add_transactions(session, job_id, refs)

    def _add_transactions(self, session: Session, job_id: str, refs: list[str]) -> list[str]:
        now = utcnow()
        transaction_ids: list[str] = []
        for ref in refs:
            transaction_id = new_id()
            session.add(
                TransactionRecord(
                    transaction_id=transaction_id,
                    job_id=job_id,
                    status=TransactionStatus.PENDING.value,
                    source_ref=ref,
                    results={},
                    created_at=now,
                    updated_at=now,
                )
            )
            transaction_ids.append(transaction_id)
        session.execute(
            update(JobRecord)
            .where(JobRecord.job_id == job_id)
            .values(total_transactions=JobRecord.total_transactions + len(refs), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return transaction_ids

    def get_job(self, job_id: str, include_history: bool = False) -> JobView:
        with self._transaction() as session:
            job = self._load_job(session, job_id)
            view = self._job_view(job)
            if include_history:
                rows = session.scalars(
                    select(StatusHistoryRecord)
                    .where(StatusHistoryRecord.job_id == job_id)
                    .order_by(StatusHistoryRecord.id)
                ).all()
                view.history = [StatusChange.model_validate(row) for row in rows]
            return view

    def get_transaction(self, transaction_id: str) -> TransactionView:
        with self._transaction() as session:
            return TransactionView.model_validate(self._load_transaction(session, transaction_id))

    def list_by_status(self, status: JobStatus | str, cursor: str | None = None, limit: int | None = None) -> JobPage:
        """Keyset-paginated listing of jobs in a status."""
        status_value = JobStatus(status).value
        page_size = int(limit or config.get_pipeline_value("jobs.page_size", 50))
        if page_size <= 0:
            raise ValidationError("limit must be positive")
        after = 0
        if cursor:
            try:
                after = decode_cursor(cursor)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc

        with self._transaction() as session:
            rows = session.scalars(
                select(JobRecord)
                .where(JobRecord.status == status_value, JobRecord.id > after)
                .order_by(JobRecord.id)
                .limit(page_size + 1)
            ).all()
            has_more = len(rows) > page_size
            rows = rows[:page_size]
            next_cursor = encode_cursor(rows[-1].id) if has_more and rows else None
            return JobPage(items=[JobSummary.model_validate(row) for row in rows], next_cursor=next_cursor)

    def update_transaction_status(
        self,
        transaction_id: str,
        new_status: TransactionStatus | str,
        result_ref: dict[str, Any] | str | None = None,
        error_detail: dict[str, Any] | None = None,
        expected_version: int | None = None,
        consolidated_result: dict[str, Any] | None = None,
    ) -> TransactionView:
        """Move a transaction forward. Regressions and stale versions raise ConflictError."""
        target = TransactionStatus(new_status)
        with self._transaction() as session:
            record = self._load_transaction(session, transaction_id)
            if expected_version is not None and record.version != expected_version:
                raise ConflictError(
                    f"Stale update for transaction {transaction_id}",
                    detail={"expected_version": expected_version, "current_version": record.version},
                )
            results = None
            if result_ref is not None:
                results = dict(record.results or {})
                if isinstance(result_ref, dict):
                    results.update(result_ref)
                else:
                    results["result_ref"] = result_ref
            change = TransactionChange(
                status=target,
                results=results,
                consolidated_result=consolidated_result,
                error_detail=error_detail,
            )
            self._apply_transaction_change(session, record, change)
            session.flush()
            session.refresh(record)
            return TransactionView.model_validate(record)

    def transition_job(
        self,
        job_id: str,
        from_statuses: Iterable[JobStatus],
        to_status: JobStatus,
        error_detail: dict[str, Any] | None = None,
    ) -> bool:
        """Compare-and-swap the job status. Returns False when another writer got there first."""
        with self._transaction() as session:
            return self._transition_job(session, job_id, from_statuses, to_status, error_detail)

    # ------------------------------------------------------------------
    # Dispatch, completion and settlement
    # ------------------------------------------------------------------

    def record_dispatch(
        self,
        *,
        job_id: str,
        transaction_id: str,
        capability: Capability,
        stage: WorkflowStage,
        completion_mode: CompletionMode,
        payload_ref: str,
        timeout_seconds: float,
        attempt: int = 1,
        context: dict[str, Any] | None = None,
    ) -> ProviderOperationHandle:
        """Persist a handle and its continuation before the provider call is made.

        A LIVE handle for the same (transaction, capability) pair is invalidated and
        its continuation consumed; the new handle takes over its outstanding slot.
        """
        now = utcnow()
        live_key = f"{transaction_id}:{capability.value}"
        with self._transaction() as session:
            job = self._load_job(session, job_id)
            if job.status in {status.value for status in TERMINAL_JOB_STATUSES}:
                raise ConflictError(
                    f"Job {job_id} is {job.status}; no further dispatches",
                    detail={"job_id": job_id, "status": job.status},
                )
            transaction = self._load_transaction(session, transaction_id)

            prior = session.scalars(
                select(ProviderOperationRecord).where(ProviderOperationRecord.live_key == live_key)
            ).first()
            if prior is not None:
                self._retire_handle(session, prior, HandleState.INVALIDATED, now)
                logger.info(
                    "Invalidated live handle %s for transaction %s/%s",
                    prior.handle_id,
                    transaction_id,
                    capability.value,
                )
            else:
                self._adjust_job_counter(session, job_id, "pending_operations", 1)

            token = new_id()
            handle_id = new_id()
            session.add(
                ContinuationRecord(
                    token=token,
                    job_id=job_id,
                    transaction_id=transaction_id,
                    stage=stage.value,
                    context={
                        **(context or {}),
                        "handle_id": handle_id,
                        "capability": capability.value,
                        "attempt": attempt,
                    },
                    created_at=now,
                )
            )
            session.add(
                ProviderOperationRecord(
                    handle_id=handle_id,
                    job_id=job_id,
                    transaction_id=transaction_id,
                    capability=capability.value,
                    stage=stage.value,
                    completion_mode=completion_mode.value,
                    continuation_token=token,
                    state=HandleState.LIVE.value,
                    live_key=live_key,
                    attempt=attempt,
                    payload_ref=payload_ref,
                    issued_at=now,
                    deadline_at=now + timedelta(seconds=timeout_seconds),
                )
            )
            if stage == WorkflowStage.AWAITING_PROVIDERS and transaction.status == TransactionStatus.PENDING.value:
                self._apply_transaction_change(
                    session, transaction, TransactionChange(status=TransactionStatus.DISPATCHED)
                )
            session.flush()
            record = self._load_handle(session, handle_id)
            return ProviderOperationHandle.model_validate(record)

    def bind_provider_operation(self, handle_id: str, provider_operation_id: str) -> ProviderOperationHandle:
        """Attach the provider-assigned operation id. The first binding wins."""
        with self._transaction() as session:
            session.execute(
                update(ProviderOperationRecord)
                .where(
                    ProviderOperationRecord.handle_id == handle_id,
                    ProviderOperationRecord.provider_operation_id.is_(None),
                )
                .values(provider_operation_id=provider_operation_id)
                .execution_options(synchronize_session=False)
            )
            return ProviderOperationHandle.model_validate(self._load_handle(session, handle_id))

    def has_unbound_live_handles(self, issued_after: datetime) -> bool:
        """True while some recent submission has not reported its provider operation id yet."""
        with self._transaction() as session:
            return (
                session.scalars(
                    select(ProviderOperationRecord.id)
                    .where(
                        ProviderOperationRecord.state == HandleState.LIVE.value,
                        ProviderOperationRecord.provider_operation_id.is_(None),
                        ProviderOperationRecord.issued_at > issued_after,
                    )
                    .limit(1)
                ).first()
                is not None
            )

    def get_handle(self, handle_id: str) -> ProviderOperationHandle:
        with self._transaction() as session:
            return ProviderOperationHandle.model_validate(self._load_handle(session, handle_id))

    def find_handle(self, operation_id: str) -> ProviderOperationHandle | None:
        """Look a handle up by provider operation id, falling back to our own handle id."""
        with self._transaction() as session:
            record = session.scalars(
                select(ProviderOperationRecord).where(
                    or_(
                        ProviderOperationRecord.provider_operation_id == operation_id,
                        ProviderOperationRecord.handle_id == operation_id,
                    )
                )
            ).first()
            return ProviderOperationHandle.model_validate(record) if record else None

    def consume_handle(self, handle_id: str, outcome: dict[str, Any]) -> bool:
        """Atomically move a handle LIVE -> CONSUMED. False means somebody else consumed it."""
        now = utcnow()
        with self._transaction() as session:
            result = session.execute(
                update(ProviderOperationRecord)
                .where(
                    ProviderOperationRecord.handle_id == handle_id,
                    ProviderOperationRecord.state == HandleState.LIVE.value,
                )
                .values(state=HandleState.CONSUMED.value, live_key=None, consumed_at=now, outcome=outcome)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def get_continuation(self, token: str) -> Continuation | None:
        with self._transaction() as session:
            record = session.scalars(select(ContinuationRecord).where(ContinuationRecord.token == token)).first()
            return Continuation.model_validate(record) if record else None

    def settle_operation(
        self,
        token: str,
        mutate: TransactionMutator | None = None,
        *,
        decrement: bool = True,
    ) -> SettleResult:
        """Consume a continuation and apply its effects in one transaction.

        Marks the linked handle SETTLED, applies ``mutate`` to the owning
        transaction, and decrements the job's outstanding counter. The returned
        ``remaining`` is the counter value after the decrement; the caller that
        observes zero owns the fan-in.
        """
        with self._transaction() as session:
            continuation = self._consume_continuation(session, token)
            if continuation is None:
                return SettleResult(applied=False)

            handle_id = (continuation.context or {}).get("handle_id")
            if handle_id:
                handle = session.scalars(
                    select(ProviderOperationRecord).where(ProviderOperationRecord.handle_id == handle_id)
                ).first()
                if handle is not None and handle.state in (HandleState.LIVE.value, HandleState.CONSUMED.value):
                    handle.state = HandleState.SETTLED.value
                    handle.live_key = None
                    handle.consumed_at = handle.consumed_at or utcnow()

            transaction_view = self._mutate_transaction(session, continuation, mutate)
            remaining = self._decrement_pending(session, continuation.job_id, "pending_operations", decrement)
            job = self._load_job(session, continuation.job_id)
            return SettleResult(
                applied=True,
                remaining=remaining,
                job_status=JobStatus(job.status),
                transaction=transaction_view,
            )

    def release_dispatch_guard(self, job_id: str) -> int:
        """Drop the +1 held while a batch of dispatches is issued. Returns the remaining count."""
        with self._transaction() as session:
            return self._decrement_pending(session, job_id, "pending_operations", True)

    def acquire_dispatch_guard(self, job_id: str, from_statuses: Iterable[JobStatus], to_status: JobStatus) -> bool:
        """Transition the job and take the dispatch guard atomically."""
        with self._transaction() as session:
            if not self._transition_job(session, job_id, from_statuses, to_status):
                return False
            self._adjust_job_counter(session, job_id, "pending_operations", 1)
            return True

    def list_live_handles(
        self,
        *,
        job_id: str | None = None,
        completion_mode: CompletionMode | None = None,
    ) -> list[ProviderOperationHandle]:
        with self._transaction() as session:
            stmt = select(ProviderOperationRecord).where(ProviderOperationRecord.state == HandleState.LIVE.value)
            if job_id:
                stmt = stmt.where(ProviderOperationRecord.job_id == job_id)
            if completion_mode:
                stmt = stmt.where(ProviderOperationRecord.completion_mode == completion_mode.value)
            rows = session.scalars(stmt.order_by(ProviderOperationRecord.id)).all()
            return [ProviderOperationHandle.model_validate(row) for row in rows]

    def list_expired_handles(self, now: datetime | None = None) -> list[ProviderOperationHandle]:
        with self._transaction() as session:
            rows = session.scalars(
                select(ProviderOperationRecord)
                .where(
                    ProviderOperationRecord.state == HandleState.LIVE.value,
                    ProviderOperationRecord.deadline_at < (now or utcnow()),
                )
                .order_by(ProviderOperationRecord.deadline_at)
            ).all()
            return [ProviderOperationHandle.model_validate(row) for row in rows]

    def list_consumed_handles(self, older_than: timedelta | None = None) -> list[ProviderOperationHandle]:
        """Handles consumed by the router whose effects have not been settled yet."""
        with self._transaction() as session:
            stmt = select(ProviderOperationRecord).where(ProviderOperationRecord.state == HandleState.CONSUMED.value)
            if older_than is not None:
                stmt = stmt.where(ProviderOperationRecord.consumed_at < utcnow() - older_than)
            quarantined = select(DeadLetterRecord.id).where(
                DeadLetterRecord.kind == DeadLetterKind.COMPLETION.value,
                DeadLetterRecord.reference_id == ProviderOperationRecord.handle_id,
            )
            stmt = stmt.where(~quarantined.exists())
            rows = session.scalars(stmt.order_by(ProviderOperationRecord.id)).all()
            return [ProviderOperationHandle.model_validate(row) for row in rows]

    # ------------------------------------------------------------------
    # Review cases
    # ------------------------------------------------------------------

    def open_review_cases(
        self,
        job_id: str,
        candidates: list[dict[str, Any]],
        *,
        from_statuses: Iterable[JobStatus] = (JobStatus.CONSOLIDATING,),
    ) -> list[ReviewCase]:
        """Create review cases and move the job to AWAITING_REVIEW in one transaction.

        Each candidate carries ``transaction_id``, ``proposed_result`` and ``confidence``.
        """
        if not candidates:
            return []
        with self._transaction() as session:
            job = self._load_job(session, job_id)
            current = job.status
            allowed = {JobStatus(status).value for status in from_statuses}
            if current not in allowed:
                raise ConflictError(
                    f"Job {job_id} is {current}; cannot open review cases",
                    detail={"job_id": job_id, "status": current},
                )
            if current != JobStatus.AWAITING_REVIEW.value and not self._transition_job(
                session, job_id, [JobStatus(current)], JobStatus.AWAITING_REVIEW
            ):
                raise ConflictError(f"Job {job_id} changed state while opening review cases")

            cases = []
            for candidate in candidates:
                transaction = self._load_transaction(session, candidate["transaction_id"])
                if transaction.job_id != job_id:
                    raise ValidationError(f"Transaction {transaction.transaction_id} does not belong to job {job_id}")
                record = self._add_review_case(session, job_id, transaction.transaction_id, candidate)
                self._apply_transaction_change(
                    session, transaction, TransactionChange(status=TransactionStatus.IN_REVIEW)
                )
                cases.append(record)
            self._adjust_job_counter(session, job_id, "pending_reviews", len(cases))
            session.flush()
            return [ReviewCase.model_validate(record) for record in cases]

    def _add_review_case(
        self, session: Session, job_id: str, transaction_id: str, candidate: dict[str, Any]
    ) -> ReviewCaseRecord:
        token = new_id()
        case_id = new_id()
        now = utcnow()
        session.add(
            ContinuationRecord(
                token=token,
                job_id=job_id,
                transaction_id=transaction_id,
                stage=WorkflowStage.AWAITING_REVIEW.value,
                context={"case_id": case_id},
                created_at=now,
            )
        )
        record = ReviewCaseRecord(
            case_id=case_id,
            job_id=job_id,
            transaction_id=transaction_id,
            proposed_result=candidate.get("proposed_result") or {},
            confidence=float(candidate["confidence"]),
            decision=ReviewDecision.PENDING.value,
            escalation_level=int(candidate.get("escalation_level", 0)),
            continuation_token=token,
            created_at=now,
        )
        session.add(record)
        return record

    def get_review_case(self, case_id: str) -> ReviewCase:
        with self._transaction() as session:
            return ReviewCase.model_validate(self._load_review_case(session, case_id))

    def list_review_cases(
        self, *, job_id: str | None = None, decision: ReviewDecision | None = None
    ) -> list[ReviewCase]:
        with self._transaction() as session:
            stmt = select(ReviewCaseRecord)
            if job_id:
                stmt = stmt.where(ReviewCaseRecord.job_id == job_id)
            if decision:
                stmt = stmt.where(ReviewCaseRecord.decision == decision.value)
            rows = session.scalars(stmt.order_by(ReviewCaseRecord.id)).all()
            return [ReviewCase.model_validate(row) for row in rows]

    def list_unsettled_decisions(self, older_than: timedelta | None = None) -> list[ReviewCase]:
        """Decided cases whose review continuation was never consumed."""
        with self._transaction() as session:
            stmt = (
                select(ReviewCaseRecord)
                .join(ContinuationRecord, ContinuationRecord.token == ReviewCaseRecord.continuation_token)
                .where(
                    ReviewCaseRecord.decision.notin_([ReviewDecision.PENDING.value, ReviewDecision.CANCELLED.value]),
                    ContinuationRecord.consumed_at.is_(None),
                )
            )
            if older_than is not None:
                stmt = stmt.where(ReviewCaseRecord.decided_at < utcnow() - older_than)
            rows = session.scalars(stmt.order_by(ReviewCaseRecord.id)).all()
            return [ReviewCase.model_validate(row) for row in rows]

    def decide_review_case(
        self,
        case_id: str,
        decision: ReviewDecision,
        final_result: dict[str, Any] | None = None,
        reviewer: str | None = None,
    ) -> ReviewCase:
        """Record a reviewer decision. Only PENDING cases accept one."""
        with self._transaction() as session:
            record = self._load_review_case(session, case_id)
            result = session.execute(
                update(ReviewCaseRecord)
                .where(
                    ReviewCaseRecord.case_id == case_id,
                    ReviewCaseRecord.decision == ReviewDecision.PENDING.value,
                )
                .values(decision=decision.value, final_result=final_result, reviewer=reviewer, decided_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError(
                    f"Review case {case_id} is already {record.decision}",
                    detail={"case_id": case_id, "decision": record.decision},
                )
            session.refresh(record)
            return ReviewCase.model_validate(record)

    def settle_review(
        self,
        token: str,
        mutate: TransactionMutator | None = None,
        *,
        successor: dict[str, Any] | None = None,
    ) -> SettleResult:
        """Consume a review continuation; either close the slot or hand it to a successor case."""
        with self._transaction() as session:
            continuation = self._consume_continuation(session, token)
            if continuation is None:
                return SettleResult(applied=False)
            transaction_view = self._mutate_transaction(session, continuation, mutate)
            if successor is not None:
                self._add_review_case(session, continuation.job_id, continuation.transaction_id, successor)
                remaining = self._load_job(session, continuation.job_id).pending_reviews
            else:
                remaining = self._decrement_pending(session, continuation.job_id, "pending_reviews", True)
            job = self._load_job(session, continuation.job_id)
            return SettleResult(
                applied=True,
                remaining=remaining,
                job_status=JobStatus(job.status),
                transaction=transaction_view,
            )

    # ------------------------------------------------------------------
    # Cancellation, retry, deletion
    # ------------------------------------------------------------------

    def cancel_job_records(self, job_id: str, to_status: JobStatus = JobStatus.CANCELLED,
                           error_detail: dict[str, Any] | None = None) -> list[ProviderOperationHandle]:
        """Move a job to CANCELLED (or FAILED) and retire everything still outstanding.

        Returns the handles that were live so the caller can cancel them at the provider.
        """
        now = utcnow()
        with self._transaction() as session:
            job = self._load_job(session, job_id)
            if not self._transition_job(session, job_id, ACTIVE_JOB_STATUSES, to_status, error_detail):
                raise ConflictError(
                    f"Job {job_id} is already {job.status}",
                    detail={"job_id": job_id, "status": job.status},
                )
            handles = session.scalars(
                select(ProviderOperationRecord).where(
                    ProviderOperationRecord.job_id == job_id,
                    ProviderOperationRecord.state.in_([HandleState.LIVE.value, HandleState.CONSUMED.value]),
                )
            ).all()
            live = [ProviderOperationHandle.model_validate(handle) for handle in handles
                    if handle.state == HandleState.LIVE.value]
            for handle in handles:
                self._retire_handle(session, handle, HandleState.CANCELLED, now)

            session.execute(
                update(ContinuationRecord)
                .where(ContinuationRecord.job_id == job_id, ContinuationRecord.consumed_at.is_(None))
                .values(consumed_at=now)
                .execution_options(synchronize_session=False)
            )
            session.execute(
                update(ReviewCaseRecord)
                .where(ReviewCaseRecord.job_id == job_id, ReviewCaseRecord.decision == ReviewDecision.PENDING.value)
                .values(decision=ReviewDecision.CANCELLED.value, decided_at=now)
                .execution_options(synchronize_session=False)
            )
            transactions = session.scalars(
                select(TransactionRecord).where(TransactionRecord.job_id == job_id)
            ).all()
            for transaction in transactions:
                if transaction.status not in {status.value for status in TERMINAL_TRANSACTION_STATUSES}:
                    self._apply_transaction_change(
                        session, transaction, TransactionChange(status=TransactionStatus.CANCELLED)
                    )
            session.execute(
                update(JobRecord)
                .where(JobRecord.job_id == job_id)
                .values(pending_operations=0, pending_reviews=0)
                .execution_options(synchronize_session=False)
            )
            return live

    def finalize_job(self, job_id: str) -> JobStatus | None:
        """Close a POST_PROCESSING job: surviving transactions succeed, the job completes or fails.

        The job fails when every transaction failed, or under fail_fast when any did.
        Returns None when the job was not in POST_PROCESSING.
        """
        with self._transaction() as session:
            job = self._load_job(session, job_id)
            transactions = session.scalars(
                select(TransactionRecord).where(TransactionRecord.job_id == job_id).order_by(TransactionRecord.id)
            ).all()
            failed = sum(1 for transaction in transactions if transaction.status == TransactionStatus.FAILED.value)
            all_failed = bool(transactions) and failed == len(transactions)
            fail_fast = job.failure_policy == FailurePolicy.FAIL_FAST.value
            target = JobStatus.FAILED if all_failed or (fail_fast and failed) else JobStatus.COMPLETED
            error_detail = {"failed_transactions": failed} if target == JobStatus.FAILED else None

            if not self._transition_job(session, job_id, [JobStatus.POST_PROCESSING], target, error_detail):
                return None
            for transaction in transactions:
                if transaction.status not in {status.value for status in TERMINAL_TRANSACTION_STATUSES}:
                    self._apply_transaction_change(
                        session, transaction, TransactionChange(status=TransactionStatus.SUCCEEDED)
                    )
            return target

    def retry_transaction(self, transaction_id: str) -> TransactionView:
        """Reset a FAILED transaction to the retry-entry status and reopen its job for dispatch.

        The job is moved to DISPATCHED with the dispatch guard held; the caller
        issues the dispatches and releases the guard.
        """
        with self._transaction() as session:
            record = self._load_transaction(session, transaction_id)
            if record.status != TransactionStatus.FAILED.value:
                raise ConflictError(
                    f"Only failed transactions can be retried (transaction {transaction_id} is {record.status})",
                    detail={"transaction_id": transaction_id, "status": record.status},
                )
            job = self._load_job(session, record.job_id)
            if job.status == JobStatus.CANCELLED.value:
                raise ConflictError(f"Job {job.job_id} was cancelled", detail={"job_id": job.job_id})
            if job.status not in (
                JobStatus.COMPLETED.value,
                JobStatus.FAILED.value,
                JobStatus.AWAITING_PROVIDERS.value,
            ):
                raise ConflictError(
                    f"Job {job.job_id} is {job.status}; retry it once the current stage settles",
                    detail={"job_id": job.job_id, "status": job.status},
                )

            expected = record.version
            result = session.execute(
                update(TransactionRecord)
                .where(TransactionRecord.transaction_id == transaction_id, TransactionRecord.version == expected)
                .values(
                    status=RETRY_ENTRY_STATUS.value,
                    results={},
                    consolidated_result=None,
                    error_detail=None,
                    version=expected + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError(f"Concurrent update on transaction {transaction_id}")
            self._record_history(
                session, "transaction", transaction_id, record.job_id,
                TransactionStatus.FAILED.value, RETRY_ENTRY_STATUS.value, {"reason": "retry"},
            )
            self._adjust_job_counter(session, record.job_id, "failed_transactions", -1)
            if job.status != JobStatus.AWAITING_PROVIDERS.value:
                self._transition_job(
                    session, job.job_id, [JobStatus(job.status)], JobStatus.DISPATCHED, None, reopen=True
                )
            self._adjust_job_counter(session, record.job_id, "pending_operations", 1)
            session.refresh(record)
            return TransactionView.model_validate(record)

    def delete_job(self, job_id: str) -> list[ProviderOperationHandle]:
        """Remove a job and all of its state. Returns handles that were still live."""
        with self._transaction() as session:
            job = self._load_job(session, job_id)
            live = session.scalars(
                select(ProviderOperationRecord).where(
                    ProviderOperationRecord.job_id == job_id,
                    ProviderOperationRecord.state == HandleState.LIVE.value,
                )
            ).all()
            live_views = [ProviderOperationHandle.model_validate(handle) for handle in live]
            for model in (ProviderOperationRecord, ContinuationRecord, ReviewCaseRecord, StatusHistoryRecord):
                session.execute(
                    delete(model).where(model.job_id == job_id).execution_options(synchronize_session=False)
                )
            session.delete(job)
            logger.info("Deleted job %s", job_id)
            return live_views

    def list_stalled_jobs(self, older_than: timedelta) -> list[JobView]:
        """Active jobs whose outstanding work reached zero without the stage advancing."""
        cutoff = utcnow() - older_than
        with self._transaction() as session:
            rows = session.scalars(
                select(JobRecord).where(
                    JobRecord.updated_at < cutoff,
                    or_(
                        (JobRecord.status.in_([JobStatus.AWAITING_PROVIDERS.value, JobStatus.POST_PROCESSING.value]))
                        & (JobRecord.pending_operations == 0),
                        (JobRecord.status == JobStatus.AWAITING_REVIEW.value) & (JobRecord.pending_reviews == 0),
                        JobRecord.status == JobStatus.CONSOLIDATING.value,
                    ),
                )
            ).all()
            return [self._job_view(row) for row in rows]

    def list_expired_jobs(self, now: datetime | None = None) -> list[str]:
        with self._transaction() as session:
            return list(
                session.scalars(select(JobRecord.job_id).where(JobRecord.expires_at < (now or utcnow()))).all()
            )

    # ------------------------------------------------------------------
    # Dead letters
    # ------------------------------------------------------------------

    def quarantine(
        self,
        kind: DeadLetterKind,
        reference_id: str,
        *,
        job_id: str | None,
        payload: dict[str, Any] | None,
        error_class: ErrorClass,
        error_detail: dict[str, Any] | None,
        attempts: int,
    ) -> DeadLetter:
        with self._transaction() as session:
            record = DeadLetterRecord(
                dead_letter_id=new_id(),
                kind=kind.value,
                reference_id=reference_id,
                job_id=job_id,
                payload=payload or {},
                error_class=error_class.value,
                error_detail=error_detail,
                attempts=attempts,
                acknowledged=False,
                created_at=utcnow(),
            )
            session.add(record)
            session.flush()
            return DeadLetter.model_validate(record)

    def list_dead_letters(self, *, acknowledged: bool | None = False, job_id: str | None = None) -> list[DeadLetter]:
        with self._transaction() as session:
            stmt = select(DeadLetterRecord)
            if acknowledged is not None:
                stmt = stmt.where(DeadLetterRecord.acknowledged == acknowledged)
            if job_id:
                stmt = stmt.where(DeadLetterRecord.job_id == job_id)
            rows = session.scalars(stmt.order_by(DeadLetterRecord.id)).all()
            return [DeadLetter.model_validate(row) for row in rows]

    def acknowledge_dead_letter(self, dead_letter_id: str) -> DeadLetter:
        with self._transaction() as session:
            record = session.scalars(
                select(DeadLetterRecord).where(DeadLetterRecord.dead_letter_id == dead_letter_id)
            ).first()
            if record is None:
                raise NotFoundError(f"Dead letter {dead_letter_id} not found")
            record.acknowledged = True
            record.acknowledged_at = utcnow()
            session.flush()
            return DeadLetter.model_validate(record)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_capabilities(capabilities: Iterable[Capability | str]) -> list[Capability]:
        requested: list[Capability] = []
        for raw in capabilities:
            try:
                capability = Capability(raw)
            except ValueError as exc:
                raise ValidationError(f"Unknown capability '{raw}'") from exc
            if capability not in REQUESTABLE_CAPABILITIES:
                raise ValidationError(f"Capability '{capability.value}' cannot be requested directly")
            if capability not in requested:
                requested.append(capability)
        if not requested:
            raise ValidationError("At least one capability is required")
        return requested

    @staticmethod
    def _load_job(session: Session, job_id: str) -> JobRecord:
        record = session.scalars(select(JobRecord).where(JobRecord.job_id == job_id)).first()
        if record is None:
            raise NotFoundError(f"Job {job_id} not found", detail={"job_id": job_id})
        return record

    @staticmethod
    def _load_transaction(session: Session, transaction_id: str) -> TransactionRecord:
        record = session.scalars(
            select(TransactionRecord).where(TransactionRecord.transaction_id == transaction_id)
        ).first()
        if record is None:
            raise NotFoundError(f"Transaction {transaction_id} not found", detail={"transaction_id": transaction_id})
        return record

    @staticmethod
    def _load_handle(session: Session, handle_id: str) -> ProviderOperationRecord:
        record = session.scalars(
            select(ProviderOperationRecord).where(ProviderOperationRecord.handle_id == handle_id)
        ).first()
        if record is None:
            raise NotFoundError(f"Operation handle {handle_id} not found", detail={"handle_id": handle_id})
        return record

    @staticmethod
    def _load_review_case(session: Session, case_id: str) -> ReviewCaseRecord:
        record = session.scalars(select(ReviewCaseRecord).where(ReviewCaseRecord.case_id == case_id)).first()
        if record is None:
            raise NotFoundError(f"Review case {case_id} not found", detail={"case_id": case_id})
        return record

    def _job_view(self, job: JobRecord) -> JobView:
        view = JobView.model_validate(job)
        return view

    def _transition_job(
        self,
        session: Session,
        job_id: str,
        from_statuses: Iterable[JobStatus],
        to_status: JobStatus,
        error_detail: dict[str, Any] | None = None,
        reopen: bool = False,
    ) -> bool:
        allowed = [JobStatus(status).value for status in from_statuses]
        current = session.scalars(select(JobRecord.status).where(JobRecord.job_id == job_id)).first()
        if current is None:
            raise NotFoundError(f"Job {job_id} not found", detail={"job_id": job_id})
        now = utcnow()
        values: dict[str, Any] = {"status": to_status.value, "updated_at": now, "version": JobRecord.version + 1}
        if error_detail is not None:
            values["error_detail"] = error_detail
        if to_status in TERMINAL_JOB_STATUSES:
            values["completed_at"] = now
        if reopen:
            values["completed_at"] = None
            values["error_detail"] = None
        result = session.execute(
            update(JobRecord)
            .where(JobRecord.job_id == job_id, JobRecord.status.in_(allowed))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self._record_history(session, "job", job_id, job_id, current, to_status.value, error_detail)
        session.flush()
        session.expire_all()
        return True

    def _apply_transaction_change(self, session: Session, record: TransactionRecord, change: TransactionChange) -> None:
        current = TransactionStatus(record.status)
        target = change.status or current
        if target != current:
            if current in TERMINAL_TRANSACTION_STATUSES:
                raise ConflictError(
                    f"Transaction {record.transaction_id} is already {current.value}",
                    detail={"transaction_id": record.transaction_id, "status": current.value},
                )
            if TRANSACTION_STATUS_RANK[target] < TRANSACTION_STATUS_RANK[current]:
                raise ConflictError(
                    f"Transaction {record.transaction_id} cannot move from {current.value} to {target.value}",
                    detail={"transaction_id": record.transaction_id, "from": current.value, "to": target.value},
                )

        values: dict[str, Any] = {"version": record.version + 1, "updated_at": utcnow()}
        if target != current:
            values["status"] = target.value
        if change.results is not None:
            values["results"] = change.results
        if change.consolidated_result is not None:
            values["consolidated_result"] = change.consolidated_result
        if change.error_detail is not None:
            values["error_detail"] = change.error_detail

        result = session.execute(
            update(TransactionRecord)
            .where(TransactionRecord.transaction_id == record.transaction_id, TransactionRecord.version == record.version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Concurrent update on transaction {record.transaction_id}",
                detail={"transaction_id": record.transaction_id, "version": record.version},
            )

        if target != current:
            self._record_history(
                session, "transaction", record.transaction_id, record.job_id,
                current.value, target.value, change.error_detail,
            )
            if target == TransactionStatus.SUCCEEDED:
                self._adjust_job_counter(session, record.job_id, "completed_transactions", 1)
            elif target == TransactionStatus.FAILED:
                self._adjust_job_counter(session, record.job_id, "failed_transactions", 1)
        session.expire(record)

    def _mutate_transaction(
        self, session: Session, continuation: ContinuationRecord, mutate: TransactionMutator | None
    ) -> TransactionView | None:
        if not continuation.transaction_id:
            return None
        record = self._load_transaction(session, continuation.transaction_id)
        if mutate is not None:
            job_view = self._job_view(self._load_job(session, continuation.job_id))
            change = mutate(TransactionView.model_validate(record), job_view)
            if change is not None:
                self._apply_transaction_change(session, record, change)
        session.flush()
        session.refresh(record)
        return TransactionView.model_validate(record)

    def _consume_continuation(self, session: Session, token: str) -> ContinuationRecord | None:
        result = session.execute(
            update(ContinuationRecord)
            .where(ContinuationRecord.token == token, ContinuationRecord.consumed_at.is_(None))
            .values(consumed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return session.scalars(select(ContinuationRecord).where(ContinuationRecord.token == token)).first()

    def _retire_handle(
        self, session: Session, handle: ProviderOperationRecord, state: HandleState, now: datetime
    ) -> None:
        handle.state = state.value
        handle.live_key = None
        handle.consumed_at = handle.consumed_at or now
        session.execute(
            update(ContinuationRecord)
            .where(ContinuationRecord.token == handle.continuation_token, ContinuationRecord.consumed_at.is_(None))
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        # Free the unique live_key before a replacement handle is inserted
        session.flush()

    @staticmethod
    def _adjust_job_counter(session: Session, job_id: str, column: str, delta: int) -> None:
        attribute = getattr(JobRecord, column)
        session.execute(
            update(JobRecord)
            .where(JobRecord.job_id == job_id)
            .values({column: attribute + delta, "updated_at": utcnow()})
            .execution_options(synchronize_session=False)
        )

    def _decrement_pending(self, session: Session, job_id: str, column: str, decrement: bool) -> int:
        # The UPDATE takes the row lock, so the SELECT below sees this transaction's
        # value and no concurrent decrement can interleave before commit.
        attribute = getattr(JobRecord, column)
        if decrement:
            session.execute(
                update(JobRecord)
                .where(JobRecord.job_id == job_id, attribute > 0)
                .values({column: attribute - 1, "updated_at": utcnow()})
                .execution_options(synchronize_session=False)
            )
        session.flush()
        session.expire_all()
        remaining = session.scalars(select(attribute).where(JobRecord.job_id == job_id)).first()
        return int(remaining or 0)

    @staticmethod
    def _record_history(
        session: Session,
        entity_type: str,
        entity_id: str,
        job_id: str,
        from_status: str | None,
        to_status: str,
        detail: dict[str, Any] | None = None,
    ) -> None:
        session.add(
            StatusHistoryRecord(
                entity_type=entity_type,
                entity_id=entity_id,
                job_id=job_id,
                from_status=from_status,
                to_status=to_status,
                detail=detail,
                created_at=utcnow(),
            )
        )
