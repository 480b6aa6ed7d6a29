"""Human review gate.

Low-confidence results suspend on a review case. A reviewer decision is
recorded with a compare-and-swap on the PENDING state and then resumes the
case's continuation through the orchestrator.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from services.store import JobStore
from shared.enums import JobStatus, ReviewDecision
from shared.errors import ValidationError
from shared.models import ReviewCase
from shared.utils import setup_logging

if TYPE_CHECKING:
    from services.orchestrator import WorkflowOrchestrator

logger = setup_logging("review-gate")

REVIEWER_DECISIONS = frozenset({ReviewDecision.APPROVED, ReviewDecision.REJECTED, ReviewDecision.ESCALATED})


class HumanReviewGate:
    def __init__(self, store: JobStore | None = None, orchestrator: WorkflowOrchestrator | None = None) -> None:
        self._store = store
        self._orchestrator = orchestrator

    @property
    def store(self) -> JobStore:
        if self._store is None:
            self._store = JobStore()
        return self._store

    @store.setter
    def store(self, value: JobStore) -> None:
        self._store = value

    @property
    def orchestrator(self) -> WorkflowOrchestrator:
        if self._orchestrator is None:
            from services.orchestrator import WorkflowOrchestrator

            self._orchestrator = WorkflowOrchestrator(store=self.store, review_gate=self)
        return self._orchestrator

    @orchestrator.setter
    def orchestrator(self, value: WorkflowOrchestrator) -> None:
        self._orchestrator = value

    def create_review_case(self, transaction_id: str, proposed_result: dict[str, Any], confidence: float) -> str:
        """Open a review case for one transaction and suspend its job on it."""
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError("confidence must be between 0 and 1")
        transaction = self.store.get_transaction(transaction_id)
        cases = self.store.open_review_cases(
            transaction.job_id,
            [{"transaction_id": transaction_id, "proposed_result": proposed_result, "confidence": confidence}],
            from_statuses=(JobStatus.CONSOLIDATING, JobStatus.AWAITING_REVIEW),
        )
        logger.info("Opened review case %s for transaction %s", cases[0].case_id, transaction_id)
        return cases[0].case_id

    async def submit_decision(
        self,
        case_id: str,
        decision: ReviewDecision | str,
        final_result: dict[str, Any] | None = None,
        reviewer: str | None = None,
    ) -> ReviewCase:
        """Record a decision on a PENDING case and resume the workflow."""
        try:
            decision = ReviewDecision(decision)
        except ValueError as exc:
            raise ValidationError(f"Unknown review decision '{decision}'") from exc
        if decision not in REVIEWER_DECISIONS:
            raise ValidationError(f"'{decision.value}' is not a reviewer decision")

        case = self.store.decide_review_case(case_id, decision, final_result=final_result, reviewer=reviewer)
        logger.info("Review case %s decided %s by %s", case_id, decision.value, reviewer or "unknown reviewer")
        await self.orchestrator.resume(case.continuation_token)
        return self.store.get_review_case(case_id)

    def get_case(self, case_id: str) -> ReviewCase:
        return self.store.get_review_case(case_id)

    def list_pending(self, job_id: str | None = None) -> list[ReviewCase]:
        return self.store.list_review_cases(job_id=job_id, decision=ReviewDecision.PENDING)

    def list_cases(self, job_id: str | None = None) -> list[ReviewCase]:
        return self.store.list_review_cases(job_id=job_id)
