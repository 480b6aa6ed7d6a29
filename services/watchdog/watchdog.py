"""Timeout watchdog: deadlines, stalled jobs and TTL purge."""

from __future__ import annotations

from datetime import datetime, timedelta

from services.events import CompletionEventRouter
from services.orchestrator import WorkflowOrchestrator
from services.store import JobStore
from shared.enums import CompletionOutcome
from shared.errors import NotFoundError
from shared.utils import config, setup_logging, utcnow

logger = setup_logging("timeout-watchdog")


class TimeoutWatchdog:
    """Turn missed deadlines into TIMED_OUT completions and unstick drained jobs."""

    def __init__(
        self,
        router: CompletionEventRouter | None = None,
        orchestrator: WorkflowOrchestrator | None = None,
    ) -> None:
        self.router = router or CompletionEventRouter(orchestrator)
        self.orchestrator = orchestrator or self.router.orchestrator

    @property
    def store(self) -> JobStore:
        return self.orchestrator.store

    @property
    def stall_grace(self) -> timedelta:
        return timedelta(seconds=float(config.get_pipeline_value("scheduler.stall_grace_seconds", 60)))

    async def scan(self, now: datetime | None = None) -> int:
        """Synthesize TIMED_OUT completions for live handles past their deadline."""
        now = now or utcnow()
        timed_out = 0
        for handle in self.store.list_expired_handles(now):
            receipt = await self.router.on_completion(
                handle.provider_operation_id or handle.handle_id,
                CompletionOutcome.TIMED_OUT,
                error_detail={
                    "error": "ProviderTimeoutError",
                    "message": f"{handle.capability.value} exceeded its deadline",
                    "deadline_at": handle.deadline_at.isoformat(),
                },
            )
            if not receipt.duplicate:
                timed_out += 1
                logger.warning(
                    "Operation %s (%s) for transaction %s timed out",
                    handle.provider_operation_id or handle.handle_id,
                    handle.capability.value,
                    handle.transaction_id,
                )
        return timed_out

    async def recover(self, grace: timedelta | None = None) -> int:
        """Re-advance stalled jobs and replay completions or review decisions whose resume never settled."""
        if grace is None:
            grace = self.stall_grace
        recovered = await self.orchestrator.resume_decided_reviews(grace)
        recovered += await self.orchestrator.recover_stalled_jobs(grace)
        recovered += await self.router.redeliver_stale(grace)
        return recovered

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete jobs whose retention period has passed."""
        purged = 0
        for job_id in self.store.list_expired_jobs(now or utcnow()):
            try:
                await self.orchestrator.delete_job(job_id)
            except NotFoundError:
                continue
            purged += 1
        if purged:
            logger.info("Purged %d expired job(s)", purged)
        return purged
