"""Completion event router.

Turns provider completions (callbacks, poll results, watchdog timeouts) into
workflow resumes:

1. look the handle up by provider operation id or our own handle id, falling
   back to the client reference we sent with the submit; consumed or expired
   handles are a logged no-op, and so are unknown ones unless a recent
   submit is still waiting for its operation id, in which case the event is
   refused so the provider redelivers it;
2. consume the handle (LIVE -> CONSUMED) storing the outcome, so a
   duplicate delivery loses the race and becomes a no-op;
3. resume the continuation through the orchestrator, which settles the
   handle, updates the transaction and decrements the outstanding count in
   one store transaction.

When step 3 keeps failing the event is pushed onto the redis redelivery
queue and replayed from the stored outcome later; after the attempt cap it
is quarantined.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from services.orchestrator import WorkflowOrchestrator
from services.queue import QueueManager
from services.retry import RetryPolicy
from services.store import JobStore
from shared.enums import CompletionOutcome, DeadLetterKind, ErrorClass, HandleState
from shared.errors import NotFoundError, PermanentProviderError, RetryExhaustedError, describe_error
from shared.models import CompletionReceipt, CompletionRequest, ProviderOperationHandle
from shared.utils import config, setup_logging, utcnow

logger = setup_logging("completion-router")


class CompletionEventRouter:
    """Route provider completions to the suspended workflow that awaits them."""

    def __init__(
        self,
        orchestrator: WorkflowOrchestrator | None = None,
        queue: QueueManager | None = None,
        retry_policy: RetryPolicy | None = None,
        redelivery_key: str | None = None,
        max_redeliveries: int | None = None,
    ) -> None:
        self.orchestrator = orchestrator or WorkflowOrchestrator()
        self._queue = queue
        self.retry_policy = retry_policy or self.orchestrator.retry_policy
        self.redelivery_key = redelivery_key or config.get("redelivery_queue", "orchestration:completion_redelivery")
        self.max_redeliveries = max_redeliveries or int(config.get_pipeline_value("retry.max_attempts", 3))

    @property
    def queue(self) -> QueueManager:
        if self._queue is None:
            self._queue = QueueManager()
        return self._queue

    @queue.setter
    def queue(self, value: QueueManager) -> None:
        self._queue = value

    @property
    def store(self) -> JobStore:
        return self.orchestrator.store

    @property
    def bind_window(self) -> timedelta:
        return timedelta(seconds=float(config.get_pipeline_value("completions.bind_window_seconds", 300)))

    async def submit(self, request: CompletionRequest) -> CompletionReceipt:
        return await self.on_completion(
            request.provider_operation_id,
            request.outcome,
            result_ref=request.result_ref,
            error_detail=request.error,
            confidence=request.confidence,
            detail=request.detail,
            client_reference=request.client_reference,
        )

    async def on_completion(
        self,
        provider_operation_id: str,
        outcome: CompletionOutcome | str,
        result_ref: str | None = None,
        error_detail: dict[str, Any] | str | None = None,
        confidence: float | None = None,
        detail: dict[str, Any] | None = None,
        client_reference: str | None = None,
    ) -> CompletionReceipt:
        outcome = CompletionOutcome(outcome)
        handle = self._resolve(provider_operation_id, client_reference)
        if handle is None:
            if self.store.has_unbound_live_handles(utcnow() - self.bind_window):
                # The provider may have answered before its submit call returned
                logger.warning(
                    "Completion for %s matches no bound operation yet; asking for redelivery", provider_operation_id
                )
                return CompletionReceipt(
                    provider_operation_id=provider_operation_id,
                    accepted=False,
                    deferred=True,
                    reason="operation not bound yet",
                )
            logger.info("Ignoring completion for unknown operation %s", provider_operation_id)
            return CompletionReceipt(
                provider_operation_id=provider_operation_id, accepted=True, duplicate=True, reason="unknown operation"
            )
        if handle.state != HandleState.LIVE:
            logger.info(
                "Ignoring completion for operation %s: handle %s is %s",
                provider_operation_id,
                handle.handle_id,
                handle.state.value,
            )
            return CompletionReceipt(
                provider_operation_id=provider_operation_id,
                accepted=True,
                duplicate=True,
                reason=f"handle {handle.state.value}",
            )

        stored = {
            "outcome": outcome.value,
            "result_ref": result_ref,
            "confidence": confidence,
            "detail": detail or {},
            "error": error_detail,
        }
        if outcome == CompletionOutcome.SUCCEEDED and not result_ref:
            stored = await self._fetch_missing_result(handle, stored)

        if not self.store.consume_handle(handle.handle_id, stored):
            logger.info("Duplicate completion for operation %s", provider_operation_id)
            return CompletionReceipt(
                provider_operation_id=provider_operation_id, accepted=True, duplicate=True, reason="already consumed"
            )

        applied = await self._apply(handle, stored, redelivery_attempt=0)
        return CompletionReceipt(
            provider_operation_id=provider_operation_id,
            accepted=True,
            deferred=not applied,
            reason=None if applied else "queued for redelivery",
        )

    async def redeliver(self, provider_operation_id: str) -> CompletionReceipt:
        """Re-run the resume step for a consumed handle from its stored outcome."""
        handle = self.store.find_handle(provider_operation_id)
        if handle is None:
            raise NotFoundError(f"Operation {provider_operation_id} not found")
        if handle.state != HandleState.CONSUMED:
            return CompletionReceipt(
                provider_operation_id=provider_operation_id,
                accepted=True,
                duplicate=True,
                reason=f"handle {handle.state.value}",
            )
        applied = await self._apply(handle, handle.outcome or {}, redelivery_attempt=1)
        return CompletionReceipt(provider_operation_id=provider_operation_id, accepted=True, deferred=not applied)

    async def drain_redelivery(self, limit: int = 100) -> int:
        """Replay queued completions. Returns the number applied."""
        applied = 0
        for _ in range(min(limit, self.queue.get_length(self.redelivery_key))):
            item = self.queue.dequeue_json(self.redelivery_key)
            if item is None:
                break
            try:
                handle = self.store.get_handle(item["handle_id"])
            except NotFoundError:
                logger.info("Dropping redelivery for deleted handle %s", item.get("handle_id"))
                continue
            if handle.state != HandleState.CONSUMED:
                continue
            if await self._apply(handle, handle.outcome or {}, redelivery_attempt=int(item.get("attempt", 0)) + 1):
                applied += 1
        return applied

    async def redeliver_stale(self, older_than: timedelta) -> int:
        """Resume handles consumed long ago whose effects never settled."""
        applied = 0
        for handle in self.store.list_consumed_handles(older_than=older_than):
            if await self._apply(handle, handle.outcome or {}, redelivery_attempt=1):
                applied += 1
        return applied

    def _resolve(self, provider_operation_id: str, client_reference: str | None) -> ProviderOperationHandle | None:
        handle = self.store.find_handle(provider_operation_id)
        if handle is not None or not client_reference:
            return handle
        handle = self.store.find_handle(client_reference)
        if handle is None:
            return None
        if handle.provider_operation_id is None:
            return self.store.bind_provider_operation(handle.handle_id, provider_operation_id)
        if handle.provider_operation_id != provider_operation_id:
            logger.warning(
                "Completion for %s names handle %s, which is bound to %s",
                provider_operation_id,
                handle.handle_id,
                handle.provider_operation_id,
            )
            return None
        return handle

    async def _fetch_missing_result(self, handle: ProviderOperationHandle, stored: dict[str, Any]) -> dict[str, Any]:
        try:
            result = await self.orchestrator.gateway.fetch_result(handle)
        except (RetryExhaustedError, PermanentProviderError) as exc:
            transient = isinstance(exc, RetryExhaustedError) and exc.error_class == ErrorClass.TRANSIENT
            outcome = CompletionOutcome.UNAVAILABLE if transient else CompletionOutcome.FAILED
            logger.warning("Result fetch for %s failed: %s", handle.provider_operation_id, exc)
            return {**stored, "outcome": outcome.value, "error": describe_error(exc)}
        return {
            **stored,
            "result_ref": result.result_ref,
            "confidence": stored.get("confidence") if stored.get("confidence") is not None else result.confidence,
            "detail": {**result.detail, **(stored.get("detail") or {})},
        }

    async def _apply(self, handle: ProviderOperationHandle, stored: dict[str, Any], redelivery_attempt: int) -> bool:
        async def _resume() -> Any:
            return await self.orchestrator.resume(handle.continuation_token, stored)

        try:
            await self.retry_policy.execute(_resume, description=f"resume of {handle.handle_id}")
            return True
        except RetryExhaustedError as exc:
            return await self._defer(handle, stored, exc, redelivery_attempt)

    async def _defer(
        self,
        handle: ProviderOperationHandle,
        stored: dict[str, Any],
        error: RetryExhaustedError,
        redelivery_attempt: int,
    ) -> bool:
        payload = {
            "handle_id": handle.handle_id,
            "provider_operation_id": handle.provider_operation_id,
            "attempt": redelivery_attempt,
        }
        if error.error_class == ErrorClass.TRANSIENT and redelivery_attempt < self.max_redeliveries:
            try:
                self.queue.enqueue_json(self.redelivery_key, payload)
                logger.warning(
                    "Completion for %s deferred to redelivery (attempt %d): %s",
                    handle.handle_id,
                    redelivery_attempt,
                    error.last_error,
                )
                return False
            except ConnectionError as exc:
                logger.error("Redelivery queue unavailable for %s: %s", handle.handle_id, exc)

        await self.orchestrator.dead_letters.quarantine(
            DeadLetterKind.COMPLETION,
            handle.handle_id,
            error,
            job_id=handle.job_id,
            payload={**payload, "outcome": stored},
            attempts=error.attempts + redelivery_attempt,
        )
        return False
