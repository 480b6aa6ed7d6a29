"""Single entry point for talking to processing providers.

The handle and its continuation are persisted before the provider sees the
request, so a completion can never arrive for an operation we do not know
about. The handle id travels with the request as the client reference and
is accepted by the router in place of the provider operation id.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from services.retry import DeadLetterQueue, RetryPolicy
from services.store import JobStore
from shared.enums import Capability, CompletionMode, CompletionOutcome, DeadLetterKind, HandleState, WorkflowStage
from shared.errors import (
    DispatchFailedError,
    PermanentProviderError,
    ProviderError,
    RetryExhaustedError,
    TransientProviderError,
)
from shared.models import CompletionReceipt, CompletionRequest, ProviderOperationHandle, ProviderResult
from shared.utils import setup_logging

from .backends import FAILED, SUCCEEDED, ProviderBackend, StubProviderBackend
from .drivers import ProcessingProvider
from .registry import PROVIDERS, load_backend, load_provider

logger = setup_logging("provider-gateway")

CompletionSink = Callable[[CompletionRequest], Awaitable[CompletionReceipt]]


class ProviderGateway:
    """Dispatch, fetch, cancel and poll provider operations."""

    def __init__(
        self,
        store: JobStore | None = None,
        retry_policy: RetryPolicy | None = None,
        backend: ProviderBackend | None = None,
        dead_letters: DeadLetterQueue | None = None,
    ) -> None:
        self._store = store
        self._dead_letters = dead_letters
        self.retry_policy = retry_policy or RetryPolicy.from_config()
        self.providers: dict[Capability, ProcessingProvider] = {
            capability: load_provider(capability) for capability in PROVIDERS
        }
        if backend is not None:
            self.backends: dict[Capability, ProviderBackend] = {capability: backend for capability in PROVIDERS}
        else:
            shared_stub = StubProviderBackend()
            self.backends = {capability: load_backend(capability, stub=shared_stub) for capability in PROVIDERS}

    @property
    def store(self) -> JobStore:
        if self._store is None:
            self._store = JobStore()
        return self._store

    @store.setter
    def store(self, value: JobStore) -> None:
        self._store = value

    @property
    def dead_letters(self) -> DeadLetterQueue:
        if self._dead_letters is None:
            self._dead_letters = DeadLetterQueue(store=self.store)
        return self._dead_letters

    @dead_letters.setter
    def dead_letters(self, value: DeadLetterQueue) -> None:
        self._dead_letters = value

    def provider_for(self, capability: Capability) -> ProcessingProvider:
        return self.providers[capability]

    def backend_for(self, capability: Capability) -> ProviderBackend:
        return self.backends[capability]

    async def dispatch(
        self,
        transaction_id: str,
        capability: Capability,
        payload_ref: str,
        completion_mode: CompletionMode | None = None,
        *,
        job_id: str,
        stage: WorkflowStage = WorkflowStage.AWAITING_PROVIDERS,
        context: dict[str, Any] | None = None,
        attempt: int = 1,
    ) -> ProviderOperationHandle:
        """Record a handle, submit the request and bind the provider's operation id.

        Raises DispatchFailedError once submission is exhausted; the handle stays
        recorded so the caller can settle it as a failure.
        """
        provider = self.provider_for(capability)
        backend = self.backend_for(capability)
        mode = completion_mode or provider.completion_mode
        context = dict(context or {})

        handle = self.store.record_dispatch(
            job_id=job_id,
            transaction_id=transaction_id,
            capability=capability,
            stage=stage,
            completion_mode=mode,
            payload_ref=payload_ref,
            timeout_seconds=provider.timeout_seconds,
            attempt=attempt,
            context={key: value for key, value in context.items() if key != "consolidated_result"},
        )

        async def _submit() -> str:
            request = provider.build_request(payload_ref, context)
            return await backend.submit(
                capability,
                request.model_dump(),
                client_reference=handle.handle_id,
                completion_mode=mode,
            )

        try:
            operation_id = await self.retry_policy.execute(
                _submit, description=f"{capability.value} dispatch for transaction {transaction_id}"
            )
        except RetryExhaustedError as exc:
            await self.dead_letters.quarantine(
                DeadLetterKind.DISPATCH,
                handle.handle_id,
                exc,
                job_id=job_id,
                payload={
                    "transaction_id": transaction_id,
                    "capability": capability.value,
                    "payload_ref": payload_ref,
                    "stage": stage.value,
                },
            )
            raise DispatchFailedError(handle, exc) from exc

        bound = self.store.bind_provider_operation(handle.handle_id, operation_id)
        if bound.state in (HandleState.INVALIDATED, HandleState.CANCELLED):
            # Superseded or cancelled while the submit was in flight
            logger.info("Handle %s is %s after submit, cancelling %s", bound.handle_id, bound.state.value, operation_id)
            await self.cancel(bound)
        elif bound.state != HandleState.LIVE:
            logger.info("Operation %s completed before its submit returned (%s)", operation_id, bound.state.value)
        else:
            logger.info(
                "Dispatched %s for transaction %s as %s (%s, attempt %d)",
                capability.value,
                transaction_id,
                operation_id,
                mode.value,
                attempt,
            )
        return bound

    async def fetch_result(self, handle: ProviderOperationHandle) -> ProviderResult:
        """Retrieve and normalize the output of a finished operation."""
        if not handle.provider_operation_id:
            raise PermanentProviderError(
                f"Handle {handle.handle_id} was never bound to a provider operation",
                detail={"handle_id": handle.handle_id},
            )
        provider = self.provider_for(handle.capability)
        backend = self.backend_for(handle.capability)

        async def _fetch() -> dict[str, Any]:
            return await backend.fetch_result(handle.capability, handle.provider_operation_id)

        raw = await self.retry_policy.execute(_fetch, description=f"result fetch for {handle.provider_operation_id}")
        return provider.parse_result(raw)

    async def cancel(self, handle: ProviderOperationHandle) -> bool:
        """Best-effort provider-side cancellation. Returns False when it did not go through."""
        if not handle.provider_operation_id:
            return False
        try:
            await self.backend_for(handle.capability).cancel(handle.capability, handle.provider_operation_id)
        except (ProviderError, ConnectionError, TimeoutError) as exc:
            logger.warning("Could not cancel %s at provider: %s", handle.provider_operation_id, exc)
            return False
        return True

    async def cancel_all(self, handles: list[ProviderOperationHandle]) -> int:
        cancelled = 0
        for handle in handles:
            if await self.cancel(handle):
                cancelled += 1
        return cancelled

    async def poll_outstanding(self, on_completion: CompletionSink) -> int:
        """Check live poll-mode operations and feed finished ones to ``on_completion``.

        Returns the number of completions emitted.
        """
        emitted = 0
        for handle in self.store.list_live_handles(completion_mode=CompletionMode.POLL):
            if not handle.provider_operation_id:
                continue
            completion = await self._poll_once(handle, handle.provider_operation_id)
            if completion is None:
                continue
            await on_completion(completion)
            emitted += 1
        if emitted:
            logger.info("Polling emitted %d completion(s)", emitted)
        return emitted

    async def _poll_once(self, handle: ProviderOperationHandle, operation_id: str) -> CompletionRequest | None:
        backend = self.backend_for(handle.capability)
        try:
            status = await backend.status(handle.capability, operation_id)
        except TransientProviderError as exc:
            logger.info("Status check for %s deferred: %s", operation_id, exc)
            return None
        except PermanentProviderError as exc:
            return CompletionRequest(
                provider_operation_id=operation_id,
                outcome=CompletionOutcome.FAILED,
                error={"error": type(exc).__name__, "message": str(exc)},
            )

        if status["state"] == SUCCEEDED:
            try:
                result = self.provider_for(handle.capability).parse_result(status.get("result") or {})
            except PermanentProviderError as exc:
                return CompletionRequest(
                    provider_operation_id=operation_id,
                    outcome=CompletionOutcome.FAILED,
                    error={"error": type(exc).__name__, "message": str(exc)},
                )
            return CompletionRequest(
                provider_operation_id=operation_id,
                outcome=CompletionOutcome.SUCCEEDED,
                result_ref=result.result_ref,
                confidence=result.confidence,
                detail=result.detail,
            )
        if status["state"] == FAILED:
            return CompletionRequest(
                provider_operation_id=operation_id,
                outcome=CompletionOutcome.FAILED,
                error=status.get("error") or "provider reported failure",
            )
        return None
