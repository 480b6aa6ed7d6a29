"""Transports that carry provider requests to an actual processing service."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from typing import Any

import aiohttp

from shared.enums import Capability, CompletionMode
from shared.errors import (
    NotFoundError,
    ProviderError,
    ProviderRejectedError,
    ProviderUnavailableError,
)
from shared.http_client import AsyncHTTPClient
from shared.utils import new_id, setup_logging

logger = setup_logging("provider-backends")

# Provider-side operation states reported by ``status``
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"


class ProviderBackend(ABC):
    """Submit, inspect, fetch and cancel provider operations."""

    name: str = "backend"

    @abstractmethod
    async def submit(
        self,
        capability: Capability,
        request: dict[str, Any],
        *,
        client_reference: str,
        completion_mode: CompletionMode,
    ) -> str:
        """Start an operation and return the provider's operation id."""

    @abstractmethod
    async def status(self, capability: Capability, operation_id: str) -> dict[str, Any]:
        """Return ``{"state": running|succeeded|failed, "result": {...}, "error": ...}``."""

    @abstractmethod
    async def fetch_result(self, capability: Capability, operation_id: str) -> dict[str, Any]:
        """Return the raw output of a finished operation."""

    @abstractmethod
    async def cancel(self, capability: Capability, operation_id: str) -> None:
        """Ask the provider to stop an operation."""


class StubProviderBackend(ProviderBackend):
    """In-memory provider used for local development and tests.

    Operations complete deterministically. Failures can be scripted per
    capability with ``fail_next`` and results can be set with ``complete``.
    """

    name = "stub"

    def __init__(
        self,
        confidence: float = 0.95,
        auto_complete: bool = True,
        confidences: dict[Capability, float] | None = None,
    ) -> None:
        self.confidence = confidence
        self.auto_complete = auto_complete
        self.confidences: dict[Capability, float] = dict(confidences or {})
        self.operations: dict[str, dict[str, Any]] = {}
        self.submissions: list[dict[str, Any]] = []
        self.cancellations: list[str] = []
        self._failures: dict[Capability, deque[BaseException]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    def fail_next(self, capability: Capability, error: BaseException, times: int = 1) -> None:
        """Make the next ``times`` submissions for ``capability`` raise ``error``."""
        for _ in range(times):
            self._failures[capability].append(error)

    def set_confidence(self, capability: Capability, confidence: float) -> None:
        self.confidences[capability] = confidence

    def complete(self, operation_id: str, result: dict[str, Any] | None = None, error: str | None = None) -> None:
        """Finish an operation, successfully unless ``error`` is given."""
        operation = self._operation(operation_id)
        if error is not None:
            operation.update(state=FAILED, error=error)
        else:
            operation.update(state=SUCCEEDED, result={**operation["result"], **(result or {})})

    def operations_for(self, capability: Capability | None = None) -> list[dict[str, Any]]:
        return [
            operation
            for operation in self.operations.values()
            if capability is None or operation["capability"] == capability
        ]

    async def submit(
        self,
        capability: Capability,
        request: dict[str, Any],
        *,
        client_reference: str,
        completion_mode: CompletionMode,
    ) -> str:
        async with self._lock:
            pending = self._failures.get(capability)
            if pending:
                raise pending.popleft()
            operation_id = f"stub-{capability.value}-{new_id()[:12]}"
            confidence = self.confidences.get(capability, self.confidence)
            self.operations[operation_id] = {
                "operation_id": operation_id,
                "capability": capability,
                "client_reference": client_reference,
                "completion_mode": completion_mode,
                "request": request,
                "state": RUNNING,
                "error": None,
                "result": {
                    "result_ref": f"stub://{capability.value}/{operation_id}",
                    "confidence": confidence,
                },
            }
            self.submissions.append(self.operations[operation_id])
        logger.debug("Stub accepted %s operation %s", capability.value, operation_id)
        return operation_id

    async def status(self, capability: Capability, operation_id: str) -> dict[str, Any]:
        operation = self._operation(operation_id)
        if operation["state"] == RUNNING and self.auto_complete:
            operation["state"] = SUCCEEDED
        return {"state": operation["state"], "result": operation["result"], "error": operation["error"]}

    async def fetch_result(self, capability: Capability, operation_id: str) -> dict[str, Any]:
        operation = self._operation(operation_id)
        if operation["state"] == FAILED:
            raise ProviderRejectedError(f"Operation {operation_id} failed: {operation['error']}")
        return dict(operation["result"])

    async def cancel(self, capability: Capability, operation_id: str) -> None:
        self.cancellations.append(operation_id)
        operation = self.operations.get(operation_id)
        if operation is not None and operation["state"] == RUNNING:
            operation.update(state=FAILED, error="cancelled")

    def _operation(self, operation_id: str) -> dict[str, Any]:
        operation = self.operations.get(operation_id)
        if operation is None:
            raise NotFoundError(f"Unknown stub operation {operation_id}")
        return operation


class HTTPProviderBackend(ProviderBackend):
    """JSON-over-HTTP provider.

    Expected routes relative to ``endpoint``: ``POST /operations``,
    ``GET /operations/{id}``, ``GET /operations/{id}/result`` and
    ``DELETE /operations/{id}``.
    """

    name = "http"

    def __init__(self, settings: dict[str, Any]) -> None:
        endpoint = settings.get("endpoint")
        if not endpoint:
            raise ValueError("HTTP provider backend requires an 'endpoint' setting")
        self.endpoint = str(endpoint)
        self.callback_url = settings.get("callback_url")
        self.request_timeout = int(settings.get("request_timeout_seconds", 30))
        headers = {}
        if settings.get("api_key"):
            headers["Authorization"] = f"Bearer {settings['api_key']}"
        self.headers = headers

    def _client(self) -> AsyncHTTPClient:
        return AsyncHTTPClient(base_url=self.endpoint, timeout=self.request_timeout, headers=self.headers)

    async def submit(
        self,
        capability: Capability,
        request: dict[str, Any],
        *,
        client_reference: str,
        completion_mode: CompletionMode,
    ) -> str:
        body: dict[str, Any] = {
            "capability": capability.value,
            "request": request,
            "client_reference": client_reference,
            "completion_mode": completion_mode.value,
        }
        if completion_mode == CompletionMode.CALLBACK and self.callback_url:
            body["callback_url"] = self.callback_url
        response = await self._call("post", "/operations", capability, data=body)
        operation_id = response.get("operation_id") or response.get("id")
        if not operation_id:
            raise ProviderUnavailableError(
                f"{capability.value} provider returned no operation id",
                detail={"capability": capability.value},
            )
        return str(operation_id)

    async def status(self, capability: Capability, operation_id: str) -> dict[str, Any]:
        response = await self._call("get", f"/operations/{operation_id}", capability)
        state = str(response.get("state") or response.get("status") or RUNNING).lower()
        if state in {"done", "completed", "complete"}:
            state = SUCCEEDED
        elif state in {"error", "cancelled", "canceled"}:
            state = FAILED
        elif state not in {SUCCEEDED, FAILED}:
            state = RUNNING
        return {"state": state, "result": response.get("result") or {}, "error": response.get("error")}

    async def fetch_result(self, capability: Capability, operation_id: str) -> dict[str, Any]:
        return await self._call("get", f"/operations/{operation_id}/result", capability)

    async def cancel(self, capability: Capability, operation_id: str) -> None:
        await self._call("delete", f"/operations/{operation_id}", capability)

    async def _call(self, method: str, path: str, capability: Capability, **kwargs: Any) -> dict[str, Any]:
        detail = {"capability": capability.value, "endpoint": self.endpoint, "path": path}
        try:
            async with self._client() as client:
                return await getattr(client, method)(path, **kwargs)
        except aiohttp.ClientResponseError as exc:
            detail["status"] = exc.status
            if exc.status >= 500 or exc.status in (408, 429):
                raise ProviderUnavailableError(f"{capability.value} provider error {exc.status}", detail=detail) from exc
            raise ProviderRejectedError(
                f"{capability.value} provider rejected request ({exc.status}): {exc.message}", detail=detail
            ) from exc
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as exc:
            raise ProviderUnavailableError(f"{capability.value} provider unreachable: {exc}", detail=detail) from exc
        except aiohttp.ClientError as exc:
            raise ProviderError(f"{capability.value} provider call failed: {exc}", detail=detail) from exc
