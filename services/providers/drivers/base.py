"""Base classes for processing providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field

from shared.enums import Capability, CompletionMode
from shared.errors import ProviderRejectedError
from shared.models import ProviderResult


class ProviderRequest(BaseModel):
    """Payload submitted to a provider. Capability drivers extend it."""

    model_config = ConfigDict(extra="forbid")

    source_ref: str = Field(..., min_length=1)
    options: dict[str, Any] = Field(default_factory=dict)


class ProviderOutput(BaseModel):
    """Raw provider output. Capability drivers extend it."""

    model_config = ConfigDict(extra="allow")

    result_ref: str = Field(..., min_length=1)
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class ProcessingProvider(ABC):
    """One external processing capability: how to ask for it and how to read the answer."""

    capability: ClassVar[Capability]
    default_timeout_seconds: ClassVar[float] = 600.0
    default_completion_mode: ClassVar[CompletionMode] = CompletionMode.CALLBACK
    request_model: ClassVar[type[ProviderRequest]] = ProviderRequest
    output_model: ClassVar[type[ProviderOutput]] = ProviderOutput

    def __init__(self, settings: dict[str, Any] | None = None) -> None:
        self.settings = settings or {}

    @property
    def timeout_seconds(self) -> float:
        return float(self.settings.get("timeout_seconds", self.default_timeout_seconds))

    @property
    def completion_mode(self) -> CompletionMode:
        return CompletionMode(self.settings.get("completion_mode", self.default_completion_mode.value))

    def build_request(self, payload_ref: str, context: dict[str, Any] | None = None) -> ProviderRequest:
        """Build the provider payload for one source reference."""
        fields = self.request_fields(context or {})
        try:
            return self.request_model(source_ref=payload_ref, **fields)
        except ValueError as exc:
            raise ProviderRejectedError(
                f"Invalid {self.capability.value} request: {exc}",
                detail={"capability": self.capability.value},
            ) from exc

    def parse_result(self, raw: dict[str, Any]) -> ProviderResult:
        """Normalize raw provider output into a ProviderResult."""
        try:
            output = self.output_model.model_validate(raw)
        except ValueError as exc:
            raise ProviderRejectedError(
                f"Malformed {self.capability.value} result: {exc}",
                detail={"capability": self.capability.value},
            ) from exc
        return ProviderResult(
            result_ref=output.result_ref,
            confidence=output.confidence,
            detail=self.summarize(output),
        )

    def request_fields(self, context: dict[str, Any]) -> dict[str, Any]:
        """Capability specific request fields drawn from settings and dispatch context."""
        return {"options": dict(context.get("options") or {})}

    @abstractmethod
    def summarize(self, output: ProviderOutput) -> dict[str, Any]:
        """Capability specific detail kept alongside the result reference."""
