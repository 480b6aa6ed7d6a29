"""Archive post-step: persists the consolidated result to long-term storage."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from shared.enums import Capability

from .base import ProcessingProvider, ProviderOutput, ProviderRequest


class ArchiveRequest(ProviderRequest):
    consolidated_result: dict[str, Any] = Field(default_factory=dict)
    retention_days: int = Field(default=365, gt=0)


class ArchiveOutput(ProviderOutput):
    archive_uri: str | None = None


class ArchiveProvider(ProcessingProvider):
    capability = Capability.ARCHIVE
    default_timeout_seconds = 1800.0
    request_model = ArchiveRequest
    output_model = ArchiveOutput

    def request_fields(self, context: dict[str, Any]) -> dict[str, Any]:
        fields = super().request_fields(context)
        fields["consolidated_result"] = dict(context.get("consolidated_result") or {})
        fields["retention_days"] = int(self.settings.get("retention_days", 365))
        return fields

    def summarize(self, output: ArchiveOutput) -> dict[str, Any]:  # type: ignore[override]
        return {"archive_uri": output.archive_uri or output.result_ref}
