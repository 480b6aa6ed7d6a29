"""Audio and video capabilities."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from shared.enums import Capability, CompletionMode

from .base import ProcessingProvider, ProviderOutput, ProviderRequest


class TranscriptionRequest(ProviderRequest):
    language: str | None = None
    diarization: bool = False


class TranscriptionOutput(ProviderOutput):
    duration_seconds: float = Field(default=0.0, ge=0.0)
    speaker_count: int | None = None


class TranscriptionProvider(ProcessingProvider):
    capability = Capability.TRANSCRIPTION
    default_timeout_seconds = 3600.0
    request_model = TranscriptionRequest
    output_model = TranscriptionOutput

    def request_fields(self, context: dict[str, Any]) -> dict[str, Any]:
        fields = super().request_fields(context)
        fields["language"] = context.get("language") or self.settings.get("language")
        fields["diarization"] = bool(self.settings.get("diarization", False))
        return fields

    def summarize(self, output: TranscriptionOutput) -> dict[str, Any]:  # type: ignore[override]
        return {"duration_seconds": output.duration_seconds, "speaker_count": output.speaker_count}


class VideoAnalysisRequest(ProviderRequest):
    sample_rate_fps: float = Field(default=1.0, gt=0)
    features: list[str] = Field(default_factory=lambda: ["scenes", "objects"])


class VideoAnalysisOutput(ProviderOutput):
    duration_seconds: float = Field(default=0.0, ge=0.0)
    scene_count: int = Field(default=0, ge=0)


class VideoAnalysisProvider(ProcessingProvider):
    """Long running analysis; providers typically expose it for polling only."""

    capability = Capability.VIDEO_ANALYSIS
    default_timeout_seconds = 14400.0
    default_completion_mode = CompletionMode.POLL
    request_model = VideoAnalysisRequest
    output_model = VideoAnalysisOutput

    def request_fields(self, context: dict[str, Any]) -> dict[str, Any]:
        fields = super().request_fields(context)
        fields["sample_rate_fps"] = float(self.settings.get("sample_rate_fps", 1.0))
        if "features" in self.settings:
            fields["features"] = list(self.settings["features"])
        return fields

    def summarize(self, output: VideoAnalysisOutput) -> dict[str, Any]:  # type: ignore[override]
        return {"duration_seconds": output.duration_seconds, "scene_count": output.scene_count}
