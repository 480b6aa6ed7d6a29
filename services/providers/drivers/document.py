"""Document capabilities: OCR, classification, translation and PII redaction."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from shared.enums import Capability

from .base import ProcessingProvider, ProviderOutput, ProviderRequest


class OCRRequest(ProviderRequest):
    languages: list[str] = Field(default_factory=lambda: ["en"])
    detect_layout: bool = True


class OCROutput(ProviderOutput):
    page_count: int = Field(default=0, ge=0)
    detected_language: str | None = None


class OCRProvider(ProcessingProvider):
    capability = Capability.OCR
    default_timeout_seconds = 600.0
    request_model = OCRRequest
    output_model = OCROutput

    def request_fields(self, context: dict[str, Any]) -> dict[str, Any]:
        fields = super().request_fields(context)
        fields["languages"] = list(self.settings.get("languages", ["en"]))
        fields["detect_layout"] = bool(self.settings.get("detect_layout", True))
        return fields

    def summarize(self, output: OCROutput) -> dict[str, Any]:  # type: ignore[override]
        return {"page_count": output.page_count, "detected_language": output.detected_language}


class ClassificationRequest(ProviderRequest):
    labels: list[str] = Field(default_factory=list)


class ClassificationOutput(ProviderOutput):
    label: str | None = None
    scores: dict[str, float] = Field(default_factory=dict)


class ClassificationProvider(ProcessingProvider):
    capability = Capability.CLASSIFICATION
    default_timeout_seconds = 300.0
    request_model = ClassificationRequest
    output_model = ClassificationOutput

    def request_fields(self, context: dict[str, Any]) -> dict[str, Any]:
        fields = super().request_fields(context)
        fields["labels"] = list(self.settings.get("labels", []))
        return fields

    def summarize(self, output: ClassificationOutput) -> dict[str, Any]:  # type: ignore[override]
        return {"label": output.label, "scores": dict(output.scores)}


class TranslationRequest(ProviderRequest):
    target_language: str = Field(default="en", min_length=2)
    source_language: str | None = None


class TranslationOutput(ProviderOutput):
    target_language: str | None = None
    character_count: int = Field(default=0, ge=0)


class TranslationProvider(ProcessingProvider):
    capability = Capability.TRANSLATION
    default_timeout_seconds = 900.0
    request_model = TranslationRequest
    output_model = TranslationOutput

    def request_fields(self, context: dict[str, Any]) -> dict[str, Any]:
        fields = super().request_fields(context)
        fields["target_language"] = context.get("target_language") or self.settings.get("target_language", "en")
        fields["source_language"] = context.get("source_language")
        return fields

    def summarize(self, output: TranslationOutput) -> dict[str, Any]:  # type: ignore[override]
        return {"target_language": output.target_language, "character_count": output.character_count}


class PIIRedactionRequest(ProviderRequest):
    entity_types: list[str] = Field(default_factory=lambda: ["PERSON", "EMAIL", "PHONE", "ID_NUMBER"])
    mask: str = "[REDACTED]"


class PIIRedactionOutput(ProviderOutput):
    redacted_count: int = Field(default=0, ge=0)
    entity_counts: dict[str, int] = Field(default_factory=dict)


class PIIRedactionProvider(ProcessingProvider):
    capability = Capability.PII_REDACTION
    default_timeout_seconds = 900.0
    request_model = PIIRedactionRequest
    output_model = PIIRedactionOutput

    def request_fields(self, context: dict[str, Any]) -> dict[str, Any]:
        fields = super().request_fields(context)
        if "entity_types" in self.settings:
            fields["entity_types"] = list(self.settings["entity_types"])
        return fields

    def summarize(self, output: PIIRedactionOutput) -> dict[str, Any]:  # type: ignore[override]
        return {"redacted_count": output.redacted_count, "entity_counts": dict(output.entity_counts)}
