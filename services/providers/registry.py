"""Capability and backend lookup."""

from __future__ import annotations

from typing import Any

from shared.enums import Capability
from shared.utils import config, setup_logging

from .backends import HTTPProviderBackend, ProviderBackend, StubProviderBackend
from .drivers import (
    ArchiveProvider,
    ClassificationProvider,
    OCRProvider,
    PIIRedactionProvider,
    ProcessingProvider,
    TranscriptionProvider,
    TranslationProvider,
    VideoAnalysisProvider,
)

logger = setup_logging("provider-registry")

PROVIDERS: dict[Capability, type[ProcessingProvider]] = {
    Capability.OCR: OCRProvider,
    Capability.TRANSCRIPTION: TranscriptionProvider,
    Capability.CLASSIFICATION: ClassificationProvider,
    Capability.VIDEO_ANALYSIS: VideoAnalysisProvider,
    Capability.TRANSLATION: TranslationProvider,
    Capability.PII_REDACTION: PIIRedactionProvider,
    Capability.ARCHIVE: ArchiveProvider,
}


def load_provider(capability: Capability, settings: dict[str, Any] | None = None) -> ProcessingProvider:
    provider_cls = PROVIDERS[capability]
    return provider_cls(settings if settings is not None else config.provider_settings(capability.value))


def load_backend(
    capability: Capability,
    settings: dict[str, Any] | None = None,
    stub: StubProviderBackend | None = None,
) -> ProviderBackend:
    """Build the transport configured for a capability, falling back to the stub."""
    settings = settings if settings is not None else config.provider_settings(capability.value)
    backend_name = str(settings.get("backend", "stub")).lower()

    if backend_name == "http":
        try:
            return HTTPProviderBackend(settings)
        except ValueError as exc:
            logger.warning("Cannot build HTTP backend for %s (%s), falling back to stub", capability.value, exc)
    elif backend_name != "stub":
        logger.warning("Unknown provider backend '%s' for %s, falling back to stub", backend_name, capability.value)

    return stub or StubProviderBackend(confidence=float(settings.get("stub_confidence", 0.95)))
