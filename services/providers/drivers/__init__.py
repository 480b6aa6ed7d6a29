"""Processing provider driver registry."""

from .archive import ArchiveProvider
from .base import ProcessingProvider, ProviderOutput, ProviderRequest
from .document import ClassificationProvider, OCRProvider, PIIRedactionProvider, TranslationProvider
from .media import TranscriptionProvider, VideoAnalysisProvider

__all__ = [
    "ArchiveProvider",
    "ClassificationProvider",
    "OCRProvider",
    "PIIRedactionProvider",
    "ProcessingProvider",
    "ProviderOutput",
    "ProviderRequest",
    "TranscriptionProvider",
    "TranslationProvider",
    "VideoAnalysisProvider",
]
