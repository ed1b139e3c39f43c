"""Provider contracts and storage backends used by the generation pipeline."""

from .base import (
    ContentItem,
    GenerationServices,
    ScrapingService,
    SpeechResult,
    StorageService,
    SummarizationService,
    SummaryResult,
    TTSService,
)
from .storage import HttpAudioStorage, LocalAudioStorage

__all__ = [
    "ContentItem",
    "GenerationServices",
    "ScrapingService",
    "SpeechResult",
    "StorageService",
    "SummarizationService",
    "SummaryResult",
    "TTSService",
    "HttpAudioStorage",
    "LocalAudioStorage",
]
