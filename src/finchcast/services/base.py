"""Call contracts for the providers the generation pipeline depends on.

Concrete scrapers, summarizers and speech providers live outside this
package; the processor only relies on the shapes defined here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence


@dataclass(slots=True)
class ContentItem:
    """One piece of scraped source content."""

    id: str
    title: str
    content: str
    url: str
    summary: str = ""
    source: str = ""
    category: str = ""
    published_at: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)


@dataclass(slots=True)
class SummaryResult:
    summary: str
    tts_optimized_content: Optional[str] = None
    cost: Decimal = Decimal("0")


@dataclass(slots=True)
class SpeechResult:
    audio: bytes
    cost: Decimal = Decimal("0")
    duration: float = 0.0
    content_type: str = "audio/mpeg"


class ScrapingService(Protocol):
    async def scrape_source(self, source_id: str) -> Sequence[ContentItem]:
        """Fetch content for a source; raise on total failure."""


class SummarizationService(Protocol):
    async def generate_summary(self, content: ContentItem) -> SummaryResult:
        """Summarize one content item into an episode script."""


class TTSService(Protocol):
    async def generate_speech(self, text: str, options: Dict[str, Any]) -> SpeechResult:
        """Synthesize speech for ``text``."""


class StorageService(Protocol):
    async def store(self, audio: bytes, *, filename: str, content_type: str) -> str:
        """Persist an audio artifact and return its durable URL."""


@dataclass(slots=True)
class GenerationServices:
    """Bundle of collaborators handed to the processor."""

    scraper: ScrapingService
    summarizer: SummarizationService
    tts: TTSService
    storage: StorageService
