"""Shared fixtures: a temporary SQLite queue and scripted provider fakes."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

import pytest

from finchcast.generation.config import CostLimits, ProcessorConfig
from finchcast.generation.events import EventType, ProcessorEvent
from finchcast.generation.models import NewQueueItem, QueueItem
from finchcast.generation.retry import RetryPolicy
from finchcast.generation.store import SQLiteQueueStore
from finchcast.services.base import (
    ContentItem,
    GenerationServices,
    SpeechResult,
    SummaryResult,
)


class FakeScraper:
    """Returns one content item per source unless told to fail or block."""

    def __init__(self) -> None:
        self.calls: List[str] = []
        self.failures: Dict[str, List[BaseException]] = {}
        self.empty: Set[str] = set()
        self.gate: Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0

    def fail(self, source_id: str, *errors: BaseException) -> None:
        self.failures.setdefault(source_id, []).extend(errors)

    async def scrape_source(self, source_id: str) -> List[ContentItem]:
        self.calls.append(source_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            queued = self.failures.get(source_id)
            if queued:
                raise queued.pop(0)
            if source_id in self.empty:
                return []
            return [
                ContentItem(
                    id=f"{source_id}-1",
                    title=f"Article from {source_id}",
                    content="Long form article text.",
                    url=f"https://example.com/{source_id}",
                    source=source_id,
                )
            ]
        finally:
            self.in_flight -= 1


class FakeSummarizer:
    def __init__(self, cost: Decimal = Decimal("0.10"), tts_text: Optional[str] = "Spoken script") -> None:
        self.cost = cost
        self.tts_text = tts_text
        self.inputs: List[ContentItem] = []
        self.failures: List[BaseException] = []

    async def generate_summary(self, content: ContentItem) -> SummaryResult:
        self.inputs.append(content)
        await asyncio.sleep(0)
        if self.failures:
            raise self.failures.pop(0)
        return SummaryResult(
            summary=f"Summary of {content.title}",
            tts_optimized_content=self.tts_text,
            cost=self.cost,
        )


class FakeTTS:
    def __init__(self, cost: Decimal = Decimal("0.20")) -> None:
        self.cost = cost
        self.texts: List[str] = []
        self.options: List[Dict[str, Any]] = []
        self.failures: List[BaseException] = []

    async def generate_speech(self, text: str, options: Dict[str, Any]) -> SpeechResult:
        self.texts.append(text)
        self.options.append(options)
        await asyncio.sleep(0)
        if self.failures:
            raise self.failures.pop(0)
        return SpeechResult(audio=b"ID3-fake-audio", cost=self.cost, duration=12.5)


class FakeStorage:
    def __init__(self) -> None:
        self.stored: Dict[str, bytes] = {}

    async def store(self, audio: bytes, *, filename: str, content_type: str) -> str:
        await asyncio.sleep(0)
        self.stored[filename] = audio
        return f"memory://episodes/{filename}"


class EventRecorder:
    """Synchronous subscriber that keeps every event it sees."""

    def __init__(self) -> None:
        self.events: List[ProcessorEvent] = []

    def __call__(self, event: ProcessorEvent) -> None:
        self.events.append(event)

    def types(self) -> List[EventType]:
        return [event.type for event in self.events]

    def of(self, event_type: EventType) -> List[ProcessorEvent]:
        return [event for event in self.events if event.type == event_type]


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture()
def store(tmp_path: Path):
    queue_store = SQLiteQueueStore(tmp_path / "queue.db")
    yield queue_store
    queue_store.close()


@pytest.fixture()
def services() -> GenerationServices:
    return GenerationServices(
        scraper=FakeScraper(),
        summarizer=FakeSummarizer(),
        tts=FakeTTS(),
        storage=FakeStorage(),
    )


@pytest.fixture()
def fast_config() -> ProcessorConfig:
    return ProcessorConfig(
        auto_start=False,
        polling_interval_ms=10,
        max_concurrent_jobs=3,
        max_retries=3,
        cost_limits=CostLimits(daily_limit=Decimal("50.00"), per_job_limit=Decimal("5.00")),
        retry=RetryPolicy(base_delay_seconds=0.01),
        persist_timeout_seconds=2.0,
    )


@pytest.fixture()
def enqueue(store: SQLiteQueueStore) -> Callable[..., List[QueueItem]]:
    def _enqueue(count: int = 1, *, prefix: str = "source") -> List[QueueItem]:
        return [
            store.enqueue(
                NewQueueItem(source_id=f"{prefix}-{index}", episode_title=f"Episode {index}")
            )
            for index in range(count)
        ]

    return _enqueue


@pytest.fixture()
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture()
def wait_until() -> Callable[..., Any]:
    return wait_for
