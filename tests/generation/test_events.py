"""Tests for the processor event bus."""

from __future__ import annotations

import asyncio
import logging
from typing import List

import pytest

from finchcast.generation.events import EventBus, EventType, ProcessorEvent


class TestSubscribe:
    def test_sync_handler_receives_events(self) -> None:
        bus = EventBus()
        seen: List[ProcessorEvent] = []
        bus.subscribe(seen.append)

        bus.emit(EventType.JOB_STARTED, "job-1", episode_title="Episode")

        assert len(seen) == 1
        assert seen[0].type == EventType.JOB_STARTED
        assert seen[0].job_id == "job-1"
        assert seen[0].payload == {"episode_title": "Episode"}

    def test_event_type_filter(self) -> None:
        bus = EventBus()
        seen: List[ProcessorEvent] = []
        bus.subscribe(seen.append, [EventType.JOB_FAILED])

        bus.emit(EventType.JOB_STARTED, "job-1")
        bus.emit(EventType.JOB_FAILED, "job-1", error="boom")

        assert [e.type for e in seen] == [EventType.JOB_FAILED]

    def test_close_detaches(self) -> None:
        bus = EventBus()
        seen: List[ProcessorEvent] = []
        subscription = bus.subscribe(seen.append)

        subscription.close()
        subscription.close()
        bus.emit(EventType.STARTED)

        assert seen == []
        assert bus.subscriber_count == 0

    def test_context_manager_detaches(self) -> None:
        bus = EventBus()
        with bus.subscribe(lambda event: None):
            assert bus.subscriber_count == 1
        assert bus.subscriber_count == 0

    def test_failing_handler_does_not_break_publisher(self, caplog: pytest.LogCaptureFixture) -> None:
        bus = EventBus()
        seen: List[ProcessorEvent] = []

        def _broken(event: ProcessorEvent) -> None:
            raise RuntimeError("subscriber bug")

        bus.subscribe(_broken)
        bus.subscribe(seen.append)

        with caplog.at_level(logging.ERROR, logger="finchcast.generation.events"):
            bus.emit(EventType.STOPPED)

        assert len(seen) == 1
        assert "Event subscriber failed" in caplog.text

    @pytest.mark.asyncio()
    async def test_async_handler_is_scheduled(self) -> None:
        bus = EventBus()
        received = asyncio.Event()

        async def _handler(event: ProcessorEvent) -> None:
            received.set()

        bus.subscribe(_handler)
        bus.emit(EventType.RESUMED)

        await asyncio.wait_for(received.wait(), timeout=1)


class TestStream:
    @pytest.mark.asyncio()
    async def test_stream_yields_published_events(self) -> None:
        bus = EventBus()
        collected: List[EventType] = []

        async def _consume() -> None:
            stream = bus.stream()
            try:
                async for event in stream:
                    collected.append(event.type)
                    if len(collected) == 2:
                        break
            finally:
                await stream.aclose()

        consumer = asyncio.create_task(_consume())
        await asyncio.sleep(0)
        bus.emit(EventType.STARTED)
        bus.emit(EventType.PAUSED)
        await asyncio.wait_for(consumer, timeout=1)

        assert collected == [EventType.STARTED, EventType.PAUSED]
        assert bus.subscriber_count == 0

    @pytest.mark.asyncio()
    async def test_slow_consumer_drops_oldest(self) -> None:
        bus = EventBus(stream_queue_size=2)
        stream = bus.stream()
        first = asyncio.create_task(stream.__anext__())
        await asyncio.sleep(0)

        # the pending reader takes the first event immediately
        bus.emit(EventType.JOB_STARTED, "a")
        assert (await asyncio.wait_for(first, timeout=1)).job_id == "a"

        for job_id in ("b", "c", "d"):
            bus.emit(EventType.JOB_STARTED, job_id)

        assert bus.dropped_events == 1
        assert (await stream.__anext__()).job_id == "c"
        assert (await stream.__anext__()).job_id == "d"
        await stream.aclose()
