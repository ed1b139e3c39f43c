"""Tests for daily processor statistics."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from finchcast.generation.models import ProcessorStatus
from finchcast.generation.stats import StatsAggregator


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class TestCounters:
    @pytest.mark.asyncio()
    async def test_empty_snapshot(self) -> None:
        stats = StatsAggregator().snapshot(active_jobs=0, status=ProcessorStatus.IDLE)

        assert stats.total_processed_today == 0
        assert stats.success_rate == 0.0
        assert stats.average_processing_time == 0.0
        assert stats.total_cost_today == Decimal("0")

    @pytest.mark.asyncio()
    async def test_success_rate_is_a_real_ratio(self) -> None:
        stats = StatsAggregator()
        await stats.record_success(Decimal("0.30"), 2.0)
        await stats.record_success(Decimal("0.30"), 4.0)
        await stats.record_success(Decimal("0.30"), 6.0)
        await stats.record_failure(8.0)

        assert stats.total_processed_today == 4
        assert stats.success_rate == 0.75
        assert stats.average_processing_time == 5.0

    @pytest.mark.asyncio()
    async def test_failed_spend_only_counts_toward_spend(self) -> None:
        stats = StatsAggregator()
        await stats.record_success(Decimal("0.30"), 1.0)
        await stats.record_spend(Decimal("0.10"))
        await stats.record_spend(Decimal("0"))

        assert stats.total_cost_today == Decimal("0.30")
        assert stats.total_spend_today == Decimal("0.40")

    @pytest.mark.asyncio()
    async def test_snapshot_fields(self) -> None:
        stats = StatsAggregator()
        await stats.record_success(Decimal("1.25"), 3.0)
        await stats.record_retry()

        snapshot = stats.snapshot(active_jobs=2, status=ProcessorStatus.PROCESSING)

        assert snapshot.active_jobs == 2
        assert snapshot.status == ProcessorStatus.PROCESSING
        assert snapshot.successful_today == 1
        assert snapshot.failed_today == 0
        assert snapshot.retries_scheduled == 1
        assert snapshot.to_payload()["total_cost_today"] == "1.25"

    @pytest.mark.asyncio()
    async def test_rolling_window(self) -> None:
        stats = StatsAggregator(window_size=2)
        await stats.record_success(Decimal("0"), 100.0)
        await stats.record_success(Decimal("0"), 2.0)
        await stats.record_success(Decimal("0"), 4.0)

        assert stats.average_processing_time == 3.0

    @pytest.mark.asyncio()
    async def test_concurrent_updates_are_not_lost(self) -> None:
        stats = StatsAggregator()

        await asyncio.gather(*(stats.record_success(Decimal("0.01"), 1.0) for _ in range(200)))

        assert stats.total_processed_today == 200
        assert stats.total_cost_today == Decimal("2.00")


class TestDayRollover:
    @pytest.mark.asyncio()
    async def test_counters_reset_on_new_day(self) -> None:
        clock = _Clock(datetime(2026, 3, 1, 23, 59))
        stats = StatsAggregator(clock=clock)
        await stats.record_success(Decimal("4.00"), 1.0)
        await stats.record_failure(1.0)
        assert stats.total_processed_today == 2

        clock.now += timedelta(minutes=2)

        assert stats.total_processed_today == 0
        assert stats.total_cost_today == Decimal("0")
        assert stats.total_spend_today == Decimal("0")
        assert stats.success_rate == 0.0

    @pytest.mark.asyncio()
    async def test_same_day_keeps_counters(self) -> None:
        clock = _Clock(datetime(2026, 3, 1, 8, 0))
        stats = StatsAggregator(clock=clock)
        await stats.record_success(Decimal("4.00"), 1.0)

        clock.now += timedelta(hours=10)

        assert stats.total_cost_today == Decimal("4.00")
