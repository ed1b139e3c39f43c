"""Running statistics for the generation processor.

Counters cover the current calendar day and reset on the first observation
after midnight (local time of the injected clock). Every mutation goes
through the aggregator's lock so concurrently finishing jobs cannot lose
updates.
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Deque, Optional

from .models import ProcessorStats, ProcessorStatus


class StatsAggregator:
    """Accumulates per-day outcome counters and spend."""

    def __init__(
        self,
        *,
        window_size: int = 100,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._clock = clock or datetime.now
        self._lock = asyncio.Lock()
        self._durations: Deque[float] = deque(maxlen=window_size)
        self._day: date = self._clock().date()
        self._successes = 0
        self._failures = 0
        self._retries = 0
        self._cost_today = Decimal("0")
        self._spend_today = Decimal("0")

    @property
    def total_cost_today(self) -> Decimal:
        self._roll_day()
        return self._cost_today

    @property
    def total_spend_today(self) -> Decimal:
        """Completed cost plus partial cost of failed attempts."""
        self._roll_day()
        return self._spend_today

    @property
    def total_processed_today(self) -> int:
        self._roll_day()
        return self._successes + self._failures

    @property
    def success_rate(self) -> float:
        processed = self.total_processed_today
        if processed == 0:
            return 0.0
        return self._successes / processed

    @property
    def average_processing_time(self) -> float:
        if not self._durations:
            return 0.0
        return sum(self._durations) / len(self._durations)

    async def record_success(self, cost: Decimal, processing_time: float) -> None:
        async with self._lock:
            self._roll_day()
            self._successes += 1
            self._cost_today += cost
            self._spend_today += cost
            self._durations.append(processing_time)

    async def record_failure(self, processing_time: float) -> None:
        async with self._lock:
            self._roll_day()
            self._failures += 1
            self._durations.append(processing_time)

    async def record_spend(self, cost: Decimal) -> None:
        """Count cost incurred by an attempt that did not complete."""
        if not cost:
            return
        async with self._lock:
            self._roll_day()
            self._spend_today += cost

    async def record_retry(self) -> None:
        async with self._lock:
            self._roll_day()
            self._retries += 1

    def snapshot(self, *, active_jobs: int, status: ProcessorStatus) -> ProcessorStats:
        self._roll_day()
        return ProcessorStats(
            active_jobs=active_jobs,
            total_processed_today=self._successes + self._failures,
            total_cost_today=self._cost_today,
            success_rate=self.success_rate,
            average_processing_time=self.average_processing_time,
            status=status,
            total_spend_today=self._spend_today,
            successful_today=self._successes,
            failed_today=self._failures,
            retries_scheduled=self._retries,
        )

    def _roll_day(self) -> None:
        today = self._clock().date()
        if today == self._day:
            return
        self._day = today
        self._successes = 0
        self._failures = 0
        self._retries = 0
        self._cost_today = Decimal("0")
        self._spend_today = Decimal("0")
