"""Tests for admission control and spend limits."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from finchcast.errors import BudgetExceededError, CostLimitExceededError
from finchcast.generation.config import CostLimits
from finchcast.generation.governor import AdmissionGovernor
from finchcast.generation.models import ProcessingJob, QueueItem


def _item(index: int) -> QueueItem:
    return QueueItem(id=f"item-{index}", source_id=f"source-{index}", episode_title="Episode", position=index)


def _governor(max_jobs: int = 2, **limits) -> AdmissionGovernor:
    return AdmissionGovernor(
        max_concurrent_jobs=max_jobs,
        cost_limits=CostLimits(**limits),
        monotonic=lambda: 0.0,
    )


class TestAdmission:
    @pytest.mark.asyncio()
    async def test_admits_up_to_ceiling(self) -> None:
        governor = _governor(max_jobs=2)

        jobs = [await governor.admit(_item(i)) for i in range(3)]

        assert jobs[0] is not None and jobs[1] is not None
        assert jobs[2] is None
        assert governor.active_count == 2
        assert governor.available_slots() == 0

    @pytest.mark.asyncio()
    async def test_duplicate_admission_refused(self) -> None:
        governor = _governor()
        item = _item(1)

        assert await governor.admit(item) is not None
        assert await governor.admit(item) is None
        assert governor.active_ids() == ["item-1"]

    @pytest.mark.asyncio()
    async def test_new_job_state(self) -> None:
        job = await _governor().admit(_item(1))

        assert job.retry_count == 0
        assert job.progress == 0
        assert job.attempt == 1
        assert job.attempt_cost == Decimal("0")

    @pytest.mark.asyncio()
    async def test_release_frees_slot(self) -> None:
        governor = _governor(max_jobs=1)
        await governor.admit(_item(1))

        released = await governor.release("item-1")

        assert released.job_id == "item-1"
        assert governor.available_slots() == 1
        assert await governor.release("item-1") is None

    @pytest.mark.asyncio()
    async def test_concurrent_admissions_respect_ceiling(self) -> None:
        governor = _governor(max_jobs=3)

        results = await asyncio.gather(*(governor.admit(_item(i)) for i in range(10)))

        assert sum(1 for job in results if job is not None) == 3
        assert governor.active_count == 3

    def test_invalid_ceiling(self) -> None:
        with pytest.raises(ValueError):
            AdmissionGovernor(max_concurrent_jobs=0, cost_limits=CostLimits())


class TestDailyBudget:
    def test_budget_reached_at_limit(self) -> None:
        governor = _governor(daily_limit=Decimal("10.00"))

        assert not governor.budget_reached(Decimal("9.99"))
        assert governor.budget_reached(Decimal("10.00"))
        assert governor.budget_reached(Decimal("12.00"))

    def test_ensure_budget_raises(self) -> None:
        governor = _governor(daily_limit=Decimal("10.00"))

        governor.ensure_budget(Decimal("1.00"))
        with pytest.raises(BudgetExceededError) as excinfo:
            governor.ensure_budget(Decimal("10.00"))

        assert excinfo.value.details["daily_limit"] == "10.00"


def _job(cost: str) -> ProcessingJob:
    return ProcessingJob(
        queue_item=_item(1),
        started_at=0.0,
        admitted_at=datetime.now(timezone.utc),
        attempt_cost=Decimal(cost),
    )


class TestPerJobLimit:
    def test_within_limit_is_silent(self, caplog: pytest.LogCaptureFixture) -> None:
        governor = _governor(per_job_limit=Decimal("1.00"))

        with caplog.at_level(logging.WARNING, logger="finchcast.generation.governor"):
            governor.check_job_cost(_job("1.00"))

        assert caplog.records == []

    def test_advisory_by_default(self, caplog: pytest.LogCaptureFixture) -> None:
        governor = _governor(per_job_limit=Decimal("1.00"))

        with caplog.at_level(logging.WARNING, logger="finchcast.generation.governor"):
            governor.check_job_cost(_job("1.50"))

        assert "exceeded per-job cost limit" in caplog.text

    def test_enforced_when_enabled(self) -> None:
        governor = _governor(per_job_limit=Decimal("1.00"), enforce_per_job_limit=True)

        with pytest.raises(CostLimitExceededError) as excinfo:
            governor.check_job_cost(_job("1.50"))

        assert excinfo.value.recoverable is False
        assert excinfo.value.details["attempt_cost"] == "1.50"
