"""Admission control: concurrency ceiling and spend limits.

The governor owns the active-jobs map. Admission and release are the only
writers and both run under one lock, so the map can never exceed
``max_concurrent_jobs`` even when many jobs finish at once. Running jobs are
never interrupted by the daily budget; it only gates new admissions.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from ..errors import BudgetExceededError, CostLimitExceededError
from .models import ProcessingJob, QueueItem

if TYPE_CHECKING:
    from .config import CostLimits

logger = logging.getLogger(__name__)


class AdmissionGovernor:
    """Gates job admission on free slots and remaining daily budget."""

    def __init__(
        self,
        *,
        max_concurrent_jobs: int,
        cost_limits: CostLimits,
        monotonic: Optional[Callable[[], float]] = None,
    ) -> None:
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be >= 1")
        self._max_concurrent_jobs = max_concurrent_jobs
        self._cost_limits = cost_limits
        self._monotonic = monotonic
        self._active: Dict[str, ProcessingJob] = {}
        self._lock = asyncio.Lock()

    @property
    def max_concurrent_jobs(self) -> int:
        return self._max_concurrent_jobs

    @property
    def cost_limits(self) -> CostLimits:
        return self._cost_limits

    @property
    def active_count(self) -> int:
        return len(self._active)

    def active_ids(self) -> List[str]:
        return list(self._active)

    def get(self, job_id: str) -> Optional[ProcessingJob]:
        return self._active.get(job_id)

    def available_slots(self) -> int:
        return max(0, self._max_concurrent_jobs - len(self._active))

    async def admit(self, item: QueueItem) -> Optional[ProcessingJob]:
        """Move ``item`` into the active set.

        Returns:
            The new runtime job, or None when the item is already active or
            no slot is free
        """
        async with self._lock:
            if item.id in self._active:
                logger.debug(
                    "Queue item already active, skipping admission",
                    extra={"generation_job_id": item.id},
                )
                return None
            if len(self._active) >= self._max_concurrent_jobs:
                return None
            now = self._now()
            job = ProcessingJob(
                queue_item=item,
                started_at=now,
                first_started_at=now,
                admitted_at=datetime.now(timezone.utc),
            )
            self._active[item.id] = job
            return job

    async def release(self, job_id: str) -> Optional[ProcessingJob]:
        async with self._lock:
            return self._active.pop(job_id, None)

    def budget_reached(self, spend_today: Decimal) -> bool:
        return spend_today >= self._cost_limits.daily_limit

    def ensure_budget(self, spend_today: Decimal) -> None:
        """Raise if today's spend has reached the daily limit.

        Raises:
            BudgetExceededError: When ``spend_today >= daily_limit``
        """
        if self.budget_reached(spend_today):
            raise BudgetExceededError(
                f"Daily cost limit reached: {spend_today} >= {self._cost_limits.daily_limit}",
                details={
                    "spend_today": str(spend_today),
                    "daily_limit": str(self._cost_limits.daily_limit),
                },
            )

    def check_job_cost(self, job: ProcessingJob) -> None:
        """Apply the per-job ceiling to the current attempt's cost.

        Advisory unless ``enforce_per_job_limit`` is set.

        Raises:
            CostLimitExceededError: When enforcement is on and the limit is exceeded
        """
        limit = self._cost_limits.per_job_limit
        if job.attempt_cost <= limit:
            return
        context = {
            "generation_job_id": job.job_id,
            "attempt_cost": str(job.attempt_cost),
            "per_job_limit": str(limit),
        }
        if not self._cost_limits.enforce_per_job_limit:
            logger.warning("Job exceeded per-job cost limit", extra=context)
            return
        raise CostLimitExceededError(
            f"Job cost {job.attempt_cost} exceeds per-job limit {limit}",
            details=context,
        )

    def _now(self) -> float:
        if self._monotonic is not None:
            return self._monotonic()
        return asyncio.get_running_loop().time()
