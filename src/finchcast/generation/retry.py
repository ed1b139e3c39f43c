"""Retry policy, failure classification and delayed requeue.

A failed attempt either goes back to ``pending`` and is re-dispatched after a
backoff delay, or ends in ``failed`` once the retry budget is spent. Retried
jobs keep their slot in the active set while they wait, so the scheduler
loop never admits the same item twice.

Delayed requeues live in a heap of :class:`ScheduledRetry` entries consumed
by one supervisor task. The supervisor does not depend on the scheduler
timer: stopping or pausing the processor never strands a job mid-retry.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import FinchcastError, TransientStageError
from .events import EventBus, EventType
from .governor import AdmissionGovernor
from .models import ProcessingJob, ProcessingResult, QueueStatus
from .state_machine import validate_transition
from .stats import StatsAggregator
from .store import JobStore, persist_fields, utc_now
from .telemetry import TelemetryRecorder, record_outcome

logger = logging.getLogger(__name__)


class RetryStrategy(str, Enum):
    """Backoff patterns for the delay before a retried attempt."""

    LINEAR_BACKOFF = "linear_backoff"  # 5s, 10s, 15s...
    EXPONENTIAL_BACKOFF = "exponential_backoff"  # 5s, 10s, 20s...
    FIXED_DELAY = "fixed_delay"  # 5s, 5s, 5s...
    IMMEDIATE = "immediate"
    NO_RETRY = "no_retry"


class FailureType(str, Enum):
    """Failure classification for retry decisions."""

    TRANSIENT = "transient"  # Network hiccups, provider 5xx, timeouts
    RATE_LIMITED = "rate_limited"  # Provider throttling
    PERMANENT = "permanent"  # Bad input, rejected upload, cost ceiling
    UNKNOWN = "unknown"


class RetryPolicy(BaseModel):
    """Backoff policy for failed generation attempts.

    Attributes:
        strategy: Backoff strategy to use
        base_delay_seconds: Delay unit; linear backoff waits ``base * retry_count``
        max_delay_seconds: Cap applied before jitter
        jitter_factor: Random jitter factor (0.0-1.0)
        backoff_multiplier: Multiplier for exponential backoff
        rate_limit_delay_seconds: Delay unit override for rate-limited failures
        fail_fast_on_permanent: Fail permanent errors without retrying
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    strategy: RetryStrategy = RetryStrategy.LINEAR_BACKOFF
    base_delay_seconds: float = Field(default=5.0, ge=0.0, le=3600.0)
    max_delay_seconds: float = Field(default=3600.0, ge=0.0, le=86400.0)
    jitter_factor: float = Field(default=0.0, ge=0.0, le=1.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    rate_limit_delay_seconds: Optional[float] = Field(default=None, ge=0.0, le=7200.0)
    fail_fast_on_permanent: bool = False

    def calculate_delay(
        self,
        attempt: int,
        failure_type: FailureType = FailureType.UNKNOWN,
    ) -> float:
        """Calculate retry delay with jitter.

        Args:
            attempt: Retry index (0 for the first retry)
            failure_type: Type of failure for special handling

        Returns:
            Delay in seconds
        """
        if failure_type == FailureType.RATE_LIMITED and self.rate_limit_delay_seconds:
            base_delay = self.rate_limit_delay_seconds
        else:
            base_delay = self.base_delay_seconds

        if self.strategy == RetryStrategy.EXPONENTIAL_BACKOFF:
            delay = base_delay * (self.backoff_multiplier**attempt)
        elif self.strategy == RetryStrategy.LINEAR_BACKOFF:
            delay = base_delay * (attempt + 1)
        elif self.strategy == RetryStrategy.FIXED_DELAY:
            delay = base_delay
        else:  # IMMEDIATE, NO_RETRY
            delay = 0.0

        delay = min(delay, self.max_delay_seconds)

        if self.jitter_factor > 0 and delay > 0:
            jitter_amount = delay * self.jitter_factor
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))

        return float(delay)


_RATE_LIMIT_PATTERNS = ("rate limit", "rate-limit", "too many requests", "quota")
_TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "temporarily",
    "unavailable",
    "connection",
    "reset by peer",
    "try again",
)
_PERMANENT_PATTERNS = (
    "invalid api key",
    "unauthorized",
    "forbidden",
    "permission denied",
)


def _status_code(error: BaseException) -> Optional[int]:
    if isinstance(error, FinchcastError):
        code = error.details.get("status_code")
        if isinstance(code, int):
            return code
    code = getattr(error, "status_code", None)
    if isinstance(code, int):
        return code
    response = getattr(error, "response", None)
    code = getattr(response, "status_code", None)
    return code if isinstance(code, int) else None


def classify_failure(error: BaseException) -> FailureType:
    """Classify a failed attempt.

    Checks the error type first, then an HTTP status code when the error
    carries one, and finally falls back to matching the message.
    """
    if isinstance(error, FinchcastError) and not error.recoverable:
        return FailureType.PERMANENT
    if isinstance(error, PermissionError):
        return FailureType.PERMANENT

    status = _status_code(error)
    if status == 429:
        return FailureType.RATE_LIMITED
    if status is not None and status >= 500:
        return FailureType.TRANSIENT
    if status is not None and 400 <= status < 500:
        return FailureType.PERMANENT

    if isinstance(error, (TransientStageError, TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return FailureType.TRANSIENT

    message = str(error).lower()
    if any(pattern in message for pattern in _RATE_LIMIT_PATTERNS):
        return FailureType.RATE_LIMITED
    if any(pattern in message for pattern in _TRANSIENT_PATTERNS):
        return FailureType.TRANSIENT
    if any(pattern in message for pattern in _PERMANENT_PATTERNS):
        return FailureType.PERMANENT
    return FailureType.UNKNOWN


def describe_error(error: BaseException) -> str:
    if isinstance(error, FinchcastError):
        return error.message
    return str(error) or type(error).__name__


class RetryAction(str, Enum):
    RETRY = "retry"
    FAIL = "fail"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    retry_count: int
    failure_type: FailureType
    message: str
    error_message: str
    delay_seconds: Optional[float] = None

    @property
    def will_retry(self) -> bool:
        return self.action is RetryAction.RETRY


@dataclass(order=True)
class ScheduledRetry:
    """Heap entry for a delayed requeue, ordered by fire time then sequence."""

    fire_at: float
    sequence: int
    job_id: str = field(compare=False)


RetryDispatcher = Callable[[ProcessingJob], None]


class RetryController:
    """Decides what happens after a failed attempt and runs delayed requeues.

    The processor binds a dispatcher with :meth:`bind`; when a scheduled
    retry fires the controller hands the still-active job back to it.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        governor: AdmissionGovernor,
        stats: StatsAggregator,
        events: EventBus,
        policy: RetryPolicy,
        max_retries: int,
        telemetry: Optional[TelemetryRecorder] = None,
        persist_timeout: Optional[float] = None,
    ) -> None:
        self._store = store
        self._governor = governor
        self._stats = stats
        self._events = events
        self._policy = policy
        self._max_retries = max_retries
        self._telemetry = telemetry
        self._persist_timeout = persist_timeout
        self._dispatch: Optional[RetryDispatcher] = None
        self._heap: List[ScheduledRetry] = []
        self._sequence = itertools.count()
        self._wakeup = asyncio.Event()
        self._supervisor: Optional[asyncio.Task] = None

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def max_retries(self) -> int:
        return self._max_retries

    @property
    def pending_retries(self) -> int:
        return len(self._heap)

    def scheduled(self) -> List[ScheduledRetry]:
        return sorted(self._heap)

    def bind(self, dispatch: RetryDispatcher) -> None:
        self._dispatch = dispatch

    def decide(self, job: ProcessingJob, error: BaseException) -> RetryDecision:
        """Compute the outcome of a failed attempt without side effects."""
        retry_count = job.retry_count + 1
        failure_type = classify_failure(error)
        message = describe_error(error)

        if self._policy.strategy == RetryStrategy.NO_RETRY or (
            self._policy.fail_fast_on_permanent and failure_type == FailureType.PERMANENT
        ):
            return RetryDecision(
                action=RetryAction.FAIL,
                retry_count=retry_count,
                failure_type=failure_type,
                message=message,
                error_message=f"Failed without retry: {message}",
            )

        if retry_count < self._max_retries:
            return RetryDecision(
                action=RetryAction.RETRY,
                retry_count=retry_count,
                failure_type=failure_type,
                message=message,
                error_message=f"Retry {retry_count}/{self._max_retries}: {message}",
                delay_seconds=self._policy.calculate_delay(retry_count - 1, failure_type),
            )

        return RetryDecision(
            action=RetryAction.FAIL,
            retry_count=retry_count,
            failure_type=failure_type,
            message=message,
            error_message=f"Failed after {self._max_retries} retries: {message}",
        )

    async def handle_failure(
        self,
        job: ProcessingJob,
        error: BaseException,
        *,
        stage: Optional[str] = None,
    ) -> RetryDecision:
        """Apply the retry decision for ``job``'s failed attempt.

        Returns:
            The decision that was applied
        """
        decision = self.decide(job, error)
        job.retry_count = decision.retry_count
        job.error = decision.message

        if decision.will_retry:
            await self._schedule_retry(job, decision, stage)
        else:
            await self._fail(job, decision, stage)
        return decision

    async def _schedule_retry(
        self, job: ProcessingJob, decision: RetryDecision, stage: Optional[str]
    ) -> None:
        loop = asyncio.get_running_loop()
        item = job.queue_item
        validate_transition(job.job_id, item.status, QueueStatus.PENDING, reason="retry")

        await persist_fields(
            self._store,
            job.job_id,
            {
                "status": QueueStatus.PENDING,
                "progress": 0,
                "estimated_time_remaining": None,
                "error_message": decision.error_message,
            },
            timeout=self._persist_timeout,
        )
        item.status = QueueStatus.PENDING
        item.progress = 0
        item.estimated_time_remaining = None
        item.error_message = decision.error_message
        job.progress = 0
        job.estimated_time_remaining = None

        delay = decision.delay_seconds or 0.0
        await self._stats.record_retry()

        logger.warning(
            "Generation attempt failed, retry scheduled",
            extra={
                "generation_job_id": job.job_id,
                "generation_retry_count": decision.retry_count,
                "generation_max_retries": self._max_retries,
                "generation_failure_type": decision.failure_type.value,
                "generation_stage": stage,
                "delay_seconds": delay,
                "error": decision.message,
            },
        )
        record_outcome(
            self._telemetry,
            job.job_id,
            loop.time() - job.started_at,
            "retry_scheduled",
            cost=job.attempt_cost,
            attempt=decision.retry_count,
            metadata={
                "failure_type": decision.failure_type.value,
                "delay_seconds": delay,
                "stage": stage,
            },
        )

        self._events.emit(
            EventType.JOB_RETRY_SCHEDULED,
            job.job_id,
            retry_count=decision.retry_count,
            delay_seconds=delay,
            error=decision.message,
            failure_type=decision.failure_type.value,
            stage=stage,
        )

        heapq.heappush(
            self._heap,
            ScheduledRetry(
                fire_at=loop.time() + delay,
                sequence=next(self._sequence),
                job_id=job.job_id,
            ),
        )
        self._wakeup.set()
        if self._supervisor is None or self._supervisor.done():
            self._supervisor = loop.create_task(self._supervise())

    async def _fail(
        self, job: ProcessingJob, decision: RetryDecision, stage: Optional[str]
    ) -> None:
        loop = asyncio.get_running_loop()
        item = job.queue_item
        validate_transition(job.job_id, item.status, QueueStatus.FAILED, reason="retries exhausted")

        completed_at = utc_now()
        await persist_fields(
            self._store,
            job.job_id,
            {
                "status": QueueStatus.FAILED,
                "progress": 0,
                "estimated_time_remaining": None,
                "completed_at": completed_at,
                "error_message": decision.error_message,
            },
            timeout=self._persist_timeout,
        )
        item.status = QueueStatus.FAILED
        item.progress = 0
        item.estimated_time_remaining = None
        item.completed_at = completed_at
        item.error_message = decision.error_message

        await self._governor.release(job.job_id)
        processing_time = loop.time() - job.started_at
        await self._stats.record_failure(processing_time)

        result = ProcessingResult(
            queue_item_id=job.job_id,
            success=False,
            final_status=QueueStatus.FAILED,
            processing_time=processing_time,
            cost=job.attempt_cost,
            error=decision.error_message,
            attempts=decision.retry_count,
        )
        logger.error(
            "Generation job failed",
            extra={
                "generation_job_id": job.job_id,
                "generation_retry_count": decision.retry_count,
                "generation_failure_type": decision.failure_type.value,
                "generation_stage": stage,
                "error": decision.message,
            },
        )
        record_outcome(
            self._telemetry,
            job.job_id,
            processing_time,
            "failed",
            cost=job.attempt_cost,
            attempt=decision.retry_count,
            metadata={"failure_type": decision.failure_type.value, "stage": stage},
            active_jobs=self._governor.active_count,
        )

        self._events.emit(
            EventType.JOB_FAILED,
            job.job_id,
            error=decision.error_message,
            result=result.to_payload(),
        )

    async def _supervise(self) -> None:
        loop = asyncio.get_running_loop()
        while self._heap:
            entry = self._heap[0]
            remaining = entry.fire_at - loop.time()
            if remaining > 0:
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass
                continue

            heapq.heappop(self._heap)
            job = self._governor.get(entry.job_id)
            if job is None:
                logger.warning(
                    "Scheduled retry for inactive job dropped",
                    extra={"generation_job_id": entry.job_id},
                )
                continue
            if self._dispatch is None:
                logger.error(
                    "No dispatcher bound, cannot run scheduled retry",
                    extra={"generation_job_id": entry.job_id},
                )
                continue
            logger.info(
                "Dispatching scheduled retry",
                extra={"generation_job_id": job.job_id, "generation_attempt": job.attempt},
            )
            self._dispatch(job)

    async def aclose(self) -> None:
        """Cancel the supervisor and forget scheduled retries."""
        self._heap.clear()
        if self._supervisor is not None and not self._supervisor.done():
            self._supervisor.cancel()
            try:
                await self._supervisor
            except asyncio.CancelledError:
                pass
        self._supervisor = None


__all__ = [
    "FailureType",
    "RetryAction",
    "RetryController",
    "RetryDecision",
    "RetryPolicy",
    "RetryStrategy",
    "ScheduledRetry",
    "classify_failure",
    "describe_error",
]
