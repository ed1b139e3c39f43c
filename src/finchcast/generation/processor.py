"""Generation queue processor: the scheduler loop.

An APScheduler interval job calls :meth:`GenerationQueueProcessor.tick`.
Each tick checks the daily budget, asks the store for as many pending items
as there are free slots and launches one asyncio task per admitted job. The
tick never waits for jobs to finish.

Stopping or pausing only stops admissions. Jobs already running, including
those waiting for a retry, always run until they complete or exhaust their
retries.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..errors import FinchcastError
from ..services.base import GenerationServices
from .config import ProcessorConfig
from .events import EventBus, EventHandler, EventType, Subscription
from .governor import AdmissionGovernor
from .models import ProcessingJob, ProcessingResult, ProcessorStats, ProcessorStatus, QueueStatus
from .pipeline import PipelineAttemptError, PipelineExecutor
from .retry import RetryController, describe_error
from .state_machine import validate_transition
from .stats import StatsAggregator
from .store import JobStore, persist_fields, utc_now
from .telemetry import TelemetryRecorder, record_outcome

logger = logging.getLogger(__name__)

TICK_JOB_ID = "generation-queue-tick"


class GenerationQueueProcessor:
    """Pulls pending queue items and drives them through the pipeline."""

    def __init__(
        self,
        store: JobStore,
        services: GenerationServices,
        config: Optional[ProcessorConfig] = None,
        *,
        events: Optional[EventBus] = None,
        stats: Optional[StatsAggregator] = None,
        telemetry: Optional[TelemetryRecorder] = None,
    ) -> None:
        self._config = config or ProcessorConfig()
        self._store = store
        self._events = events or EventBus()
        self._stats = stats or StatsAggregator()
        self._telemetry = telemetry
        self._governor = AdmissionGovernor(
            max_concurrent_jobs=self._config.max_concurrent_jobs,
            cost_limits=self._config.cost_limits,
        )
        self._executor = PipelineExecutor(
            services=services,
            store=store,
            events=self._events,
            governor=self._governor,
            tts_options=self._config.tts.model_dump(),
            stage_timeout=self._config.stage_timeout_seconds,
            persist_timeout=self._config.persist_timeout_seconds,
        )
        self._retry = RetryController(
            store=store,
            governor=self._governor,
            stats=self._stats,
            events=self._events,
            policy=self._config.retry,
            max_retries=self._config.max_retries,
            telemetry=telemetry,
            persist_timeout=self._config.persist_timeout_seconds,
        )
        self._retry.bind(self._launch)

        self._status = ProcessorStatus.IDLE
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._tasks: Set[asyncio.Task] = set()
        self._tick_lock = asyncio.Lock()
        self._idle = asyncio.Event()
        self._idle.set()

        if self._config.auto_start:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                logger.debug("No running event loop; auto start deferred to serve()")
            else:
                self.start()

    # ------------------------------------------------------------------
    # Observer surface
    # ------------------------------------------------------------------

    @property
    def config(self) -> ProcessorConfig:
        return self._config

    @property
    def status(self) -> ProcessorStatus:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def governor(self) -> AdmissionGovernor:
        return self._governor

    @property
    def retry_controller(self) -> RetryController:
        return self._retry

    def active_jobs(self) -> List[ProcessingJob]:
        jobs = (self._governor.get(job_id) for job_id in self._governor.active_ids())
        return [job for job in jobs if job is not None]

    def get_stats(self) -> ProcessorStats:
        return self._stats.snapshot(active_jobs=self._governor.active_count, status=self._status)

    def subscribe(
        self,
        handler: EventHandler,
        event_types: Optional[Iterable[EventType]] = None,
    ) -> Subscription:
        return self._events.subscribe(handler, event_types)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._scheduler is not None:
            logger.info("Generation processor already running")
            return

        loop = asyncio.get_running_loop()
        scheduler = AsyncIOScheduler(event_loop=loop)
        scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self._config.polling_interval_seconds),
            id=TICK_JOB_ID,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(),
        )
        scheduler.start()
        self._scheduler = scheduler
        self._status = ProcessorStatus.PROCESSING
        logger.info(
            "Generation processor started",
            extra={
                "polling_interval_ms": self._config.polling_interval_ms,
                "max_concurrent_jobs": self._config.max_concurrent_jobs,
            },
        )
        self._events.emit(EventType.STARTED)

    def stop(self) -> None:
        if self._scheduler is None:
            logger.info("Generation processor already stopped")
            return
        # a wakeup queued by start() may still run after shutdown
        self._scheduler.remove_job(TICK_JOB_ID)
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        self._status = ProcessorStatus.IDLE
        logger.info(
            "Generation processor stopped",
            extra={"active_jobs": self._governor.active_count},
        )
        self._events.emit(EventType.STOPPED)

    def pause(self, *, reason: Optional[str] = None) -> None:
        if self._status == ProcessorStatus.PAUSED:
            logger.info("Generation processor already paused")
            return
        self._status = ProcessorStatus.PAUSED
        logger.info("Generation processor paused", extra={"reason": reason})
        self._events.emit(EventType.PAUSED, reason=reason)

    def resume(self) -> None:
        if self._status != ProcessorStatus.PAUSED:
            logger.info("Generation processor not paused, resume ignored")
            return
        self._status = ProcessorStatus.PROCESSING if self.is_running else ProcessorStatus.IDLE
        logger.info("Generation processor resumed")
        self._events.emit(EventType.RESUMED)

    async def shutdown(self, *, drain: bool = False, timeout: Optional[float] = None) -> None:
        """Stop admissions and release background resources.

        With ``drain`` the call first waits for in-flight jobs, including
        scheduled retries, to reach a terminal state.
        """
        self.stop()
        if drain:
            await self.wait_idle(timeout=timeout)
        await self._retry.aclose()

    async def serve(self, *, drain: bool = False) -> None:
        """Run until cancelled, or with ``drain`` until the queue is empty."""
        self.start()
        try:
            while True:
                await asyncio.sleep(self._config.polling_interval_seconds)
                if drain and await self._drained():
                    logger.info("Generation queue drained")
                    break
        finally:
            await self.shutdown()

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until no job is active and no attempt task is pending."""
        await asyncio.wait_for(self._idle.wait(), timeout=timeout)

    # ------------------------------------------------------------------
    # Scheduler loop
    # ------------------------------------------------------------------

    async def tick(self) -> int:
        """Run one admission pass.

        Returns:
            Number of jobs admitted
        """
        async with self._tick_lock:
            if self._status == ProcessorStatus.PAUSED:
                return 0
            try:
                admitted = await self._admit_pending()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - the loop must survive tick errors
                logger.exception("Generation processor tick failed")
                self._status = ProcessorStatus.ERROR
                self._events.emit(
                    EventType.ERROR,
                    error=describe_error(exc),
                    error_type=type(exc).__name__,
                    code=exc.code if isinstance(exc, FinchcastError) else None,
                )
                return 0

            if self._status == ProcessorStatus.ERROR:
                self._status = ProcessorStatus.PROCESSING if self.is_running else ProcessorStatus.IDLE
            return admitted

    async def _admit_pending(self) -> int:
        spend = self._stats.total_spend_today
        if self._governor.budget_reached(spend):
            limit = self._governor.cost_limits.daily_limit
            logger.warning(
                "Daily cost limit reached, pausing admissions",
                extra={"spend_today": str(spend), "daily_limit": str(limit)},
            )
            self.pause(reason="budget_exceeded")
            self._events.emit(
                EventType.BUDGET_EXCEEDED,
                spend_today=str(spend),
                daily_limit=str(limit),
            )
            return 0

        slots = self._governor.available_slots()
        if slots <= 0:
            return 0

        was_running = self.is_running
        items = await self._store.list_pending(slots, exclude_ids=self._governor.active_ids())
        admitted = 0
        for item in items:
            # pause() or stop() may land while the store or governor is awaited.
            if self._status == ProcessorStatus.PAUSED or (was_running and not self.is_running):
                logger.debug(
                    "Admission pass interrupted",
                    extra={"generation_status": self._status.value, "skipped_items": len(items) - admitted},
                )
                break
            job = await self._governor.admit(item)
            if job is None:
                continue
            admitted += 1
            logger.info(
                "Admitted generation job",
                extra={
                    "generation_job_id": job.job_id,
                    "generation_position": item.position,
                    "active_jobs": self._governor.active_count,
                },
            )
            self._events.emit(EventType.JOB_STARTED, job.job_id, episode_title=item.episode_title)
            self._launch(job)
        return admitted

    def _launch(self, job: ProcessingJob) -> None:
        task = asyncio.get_running_loop().create_task(self._run_attempt(job))
        self._tasks.add(task)
        self._idle.clear()
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not self._tasks and self._governor.active_count == 0:
            self._idle.set()

    async def _run_attempt(self, job: ProcessingJob) -> None:
        loop = asyncio.get_running_loop()
        job.started_at = loop.time()
        job.progress = 0
        job.estimated_time_remaining = None
        job.error = None
        job.attempt_cost = Decimal("0")
        try:
            if job.retry_count == 0:
                started_at = utc_now()
                job.queue_item.started_at = started_at
                await persist_fields(
                    self._store,
                    job.job_id,
                    {"started_at": started_at, "progress": 0},
                    timeout=self._config.persist_timeout_seconds,
                )
            try:
                result = await self._executor.execute(job)
            except PipelineAttemptError as exc:
                await self._stats.record_spend(exc.partial_cost)
                await self._retry.handle_failure(job, exc.cause, stage=exc.stage.value)
                return
            await self._complete(job, result)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Generation job crashed outside the pipeline",
                extra={"generation_job_id": job.job_id},
            )
            await self._governor.release(job.job_id)
            self._events.emit(EventType.ERROR, job.job_id, error=describe_error(exc))

    async def _complete(self, job: ProcessingJob, result: ProcessingResult) -> None:
        item = job.queue_item
        validate_transition(job.job_id, item.status, QueueStatus.COMPLETED)
        completed_at = utc_now()
        await persist_fields(
            self._store,
            job.job_id,
            {
                "status": QueueStatus.COMPLETED,
                "progress": 100,
                "estimated_time_remaining": 0,
                "completed_at": completed_at,
                "cost": result.cost,
            },
            timeout=self._config.persist_timeout_seconds,
        )
        item.status = QueueStatus.COMPLETED
        item.progress = 100
        item.estimated_time_remaining = 0
        item.completed_at = completed_at
        item.cost = result.cost

        await self._governor.release(job.job_id)
        await self._stats.record_success(result.cost, result.processing_time)

        logger.info(
            "Generation job completed",
            extra={
                "generation_job_id": job.job_id,
                "generation_attempt": result.attempts,
                "cost": str(result.cost),
                "processing_time": result.processing_time,
            },
        )
        record_outcome(
            self._telemetry,
            job.job_id,
            result.processing_time,
            "completed",
            cost=result.cost,
            attempt=result.attempts,
            metadata={"audio_url": result.audio_url},
            active_jobs=self._governor.active_count,
        )
        self._events.emit(EventType.JOB_COMPLETED, job.job_id, result=result.to_payload())

    async def _drained(self) -> bool:
        if self._tasks or self._governor.active_count:
            return False
        if self._status == ProcessorStatus.PAUSED:
            return True
        pending = await self._store.list_pending(1)
        return not pending


__all__ = ["GenerationQueueProcessor", "TICK_JOB_ID"]
