"""Four-stage episode generation pipeline.

Each attempt runs scrape, summarize, generate-audio and upload in order and
reports two checkpoints per stage. Checkpoints are persisted and published
as ``progress_update`` events; a checkpoint write that fails is logged and
the attempt carries on.

Any stage failure aborts the attempt with :class:`PipelineAttemptError`,
which records the stage, the original exception and the cost already spent
so the retry controller can account for it.
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Awaitable, Dict, Optional, TypeVar

from ..errors import TransientStageError, ValidationError
from ..services.base import GenerationServices
from .events import EventBus, EventType
from .governor import AdmissionGovernor
from .models import PipelineStage, ProcessingJob, ProcessingResult, ProgressUpdate, QueueStatus
from .retry import describe_error
from .state_machine import validate_transition
from .store import JobStore, persist_fields

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (start, end) progress per stage
CHECKPOINTS: Dict[PipelineStage, tuple] = {
    PipelineStage.SCRAPE: (10, 25),
    PipelineStage.SUMMARIZE: (35, 55),
    PipelineStage.GENERATE_AUDIO: (65, 85),
    PipelineStage.UPLOAD: (90, 100),
}


class PipelineAttemptError(Exception):
    """A stage failed and the current attempt was abandoned."""

    def __init__(self, stage: PipelineStage, cause: BaseException, partial_cost: Decimal) -> None:
        self.stage = stage
        self.cause = cause
        self.partial_cost = partial_cost
        super().__init__(f"{stage.value} failed: {describe_error(cause)}")


def estimate_remaining(elapsed: float, progress: int) -> float:
    """Linear extrapolation of the remaining time for an attempt."""
    if progress <= 0:
        return 0.0
    return max(0.0, elapsed * (100.0 / progress - 1.0))


class PipelineExecutor:
    """Runs one attempt of a job through the fixed stage sequence."""

    def __init__(
        self,
        *,
        services: GenerationServices,
        store: JobStore,
        events: EventBus,
        governor: AdmissionGovernor,
        tts_options: Optional[Dict[str, Any]] = None,
        stage_timeout: Optional[float] = None,
        persist_timeout: Optional[float] = None,
    ) -> None:
        self._services = services
        self._store = store
        self._events = events
        self._governor = governor
        self._tts_options = dict(tts_options or {})
        self._stage_timeout = stage_timeout
        self._persist_timeout = persist_timeout

    async def execute(self, job: ProcessingJob) -> ProcessingResult:
        """Run every stage for ``job``'s current attempt.

        Returns:
            Successful result carrying the attempt cost and audio URL

        Raises:
            PipelineAttemptError: When any stage fails
        """
        loop = asyncio.get_running_loop()
        item = job.queue_item
        stage = PipelineStage.SCRAPE

        try:
            await self._checkpoint(job, stage, start=True)
            contents = await self._run_stage(stage, self._services.scraper.scrape_source(item.source_id))
            if not contents:
                raise ValidationError("No content scraped from source", stage=stage.value)
            await self._checkpoint(job, stage, start=False)

            stage = PipelineStage.SUMMARIZE
            await self._checkpoint(job, stage, start=True)
            summary = await self._run_stage(stage, self._services.summarizer.generate_summary(contents[0]))
            self._add_cost(job, summary.cost)
            await self._checkpoint(job, stage, start=False)

            stage = PipelineStage.GENERATE_AUDIO
            await self._checkpoint(job, stage, start=True)
            text = summary.tts_optimized_content or summary.summary
            if not text or not text.strip():
                raise ValidationError("Summary produced no text to synthesize", stage=stage.value)
            speech = await self._run_stage(
                stage, self._services.tts.generate_speech(text, dict(self._tts_options))
            )
            self._add_cost(job, speech.cost)
            if not speech.audio:
                raise ValidationError("Speech synthesis returned no audio", stage=stage.value)
            await self._checkpoint(job, stage, start=False)

            stage = PipelineStage.UPLOAD
            await self._checkpoint(job, stage, start=True)
            audio_url = await self._run_stage(
                stage,
                self._services.storage.store(
                    speech.audio,
                    filename=self._audio_filename(job),
                    content_type=speech.content_type,
                ),
            )
            await self._checkpoint(job, stage, start=False)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - handed to the retry controller
            logger.warning(
                "Pipeline stage failed",
                extra={
                    "generation_job_id": job.job_id,
                    "generation_stage": stage.value,
                    "generation_attempt": job.attempt,
                    "error": describe_error(exc),
                },
            )
            raise PipelineAttemptError(stage, exc, job.attempt_cost) from exc

        return ProcessingResult(
            queue_item_id=job.job_id,
            success=True,
            final_status=QueueStatus.COMPLETED,
            processing_time=loop.time() - job.started_at,
            cost=job.attempt_cost,
            audio_url=audio_url,
            attempts=job.attempt,
        )

    async def _run_stage(self, stage: PipelineStage, call: Awaitable[T]) -> T:
        if self._stage_timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self._stage_timeout)
        except asyncio.TimeoutError as exc:
            raise TransientStageError(
                f"Stage {stage.value} timed out after {self._stage_timeout}s",
                stage=stage.value,
            ) from exc

    def _add_cost(self, job: ProcessingJob, cost: Optional[Decimal]) -> None:
        if cost:
            job.attempt_cost += Decimal(str(cost))
        self._governor.check_job_cost(job)

    async def _checkpoint(self, job: ProcessingJob, stage: PipelineStage, *, start: bool) -> None:
        progress = CHECKPOINTS[stage][0 if start else 1]
        status = stage.status
        item = job.queue_item
        validate_transition(job.job_id, item.status, status)

        elapsed = asyncio.get_running_loop().time() - job.started_at
        eta = estimate_remaining(elapsed, progress)
        job.progress = progress
        job.estimated_time_remaining = eta
        item.status = status
        item.progress = progress
        item.estimated_time_remaining = int(round(eta))

        await persist_fields(
            self._store,
            job.job_id,
            {"status": status, "progress": progress, "estimated_time_remaining": eta},
            timeout=self._persist_timeout,
        )

        update = ProgressUpdate(
            job_id=job.job_id,
            stage=status,
            progress=progress,
            estimated_time_remaining=eta,
        )
        self._events.emit(
            EventType.PROGRESS_UPDATE,
            job.job_id,
            stage=update.stage.value,
            progress=update.progress,
            estimated_time_remaining=update.estimated_time_remaining,
        )

    def _audio_filename(self, job: ProcessingJob) -> str:
        extension = self._tts_options.get("response_format", "mp3")
        stem = job.queue_item.episode_id or job.job_id
        return f"{stem}.{extension}"


__all__ = ["CHECKPOINTS", "PipelineAttemptError", "PipelineExecutor", "estimate_remaining"]
