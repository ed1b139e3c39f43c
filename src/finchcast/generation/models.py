"""Domain models for the generation queue processor."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class QueueStatus(str, Enum):
    """Externally observable queue item states."""

    PENDING = "pending"
    SCRAPING = "scraping"
    SUMMARIZING = "summarizing"
    GENERATING_AUDIO = "generating-audio"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.COMPLETED, QueueStatus.FAILED)

    @property
    def is_in_flight(self) -> bool:
        return self in IN_FLIGHT_STATUSES


IN_FLIGHT_STATUSES = frozenset(
    {
        QueueStatus.SCRAPING,
        QueueStatus.SUMMARIZING,
        QueueStatus.GENERATING_AUDIO,
        QueueStatus.UPLOADING,
    }
)


class ProcessorStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    PAUSED = "paused"
    ERROR = "error"


class PipelineStage(str, Enum):
    """Fixed pipeline stages, in execution order."""

    SCRAPE = "scrape"
    SUMMARIZE = "summarize"
    GENERATE_AUDIO = "generate-audio"
    UPLOAD = "upload"

    @property
    def status(self) -> QueueStatus:
        return _STAGE_STATUS[self]


_STAGE_STATUS: Dict[PipelineStage, QueueStatus] = {
    PipelineStage.SCRAPE: QueueStatus.SCRAPING,
    PipelineStage.SUMMARIZE: QueueStatus.SUMMARIZING,
    PipelineStage.GENERATE_AUDIO: QueueStatus.GENERATING_AUDIO,
    PipelineStage.UPLOAD: QueueStatus.UPLOADING,
}


@dataclass(slots=True)
class QueueItem:
    """Persisted unit of work: one episode to generate."""

    id: str
    source_id: str
    episode_title: str
    position: int
    status: QueueStatus = QueueStatus.PENDING
    progress: int = 0
    cost: Optional[Decimal] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    estimated_time_remaining: Optional[int] = None
    episode_id: Optional[str] = None
    source_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(slots=True)
class ProcessingJob:
    """Runtime wrapper around a queue item while it is in the active set.

    ``started_at`` is a monotonic timestamp (event loop clock) for the
    current attempt; ``admitted_at`` is wall-clock time of admission.
    """

    queue_item: QueueItem
    started_at: float
    admitted_at: datetime
    retry_count: int = 0
    progress: int = 0
    estimated_time_remaining: Optional[float] = None
    error: Optional[str] = None
    attempt_cost: Decimal = Decimal("0")
    first_started_at: Optional[float] = None

    @property
    def job_id(self) -> str:
        return self.queue_item.id

    @property
    def attempt(self) -> int:
        """1-based number of the current attempt."""
        return self.retry_count + 1


@dataclass(slots=True)
class ProcessingResult:
    queue_item_id: str
    success: bool
    final_status: QueueStatus
    processing_time: float
    cost: Decimal = Decimal("0")
    error: Optional[str] = None
    audio_url: Optional[str] = None
    attempts: int = 1

    def to_payload(self) -> Dict[str, Any]:
        return {
            "queue_item_id": self.queue_item_id,
            "success": self.success,
            "final_status": self.final_status.value,
            "processing_time": self.processing_time,
            "cost": str(self.cost),
            "error": self.error,
            "audio_url": self.audio_url,
            "attempts": self.attempts,
        }


@dataclass(slots=True)
class ProgressUpdate:
    job_id: str
    stage: QueueStatus
    progress: int
    estimated_time_remaining: Optional[float] = None


@dataclass(slots=True)
class ProcessorStats:
    """Point-in-time view of processor activity for today."""

    active_jobs: int
    total_processed_today: int
    total_cost_today: Decimal
    success_rate: float
    average_processing_time: float
    status: ProcessorStatus
    total_spend_today: Decimal = Decimal("0")
    successful_today: int = 0
    failed_today: int = 0
    retries_scheduled: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "active_jobs": self.active_jobs,
            "total_processed_today": self.total_processed_today,
            "total_cost_today": str(self.total_cost_today),
            "total_spend_today": str(self.total_spend_today),
            "success_rate": self.success_rate,
            "average_processing_time": self.average_processing_time,
            "status": self.status.value,
            "successful_today": self.successful_today,
            "failed_today": self.failed_today,
            "retries_scheduled": self.retries_scheduled,
        }


@dataclass(slots=True)
class NewQueueItem:
    """Submission payload for :meth:`SQLiteQueueStore.enqueue`."""

    source_id: str
    episode_title: str
    episode_id: Optional[str] = None
    source_name: Optional[str] = None
    item_id: Optional[str] = None
