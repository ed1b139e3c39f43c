"""Episode generation queue processor package."""

from .config import ConfigurationManager, CostLimits, ProcessorConfig, TTSOptions
from .events import EventBus, EventType, ProcessorEvent, Subscription
from .governor import AdmissionGovernor
from .models import (
    NewQueueItem,
    PipelineStage,
    ProcessingJob,
    ProcessingResult,
    ProcessorStats,
    ProcessorStatus,
    ProgressUpdate,
    QueueItem,
    QueueStatus,
)
from .pipeline import PipelineAttemptError, PipelineExecutor
from .processor import GenerationQueueProcessor
from .retry import (
    FailureType,
    RetryController,
    RetryDecision,
    RetryPolicy,
    RetryStrategy,
    ScheduledRetry,
    classify_failure,
)
from .state_machine import VALID_TRANSITIONS, StateTransition, validate_transition
from .stats import StatsAggregator
from .store import JobStore, SQLiteQueueStore
from .telemetry import TelemetryRecorder

__all__ = [
    "AdmissionGovernor",
    "ConfigurationManager",
    "CostLimits",
    "EventBus",
    "EventType",
    "FailureType",
    "GenerationQueueProcessor",
    "JobStore",
    "NewQueueItem",
    "PipelineAttemptError",
    "PipelineExecutor",
    "PipelineStage",
    "ProcessingJob",
    "ProcessingResult",
    "ProcessorConfig",
    "ProcessorEvent",
    "ProcessorStats",
    "ProcessorStatus",
    "ProgressUpdate",
    "QueueItem",
    "QueueStatus",
    "RetryController",
    "RetryDecision",
    "RetryPolicy",
    "RetryStrategy",
    "SQLiteQueueStore",
    "ScheduledRetry",
    "StateTransition",
    "StatsAggregator",
    "Subscription",
    "TTSOptions",
    "TelemetryRecorder",
    "VALID_TRANSITIONS",
    "classify_failure",
    "validate_transition",
]
