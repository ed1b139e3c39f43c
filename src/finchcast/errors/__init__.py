"""Centralized error definitions for finchcast.

Stage failures raised inside the generation pipeline are caught at the
executor boundary and handed to the retry controller; they never escape the
scheduler loop.

Usage:
    from finchcast.errors import FinchcastError, TransientStageError

    try:
        await executor.execute(job)
    except FinchcastError as e:
        logger.warning(e.message, extra=e.to_dict())
"""

from __future__ import annotations

from typing import Optional


# =============================================================================
# Base Error
# =============================================================================


class FinchcastError(Exception):
    """Base exception for all finchcast errors.

    Attributes:
        code: Error code for categorization
        recoverable: Whether retrying the operation may succeed
        details: Additional error details for debugging
    """

    code: str = "FINCHCAST_ERROR"
    default_message: str = "An unexpected error occurred"
    recoverable: bool = True

    def __init__(
        self,
        message: str | None = None,
        *,
        details: dict | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Pipeline Stage Errors
# =============================================================================


class StageError(FinchcastError):
    """Base error for a failed pipeline stage."""

    code = "STAGE_ERROR"
    default_message = "Pipeline stage failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        stage: Optional[str] = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.stage = stage
        if stage is not None:
            self.details.setdefault("stage", stage)


class TransientStageError(StageError):
    """Provider or network failure that may succeed on a later attempt."""

    code = "TRANSIENT_STAGE_ERROR"
    default_message = "Stage failed with a transient provider error"


class ValidationError(StageError):
    """Stage produced unusable output, e.g. nothing was scraped."""

    code = "VALIDATION_ERROR"
    default_message = "Stage output failed validation"
    recoverable = False


class CostLimitExceededError(StageError):
    """A single job spent more than the configured per-job limit."""

    code = "COST_LIMIT_EXCEEDED"
    default_message = "Per-job cost limit exceeded"
    recoverable = False


# =============================================================================
# Processor Errors
# =============================================================================


class PersistenceError(FinchcastError):
    """Writing queue item state to the store failed.

    Checkpoint writes raising this are logged and never abort a pipeline.
    """

    code = "PERSISTENCE_ERROR"
    default_message = "Failed to persist queue item"


class BudgetExceededError(FinchcastError):
    """Daily spend reached the configured limit.

    The scheduler loop never raises this; it pauses itself instead.
    """

    code = "BUDGET_EXCEEDED"
    default_message = "Daily cost limit reached"
    recoverable = False


class InvalidStateTransitionError(FinchcastError, ValueError):
    """Raised when a queue item status change violates the lifecycle rules."""

    code = "INVALID_STATE_TRANSITION"
    default_message = "Invalid queue item state transition"
    recoverable = False


class ConfigurationError(FinchcastError):
    """Raised when configuration is invalid or cannot be loaded."""

    code = "CONFIGURATION_ERROR"
    default_message = "Invalid configuration"
    recoverable = False


__all__ = [
    "FinchcastError",
    "StageError",
    "TransientStageError",
    "ValidationError",
    "CostLimitExceededError",
    "PersistenceError",
    "BudgetExceededError",
    "InvalidStateTransitionError",
    "ConfigurationError",
]
