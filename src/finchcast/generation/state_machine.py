"""Queue item lifecycle rules.

Every job attempt walks ``pending -> scraping -> summarizing ->
generating-audio -> uploading`` and ends in ``completed``, back in
``pending`` (retry scheduled) or ``failed``. Checkpoints inside a stage
repeat the same status, so same-state transitions are allowed for the
in-flight states only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from ..errors import InvalidStateTransitionError
from .models import QueueStatus

logger = logging.getLogger(__name__)

_RETRY_OR_FAIL = frozenset({QueueStatus.PENDING, QueueStatus.FAILED})

VALID_TRANSITIONS: Dict[QueueStatus, FrozenSet[QueueStatus]] = {
    QueueStatus.PENDING: frozenset({QueueStatus.SCRAPING}),
    QueueStatus.SCRAPING: frozenset({QueueStatus.SCRAPING, QueueStatus.SUMMARIZING})
    | _RETRY_OR_FAIL,
    QueueStatus.SUMMARIZING: frozenset(
        {QueueStatus.SUMMARIZING, QueueStatus.GENERATING_AUDIO}
    )
    | _RETRY_OR_FAIL,
    QueueStatus.GENERATING_AUDIO: frozenset(
        {QueueStatus.GENERATING_AUDIO, QueueStatus.UPLOADING}
    )
    | _RETRY_OR_FAIL,
    QueueStatus.UPLOADING: frozenset({QueueStatus.UPLOADING, QueueStatus.COMPLETED})
    | _RETRY_OR_FAIL,
    QueueStatus.COMPLETED: frozenset(),
    QueueStatus.FAILED: frozenset(),
}


@dataclass(frozen=True)
class StateTransition:
    job_id: str
    from_status: QueueStatus
    to_status: QueueStatus
    reason: Optional[str] = None

    def is_valid(self) -> bool:
        return self.to_status in VALID_TRANSITIONS.get(self.from_status, frozenset())

    def is_idempotent(self) -> bool:
        return self.from_status == self.to_status


def validate_transition(
    job_id: str,
    from_status: QueueStatus,
    to_status: QueueStatus,
    *,
    reason: Optional[str] = None,
) -> StateTransition:
    """Check a status change against :data:`VALID_TRANSITIONS`.

    Raises:
        InvalidStateTransitionError: If the change is not allowed
    """
    transition = StateTransition(
        job_id=job_id,
        from_status=from_status,
        to_status=to_status,
        reason=reason,
    )
    if not transition.is_valid():
        logger.error(
            "Rejected queue item transition",
            extra={
                "generation_job_id": job_id,
                "from_status": from_status.value,
                "to_status": to_status.value,
            },
        )
        raise InvalidStateTransitionError(
            f"Invalid transition for {job_id}: {from_status.value} -> {to_status.value}",
            details={"from_status": from_status.value, "to_status": to_status.value},
        )
    return transition
