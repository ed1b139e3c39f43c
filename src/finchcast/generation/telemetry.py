"""Telemetry recorder for generation jobs.

Appends one JSON line per job outcome and keeps an aggregated summary next
to it that operators can inspect locally or through ``finchcast processor
stats``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def _empty_status_stats() -> Dict[str, Any]:
    return {"count": 0, "duration": 0.0, "cost": Decimal("0")}


@dataclass
class TelemetryRecorder:
    output_dir: Path
    metrics_file: str = "generation.log"
    summary_file: str = "generation_summary.json"
    _stats: Dict[str, Dict[str, Any]] = field(
        default_factory=lambda: {
            "completed": _empty_status_stats(),
            "failed": _empty_status_stats(),
        }
    )
    _retry_stats: Dict[str, Any] = field(
        default_factory=lambda: {
            "total_retries": 0,
            "total_delay_seconds": 0.0,
            "by_failure_type": {},
            "by_stage": {},
        }
    )

    def __post_init__(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        try:
            previous = load_summary(self.output_dir, self.summary_file)
        except ValueError as exc:
            logger.warning(
                "Ignoring unreadable generation telemetry summary",
                extra={"path": str(self.summary_path), "error": str(exc)},
            )
            previous = None
        if previous:
            self._restore(previous)

    def _restore(self, summary: Dict[str, Any]) -> None:
        """Seed counters from an earlier run so the summary stays cumulative."""
        for status, stats in summary.get("statuses", {}).items():
            count = int(stats.get("count", 0))
            self._stats[status] = {
                "count": count,
                "duration": float(stats.get("avg_duration", 0.0)) * count,
                "cost": Decimal(str(stats.get("cost", "0"))),
            }
        retry_metrics = summary.get("retry_metrics")
        if retry_metrics:
            self._retry_stats = {
                "total_retries": int(retry_metrics.get("total_retries", 0)),
                "total_delay_seconds": float(retry_metrics.get("total_delay_seconds", 0.0)),
                "by_failure_type": dict(retry_metrics.get("by_failure_type", {})),
                "by_stage": dict(retry_metrics.get("by_stage", {})),
            }

    @property
    def metrics_path(self) -> Path:
        return self.output_dir / self.metrics_file

    @property
    def summary_path(self) -> Path:
        return self.output_dir / self.summary_file

    def record(
        self,
        job_id: str,
        duration: float,
        status: str,
        *,
        cost: Optional[Decimal] = None,
        attempt: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        active_jobs: Optional[int] = None,
    ) -> None:
        entry: Dict[str, Any] = {
            "job_id": job_id,
            "duration": duration,
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if cost is not None:
            entry["cost"] = str(cost)
        if attempt is not None:
            entry["attempt"] = attempt
        metadata_payload: Dict[str, Any] = metadata.copy() if metadata else {}
        if active_jobs is not None:
            metadata_payload["active_jobs"] = active_jobs
        if metadata_payload:
            entry["metadata"] = metadata_payload

        status_stats = self._stats.setdefault(status, _empty_status_stats())
        status_stats["count"] += 1
        status_stats["duration"] += duration
        if cost is not None:
            status_stats["cost"] += cost

        if status == "retry_scheduled":
            self._track_retry(metadata_payload)

        with self.metrics_path.open("a", encoding="utf-8") as fp:
            fp.write(json.dumps(entry) + "\n")

        self.summary_path.write_text(json.dumps(self.build_summary(), indent=2))

    def _track_retry(self, metadata: Dict[str, Any]) -> None:
        retry_stats = self._retry_stats
        retry_stats["total_retries"] += 1
        retry_stats["total_delay_seconds"] += float(metadata.get("delay_seconds", 0.0))
        failure_type = metadata.get("failure_type", "unknown")
        by_type = retry_stats["by_failure_type"]
        by_type[failure_type] = by_type.get(failure_type, 0) + 1
        stage = metadata.get("stage") or "unknown"
        by_stage = retry_stats["by_stage"]
        by_stage[stage] = by_stage.get(stage, 0) + 1

    def build_summary(self) -> Dict[str, Any]:
        statuses: Dict[str, Any] = {}
        total_jobs = 0
        total_duration = 0.0
        total_cost = Decimal("0")
        for status, stats in self._stats.items():
            count = stats["count"]
            duration = stats["duration"]
            statuses[status] = {
                "count": count,
                "avg_duration": duration / count if count else 0.0,
                "cost": str(stats["cost"]),
            }
            if status in ("completed", "failed"):
                total_jobs += count
                total_duration += duration
                total_cost += stats["cost"]

        completed = self._stats["completed"]["count"]
        summary: Dict[str, Any] = {
            "overall": {
                "jobs": total_jobs,
                "avg_duration": total_duration / total_jobs if total_jobs else 0.0,
                "cost": str(total_cost),
                "success_rate": completed / total_jobs if total_jobs else 0.0,
            },
            "statuses": statuses,
        }

        total_retries = self._retry_stats["total_retries"]
        if total_retries:
            summary["retry_metrics"] = {
                "total_retries": total_retries,
                "total_delay_seconds": round(self._retry_stats["total_delay_seconds"], 3),
                "avg_delay_seconds": round(
                    self._retry_stats["total_delay_seconds"] / total_retries, 3
                ),
                "by_failure_type": dict(self._retry_stats["by_failure_type"]),
                "by_stage": dict(self._retry_stats["by_stage"]),
            }
        return summary


def load_summary(output_dir: Path, summary_file: str = "generation_summary.json") -> Optional[Dict[str, Any]]:
    """Read a previously written summary, or None when none exists yet."""
    path = output_dir / summary_file
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))


def record_outcome(
    telemetry: Optional[TelemetryRecorder],
    job_id: str,
    duration: float,
    status: str,
    **kwargs: Any,
) -> bool:
    """Record one outcome without letting a telemetry failure escape.

    Returns:
        True when the entry was written
    """
    if telemetry is None:
        return False
    try:
        telemetry.record(job_id, duration, status, **kwargs)
    except Exception as exc:  # noqa: BLE001 - telemetry is best effort
        logger.warning(
            "Failed to record generation telemetry",
            extra={
                "generation_job_id": job_id,
                "generation_outcome": status,
                "error": str(exc),
            },
        )
        return False
    return True


__all__ = ["TelemetryRecorder", "load_summary", "record_outcome"]
