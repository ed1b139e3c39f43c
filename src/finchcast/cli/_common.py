"""Helpers shared by the CLI command modules."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rich.console import Console

from ..generation.store import SQLiteQueueStore

console = Console()

DEFAULT_WORKSPACE = Path.home() / ".finchcast"


def workspace_path(workspace: Optional[Path] = None) -> Path:
    return Path(workspace).expanduser() if workspace else DEFAULT_WORKSPACE


def open_store(workspace: Path) -> SQLiteQueueStore:
    queue_dir = workspace / "queue"
    queue_dir.mkdir(parents=True, exist_ok=True)
    return SQLiteQueueStore(queue_dir / "queue.db")


def format_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return "-"
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        return f"{seconds / 60:.1f}m"
    return f"{seconds / 3600:.1f}h"


def format_timestamp(value: Optional[datetime]) -> str:
    if value is None:
        return "never"
    delta = (datetime.now(timezone.utc) - value).total_seconds()
    if delta < 60:
        return f"{int(delta)}s ago"
    if delta < 3600:
        return f"{int(delta / 60)}m ago"
    if delta < 86400:
        return f"{int(delta / 3600)}h ago"
    return f"{int(delta / 86400)}d ago"
