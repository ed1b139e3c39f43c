"""Persistent queue item store for the generation processor.

The processor only needs two operations from its store: list pending items
in FIFO order and write partial field updates. :class:`JobStore` captures
that contract; :class:`SQLiteQueueStore` is the local SQLite implementation,
which also serves the submission path (``enqueue``) and operator tooling.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from ..errors import PersistenceError
from .models import IN_FLIGHT_STATUSES, NewQueueItem, QueueItem, QueueStatus

logger = logging.getLogger(__name__)


class JobStore(Protocol):
    """Narrow read/update contract consumed by the processor."""

    async def list_pending(
        self, limit: int, exclude_ids: Sequence[str] = ()
    ) -> List[QueueItem]:
        """Return up to ``limit`` pending items ordered by position."""

    async def update_item(self, item_id: str, fields: Mapping[str, Any]) -> None:
        """Apply a partial update to one item."""


SCHEMA = """
CREATE TABLE IF NOT EXISTS queue (
    id TEXT PRIMARY KEY,
    episode_id TEXT,
    episode_title TEXT NOT NULL,
    source_id TEXT NOT NULL,
    source_name TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    progress INTEGER NOT NULL DEFAULT 0,
    estimated_time_remaining INTEGER,
    started_at TEXT,
    completed_at TEXT,
    error_message TEXT,
    cost TEXT,
    position INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_queue_status_position ON queue(status, position);
"""

_COLUMNS = (
    "id",
    "episode_id",
    "episode_title",
    "source_id",
    "source_name",
    "status",
    "progress",
    "estimated_time_remaining",
    "started_at",
    "completed_at",
    "error_message",
    "cost",
    "position",
    "created_at",
    "updated_at",
)

UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "progress",
        "estimated_time_remaining",
        "started_at",
        "completed_at",
        "error_message",
        "cost",
    }
)

COST_QUANTUM = Decimal("0.0001")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SQLiteQueueStore:
    """SQLite-backed persistent queue of episode generation items."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        self._lock = threading.Lock()
        self._write_sequence = itertools.count()
        self._field_sequence: Dict[str, Dict[str, int]] = {}

    @property
    def path(self) -> Path:
        return self._path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Processor contract
    # ------------------------------------------------------------------

    async def list_pending(
        self, limit: int, exclude_ids: Sequence[str] = ()
    ) -> List[QueueItem]:
        return await asyncio.to_thread(self.fetch_pending, limit, tuple(exclude_ids))

    async def update_item(self, item_id: str, fields: Mapping[str, Any]) -> None:
        # Numbered on the loop thread so call order survives worker threads
        # that finish late.
        sequence = next(self._write_sequence)
        await asyncio.to_thread(self.apply_update, item_id, dict(fields), sequence=sequence)

    # ------------------------------------------------------------------
    # Synchronous API (submission path, CLI, recovery)
    # ------------------------------------------------------------------

    def enqueue(self, item: NewQueueItem) -> QueueItem:
        """Insert a pending item at the tail of the queue."""
        item_id = item.item_id or uuid.uuid4().hex
        now = utc_now().isoformat()
        try:
            with self._lock:
                with self._conn:
                    row = self._conn.execute(
                        "SELECT COALESCE(MAX(position), 0) + 1 FROM queue"
                    ).fetchone()
                    position = int(row[0])
                    self._conn.execute(
                        """
                        INSERT INTO queue(id, episode_id, episode_title, source_id, source_name,
                                          status, progress, position, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, 'pending', 0, ?, ?, ?)
                        """,
                        (
                            item_id,
                            item.episode_id,
                            item.episode_title,
                            item.source_id,
                            item.source_name,
                            position,
                            now,
                            now,
                        ),
                    )
        except sqlite3.IntegrityError as exc:
            raise PersistenceError(f"Queue item {item_id} already exists") from exc

        stored = self.get(item_id)
        if stored is None:  # pragma: no cover - row inserted above
            raise PersistenceError(f"Queue item {item_id} vanished after insert")
        return stored

    def fetch_pending(self, limit: int, exclude_ids: Iterable[str] = ()) -> List[QueueItem]:
        if limit <= 0:
            return []
        excluded = list(exclude_ids)
        query = f"SELECT {', '.join(_COLUMNS)} FROM queue WHERE status = 'pending'"
        params: List[Any] = []
        if excluded:
            query += f" AND id NOT IN ({', '.join('?' for _ in excluded)})"
            params.extend(excluded)
        query += " ORDER BY position ASC, rowid ASC LIMIT ?"
        params.append(limit)
        try:
            with self._lock:
                rows = self._conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to list pending items: {exc}") from exc
        return [_row_to_item(row) for row in rows]

    def apply_update(
        self, item_id: str, fields: Dict[str, Any], *, sequence: Optional[int] = None
    ) -> None:
        """Write ``fields`` onto one item.

        With a ``sequence``, fields already written by a later-numbered
        update are left alone, so a slow write cannot roll an item back.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported queue item fields: {sorted(unknown)}")

        try:
            with self._lock:
                if sequence is not None:
                    written = self._field_sequence.setdefault(item_id, {})
                    stale = {name for name in fields if written.get(name, -1) > sequence}
                    if stale:
                        logger.debug(
                            "Skipping superseded queue item fields",
                            extra={
                                "generation_job_id": item_id,
                                "generation_fields": sorted(stale),
                                "generation_write_sequence": sequence,
                            },
                        )
                    fields = {name: value for name, value in fields.items() if name not in stale}
                    if not fields:
                        return
                    for name in fields:
                        written[name] = sequence

                assignments: List[str] = []
                params: List[Any] = []
                for name, value in fields.items():
                    assignments.append(f"{name} = ?")
                    params.append(_encode_value(name, value))
                assignments.append("updated_at = ?")
                params.append(utc_now().isoformat())
                params.append(item_id)

                with self._conn:
                    cursor = self._conn.execute(
                        f"UPDATE queue SET {', '.join(assignments)} WHERE id = ?",
                        params,
                    )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to update queue item {item_id}: {exc}") from exc
        if cursor.rowcount == 0:
            raise PersistenceError(f"Queue item {item_id} not found")

    def get(self, item_id: str) -> Optional[QueueItem]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {', '.join(_COLUMNS)} FROM queue WHERE id = ?",
                (item_id,),
            ).fetchone()
        return _row_to_item(row) if row else None

    def snapshot(
        self, *, status: Optional[QueueStatus] = None, limit: Optional[int] = None
    ) -> List[QueueItem]:
        query = f"SELECT {', '.join(_COLUMNS)} FROM queue"
        params: List[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY position ASC, rowid ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_row_to_item(row) for row in rows]

    def count_by_status(self) -> Dict[QueueStatus, int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) FROM queue GROUP BY status"
            ).fetchall()
        counts = {status: 0 for status in QueueStatus}
        for status, count in rows:
            counts[QueueStatus(status)] = int(count)
        return counts

    def reset_in_flight(self) -> int:
        """Return items orphaned mid-pipeline by a crash to ``pending``.

        Returns:
            Number of items reset
        """
        statuses = [status.value for status in IN_FLIGHT_STATUSES]
        with self._lock:
            with self._conn:
                cursor = self._conn.execute(
                    f"""
                    UPDATE queue
                    SET status = 'pending', progress = 0, estimated_time_remaining = NULL,
                        updated_at = ?
                    WHERE status IN ({', '.join('?' for _ in statuses)})
                    """,
                    (utc_now().isoformat(), *statuses),
                )
        if cursor.rowcount:
            logger.warning(
                "Reset orphaned in-flight queue items",
                extra={"generation_reset_count": cursor.rowcount},
            )
        return cursor.rowcount


async def persist_fields(
    store: JobStore,
    item_id: str,
    fields: Mapping[str, Any],
    *,
    timeout: Optional[float] = None,
) -> bool:
    """Write ``fields`` without letting a store failure escape.

    Returns:
        True when the write succeeded, False when it was logged and dropped
    """
    try:
        await asyncio.wait_for(store.update_item(item_id, fields), timeout=timeout)
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # noqa: BLE001 - store failures are never fatal
        error = exc if isinstance(exc, PersistenceError) else PersistenceError(
            str(exc) or type(exc).__name__
        )
        logger.warning(
            "Failed to persist queue item update",
            extra={
                "generation_job_id": item_id,
                "fields": sorted(fields),
                "error": error.message,
            },
        )
        return False
    return True


def _encode_value(name: str, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, QueueStatus):
        return value.value
    if name == "status":
        return QueueStatus(value).value
    if name == "cost":
        return str(Decimal(str(value)).quantize(COST_QUANTUM))
    if isinstance(value, datetime):
        return value.isoformat()
    if name in {"progress", "estimated_time_remaining"}:
        return int(round(float(value)))
    return value


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_item(row: Sequence[Any]) -> QueueItem:
    data = dict(zip(_COLUMNS, row))
    return QueueItem(
        id=data["id"],
        source_id=data["source_id"],
        episode_title=data["episode_title"],
        position=int(data["position"]),
        status=QueueStatus(data["status"]),
        progress=int(data["progress"]),
        cost=Decimal(data["cost"]) if data["cost"] is not None else None,
        started_at=_parse_datetime(data["started_at"]),
        completed_at=_parse_datetime(data["completed_at"]),
        error_message=data["error_message"],
        estimated_time_remaining=data["estimated_time_remaining"],
        episode_id=data["episode_id"],
        source_name=data["source_name"],
        created_at=_parse_datetime(data["created_at"]),
        updated_at=_parse_datetime(data["updated_at"]),
    )


__all__ = [
    "JobStore",
    "SQLiteQueueStore",
    "persist_fields",
    "utc_now",
    "UPDATABLE_FIELDS",
]
