"""Tests for the SQLite queue store."""

from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, Mapping

import pytest

from finchcast.errors import PersistenceError
from finchcast.generation.models import NewQueueItem, QueueStatus
from finchcast.generation.store import SQLiteQueueStore, persist_fields


class TestEnqueue:
    def test_positions_follow_insertion_order(self, store: SQLiteQueueStore) -> None:
        first = store.enqueue(NewQueueItem(source_id="a", episode_title="A"))
        second = store.enqueue(NewQueueItem(source_id="b", episode_title="B"))

        assert first.position == 1
        assert second.position == 2
        assert first.status == QueueStatus.PENDING
        assert first.progress == 0
        assert first.created_at is not None

    def test_explicit_id_is_kept(self, store: SQLiteQueueStore) -> None:
        item = store.enqueue(
            NewQueueItem(
                source_id="a",
                episode_title="A",
                item_id="item-1",
                episode_id="ep-1",
                source_name="Hacker News",
            )
        )

        stored = store.get("item-1")
        assert stored == item
        assert stored.episode_id == "ep-1"
        assert stored.source_name == "Hacker News"

    def test_duplicate_id_rejected(self, store: SQLiteQueueStore) -> None:
        store.enqueue(NewQueueItem(source_id="a", episode_title="A", item_id="dup"))

        with pytest.raises(PersistenceError):
            store.enqueue(NewQueueItem(source_id="b", episode_title="B", item_id="dup"))


class TestFetchPending:
    def test_fifo_order_and_limit(self, store: SQLiteQueueStore, enqueue) -> None:
        items = enqueue(4)

        pending = store.fetch_pending(2)

        assert [i.id for i in pending] == [items[0].id, items[1].id]

    def test_excludes_active_ids(self, store: SQLiteQueueStore, enqueue) -> None:
        items = enqueue(3)

        pending = store.fetch_pending(5, exclude_ids=[items[0].id])

        assert [i.id for i in pending] == [items[1].id, items[2].id]

    def test_only_pending_items(self, store: SQLiteQueueStore, enqueue) -> None:
        items = enqueue(2)
        store.apply_update(items[0].id, {"status": QueueStatus.SCRAPING})

        assert [i.id for i in store.fetch_pending(5)] == [items[1].id]

    def test_zero_limit_returns_nothing(self, store: SQLiteQueueStore, enqueue) -> None:
        enqueue(1)
        assert store.fetch_pending(0) == []

    @pytest.mark.asyncio()
    async def test_async_contract(self, store: SQLiteQueueStore, enqueue) -> None:
        items = enqueue(2)

        pending = await store.list_pending(1)

        assert [i.id for i in pending] == [items[0].id]


class TestApplyUpdate:
    def test_cost_is_quantized(self, store: SQLiteQueueStore, enqueue) -> None:
        (item,) = enqueue(1)

        store.apply_update(item.id, {"cost": Decimal("0.3"), "progress": 100})

        stored = store.get(item.id)
        assert stored.cost == Decimal("0.3000")
        assert str(stored.cost) == "0.3000"
        assert stored.progress == 100

    def test_eta_is_rounded_to_seconds(self, store: SQLiteQueueStore, enqueue) -> None:
        (item,) = enqueue(1)

        store.apply_update(item.id, {"estimated_time_remaining": 12.6})

        assert store.get(item.id).estimated_time_remaining == 13

    def test_unknown_field_rejected(self, store: SQLiteQueueStore, enqueue) -> None:
        (item,) = enqueue(1)

        with pytest.raises(ValueError):
            store.apply_update(item.id, {"position": 99})

    def test_missing_item_raises(self, store: SQLiteQueueStore) -> None:
        with pytest.raises(PersistenceError):
            store.apply_update("missing", {"progress": 10})

    def test_updated_at_advances(self, store: SQLiteQueueStore, enqueue) -> None:
        (item,) = enqueue(1)

        store.apply_update(item.id, {"progress": 10})

        assert store.get(item.id).updated_at >= item.updated_at

    def test_older_sequence_keeps_only_unwritten_fields(self, store: SQLiteQueueStore, enqueue) -> None:
        (item,) = enqueue(1)

        store.apply_update(item.id, {"status": QueueStatus.COMPLETED, "progress": 100}, sequence=2)
        store.apply_update(
            item.id,
            {"status": QueueStatus.SCRAPING, "progress": 10, "estimated_time_remaining": 40},
            sequence=1,
        )

        stored = store.get(item.id)
        assert stored.status == QueueStatus.COMPLETED
        assert stored.progress == 100
        assert stored.estimated_time_remaining == 40

    @pytest.mark.asyncio()
    async def test_slow_earlier_write_does_not_overwrite_later_one(self, tmp_path) -> None:
        class _SlowFirstWrite(SQLiteQueueStore):
            slowed = False

            def apply_update(self, item_id, fields, *, sequence=None):
                if not self.slowed:
                    self.slowed = True
                    time.sleep(0.2)
                super().apply_update(item_id, fields, sequence=sequence)

        slow = _SlowFirstWrite(tmp_path / "slow.db")
        try:
            item = slow.enqueue(NewQueueItem(source_id="feed", episode_title="Episode"))
            first = asyncio.ensure_future(slow.update_item(item.id, {"progress": 10}))
            await asyncio.sleep(0.05)
            await slow.update_item(item.id, {"progress": 100})
            await first

            assert slow.get(item.id).progress == 100
        finally:
            slow.close()


class TestOperatorQueries:
    def test_count_by_status_includes_every_status(self, store: SQLiteQueueStore, enqueue) -> None:
        items = enqueue(3)
        store.apply_update(items[0].id, {"status": QueueStatus.COMPLETED})

        counts = store.count_by_status()

        assert counts[QueueStatus.PENDING] == 2
        assert counts[QueueStatus.COMPLETED] == 1
        assert counts[QueueStatus.FAILED] == 0
        assert set(counts) == set(QueueStatus)

    def test_snapshot_filters_by_status(self, store: SQLiteQueueStore, enqueue) -> None:
        items = enqueue(3)
        store.apply_update(items[1].id, {"status": QueueStatus.FAILED})

        failed = store.snapshot(status=QueueStatus.FAILED)

        assert [i.id for i in failed] == [items[1].id]
        assert len(store.snapshot(limit=2)) == 2

    def test_reset_in_flight(self, store: SQLiteQueueStore, enqueue) -> None:
        items = enqueue(3)
        store.apply_update(items[0].id, {"status": QueueStatus.SUMMARIZING, "progress": 35})
        store.apply_update(items[1].id, {"status": QueueStatus.COMPLETED, "progress": 100})

        reset = store.reset_in_flight()

        assert reset == 1
        recovered = store.get(items[0].id)
        assert recovered.status == QueueStatus.PENDING
        assert recovered.progress == 0
        assert store.get(items[1].id).status == QueueStatus.COMPLETED


class _BrokenStore:
    async def list_pending(self, limit, exclude_ids=()):  # pragma: no cover - unused
        return []

    async def update_item(self, item_id: str, fields: Mapping[str, Any]) -> None:
        raise RuntimeError("database is locked")


class _SlowStore(_BrokenStore):
    async def update_item(self, item_id: str, fields: Mapping[str, Any]) -> None:
        await asyncio.sleep(1)


class TestPersistFields:
    @pytest.mark.asyncio()
    async def test_success(self, store: SQLiteQueueStore, enqueue) -> None:
        (item,) = enqueue(1)

        assert await persist_fields(store, item.id, {"progress": 25}) is True
        assert store.get(item.id).progress == 25

    @pytest.mark.asyncio()
    async def test_failure_is_logged_not_raised(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="finchcast.generation.store"):
            ok = await persist_fields(_BrokenStore(), "item-1", {"progress": 10})

        assert ok is False
        assert "Failed to persist queue item update" in caplog.text

    @pytest.mark.asyncio()
    async def test_timeout_is_treated_as_failure(self) -> None:
        ok = await persist_fields(_SlowStore(), "item-1", {"progress": 10}, timeout=0.01)

        assert ok is False

    @pytest.mark.asyncio()
    async def test_missing_item_is_swallowed(self, store: SQLiteQueueStore) -> None:
        assert await persist_fields(store, "missing", {"progress": 10}) is False
