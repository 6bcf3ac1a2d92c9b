"""Tests for the MetricsStore."""

from __future__ import annotations

from unittest.mock import AsyncMock

import aiosqlite
import pytest

from bonk.metrics import MetricsStore, record_safely


@pytest.fixture
async def store(tmp_path) -> MetricsStore:
    s = MetricsStore(tmp_path / "test.db")
    await s.init_db()
    return s


class TestInitDb:
    @pytest.mark.asyncio
    async def test_creates_table(self, store):
        async with aiosqlite.connect(store._db_path) as db:
            cursor = await db.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='bot_events'"
            )
            row = await cursor.fetchone()
        assert row is not None

    @pytest.mark.asyncio
    async def test_idempotent(self, store):
        await store.init_db()
        await store.init_db()


class TestRecordEvent:
    @pytest.mark.asyncio
    async def test_inserts_row(self, store):
        await store.record_event(
            "acme/widgets",
            "failure_comment",
            "success",
            event_subtype="timeout",
            issue_number=3,
            run_id=7,
        )
        events = await store.get_repo_events("acme/widgets")
        assert len(events) == 1
        assert events[0]["event_subtype"] == "timeout"
        assert events[0]["run_id"] == 7

    @pytest.mark.asyncio
    async def test_repo_events_newest_first(self, store):
        await store.record_event("acme/widgets", "track", "success")
        await store.record_event("acme/widgets", "finalize", "failure")
        await store.record_event("acme/gadgets", "track", "success")

        events = await store.get_repo_events("acme/widgets")
        assert [e["event_type"] for e in events] == ["finalize", "track"]


class TestEventStats:
    @pytest.mark.asyncio
    async def test_groups_by_type_and_status(self, store):
        await store.record_event("a/a", "direct", "success", duration_ms=100.0)
        await store.record_event("b/b", "direct", "success", duration_ms=300.0)
        await store.record_event("a/a", "direct", "error", duration_ms=50.0)

        stats = await store.get_event_stats()
        assert stats == [
            {"event_type": "direct", "status": "error", "count": 1, "avg_duration_ms": 50.0},
            {"event_type": "direct", "status": "success", "count": 2, "avg_duration_ms": 200.0},
        ]

    @pytest.mark.asyncio
    async def test_days_window(self, store):
        await store.record_event("a/a", "track", "success")
        assert len(await store.get_event_stats(days=1)) == 1

    @pytest.mark.asyncio
    async def test_empty(self, store):
        assert await store.get_event_stats() == []


class TestRecordSafely:
    @pytest.mark.asyncio
    async def test_no_metrics_is_noop(self):
        await record_safely(None, "a/a", "track", "success")

    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self):
        metrics = AsyncMock(spec=MetricsStore)
        metrics.record_event.side_effect = RuntimeError("disk full")
        await record_safely(metrics, "a/a", "track", "success", run_id=1)
        metrics.record_event.assert_awaited_once_with("a/a", "track", "success", run_id=1)
