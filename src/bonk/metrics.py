"""Bot event metrics persistence via SQLite."""

from __future__ import annotations

from pathlib import Path

import aiosqlite
import structlog

log = structlog.get_logger()

# event_type: webhook | track | finalize | setup | failure_comment | agent
# status: success | failure | error | skipped | cancelled (or a run conclusion)
_SCHEMA = """
CREATE TABLE IF NOT EXISTS bot_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    repo TEXT NOT NULL,
    event_type TEXT NOT NULL,
    event_subtype TEXT,
    status TEXT NOT NULL,
    actor TEXT,
    error_code TEXT,
    issue_number INTEGER DEFAULT 0,
    run_id INTEGER DEFAULT 0,
    duration_ms REAL DEFAULT 0,
    is_private BOOLEAN DEFAULT FALSE,
    is_pull_request BOOLEAN DEFAULT FALSE,
    created_at TEXT DEFAULT (datetime('now'))
);
"""


class MetricsStore:
    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)

    async def init_db(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self._db_path) as db:
            await db.executescript(_SCHEMA)

    async def record_event(
        self,
        repo: str,
        event_type: str,
        status: str,
        *,
        event_subtype: str | None = None,
        actor: str | None = None,
        error_code: str | None = None,
        issue_number: int = 0,
        run_id: int = 0,
        duration_ms: float = 0.0,
        is_private: bool = False,
        is_pull_request: bool = False,
    ) -> None:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                """INSERT INTO bot_events
                   (repo, event_type, event_subtype, status, actor, error_code,
                    issue_number, run_id, duration_ms, is_private, is_pull_request)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    repo,
                    event_type,
                    event_subtype,
                    status,
                    actor,
                    error_code,
                    issue_number,
                    run_id,
                    duration_ms,
                    is_private,
                    is_pull_request,
                ),
            )
            await db.commit()

    async def get_event_stats(self, days: int | None = None) -> list[dict]:
        where = ""
        params: tuple = ()
        if days is not None:
            where = "WHERE created_at >= datetime('now', ?)"
            params = (f"-{days} days",)

        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"""SELECT
                        event_type,
                        status,
                        COUNT(*) as count,
                        AVG(duration_ms) as avg_duration_ms
                    FROM bot_events
                    {where}
                    GROUP BY event_type, status
                    ORDER BY event_type, status""",
                params,
            )
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def get_repo_events(self, repo: str, limit: int = 50) -> list[dict]:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM bot_events WHERE repo = ? ORDER BY id DESC LIMIT ?",
                (repo, limit),
            )
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]


async def record_safely(
    metrics: MetricsStore | None, repo: str, event_type: str, status: str, **fields
) -> None:
    """Record an event if metrics are enabled; failures are logged and dropped."""
    if not metrics:
        return
    try:
        await metrics.record_event(repo, event_type, status, **fields)
    except Exception:
        log.warning("metrics_record_failed", repo=repo, event_type=event_type)
