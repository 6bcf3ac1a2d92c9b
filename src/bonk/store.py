"""Durable tracker state via SQLite: deferred triggers, pending correlations, installations."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

import aiosqlite
import structlog

from bonk.models import PendingCorrelation

log = structlog.get_logger()

_SCHEMA = """
CREATE TABLE IF NOT EXISTS timers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    repo TEXT NOT NULL,
    trigger TEXT NOT NULL,
    ref TEXT NOT NULL,
    payload TEXT NOT NULL,
    due_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS timers_due ON timers (due_at);

CREATE TABLE IF NOT EXISTS pending (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    repo TEXT NOT NULL,
    key TEXT NOT NULL,
    actor TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    issue_number INTEGER NOT NULL,
    created_at REAL NOT NULL,
    UNIQUE (repo, key)
);

CREATE TABLE IF NOT EXISTS installations (
    repo TEXT PRIMARY KEY,
    installation_id INTEGER NOT NULL
);
"""


@dataclass
class Timer:
    """A one-shot deferred trigger for one repository's tracker."""

    id: int
    repo: str
    trigger: str
    ref: str
    payload: dict
    due_at: float


class TrackerStore:
    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)

    async def init_db(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self._db_path) as db:
            await db.executescript(_SCHEMA)

    # -- Timers --

    async def schedule(
        self, repo: str, trigger: str, ref: str, payload: dict, due_at: float
    ) -> int:
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "INSERT INTO timers (repo, trigger, ref, payload, due_at) VALUES (?, ?, ?, ?, ?)",
                (repo, trigger, ref, json.dumps(payload), due_at),
            )
            await db.commit()
            return cursor.lastrowid

    async def cancel(self, repo: str, trigger: str, ref: str) -> int:
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "DELETE FROM timers WHERE repo = ? AND trigger = ? AND ref = ?",
                (repo, trigger, ref),
            )
            await db.commit()
            return cursor.rowcount

    async def get_timer(self, repo: str, trigger: str, ref: str) -> Timer | None:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM timers WHERE repo = ? AND trigger = ? AND ref = ? ORDER BY id LIMIT 1",
                (repo, trigger, ref),
            )
            row = await cursor.fetchone()
        return _timer_from_row(row) if row else None

    async def claim_due(self, now: float, lease_s: float = 120, limit: int = 100) -> list[Timer]:
        """Lease and return timers whose due time has passed, oldest first.

        A claimed row stays in the table with its due time pushed ``lease_s``
        ahead; it fires again unless ``complete`` removes it first.
        """
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                "SELECT * FROM timers WHERE due_at <= ? ORDER BY due_at, id LIMIT ?",
                (now, limit),
            )
            rows = await cursor.fetchall()
            if rows:
                await db.executemany(
                    "UPDATE timers SET due_at = ? WHERE id = ?",
                    [(now + lease_s, row["id"]) for row in rows],
                )
            await db.commit()
        return [_timer_from_row(row) for row in rows]

    async def complete(self, timer_id: int) -> None:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("DELETE FROM timers WHERE id = ?", (timer_id,))
            await db.commit()

    async def list_timers(self, repo: str | None = None) -> list[Timer]:
        where = ""
        params: tuple = ()
        if repo is not None:
            where = "WHERE repo = ?"
            params = (repo,)

        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(f"SELECT * FROM timers {where} ORDER BY due_at, id", params)
            rows = await cursor.fetchall()
        return [_timer_from_row(row) for row in rows]

    # -- Pending correlations --

    async def save_pending(self, repo: str, pending: PendingCorrelation) -> None:
        # ON CONFLICT keeps the original row id, so overwrites keep their insertion position
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                """INSERT INTO pending (repo, key, actor, timestamp, issue_number, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT (repo, key) DO UPDATE SET
                       actor = excluded.actor,
                       timestamp = excluded.timestamp,
                       issue_number = excluded.issue_number,
                       created_at = excluded.created_at""",
                (
                    repo,
                    pending.key,
                    pending.actor,
                    pending.timestamp,
                    pending.issue_number,
                    pending.created_at,
                ),
            )
            await db.commit()

    async def delete_pending(self, repo: str, key: str) -> None:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("DELETE FROM pending WHERE repo = ? AND key = ?", (repo, key))
            await db.commit()

    async def load_pending(self, repo: str) -> list[PendingCorrelation]:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM pending WHERE repo = ? ORDER BY id", (repo,)
            )
            rows = await cursor.fetchall()
        return [
            PendingCorrelation(
                actor=row["actor"],
                timestamp=row["timestamp"],
                issue_number=row["issue_number"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # -- Installations --

    async def set_installation(self, repo: str, installation_id: int) -> None:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                """INSERT INTO installations (repo, installation_id) VALUES (?, ?)
                   ON CONFLICT (repo) DO UPDATE SET installation_id = excluded.installation_id""",
                (repo, installation_id),
            )
            await db.commit()

    async def get_installation(self, repo: str) -> int:
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT installation_id FROM installations WHERE repo = ?", (repo,)
            )
            row = await cursor.fetchone()
        return row[0] if row else 0


def _timer_from_row(row: aiosqlite.Row) -> Timer:
    return Timer(
        id=row["id"],
        repo=row["repo"],
        trigger=row["trigger"],
        ref=row["ref"],
        payload=json.loads(row["payload"]),
        due_at=row["due_at"],
    )
