"""Durable storage (SQLite) for embeddings, match results, notification jobs
and cron configs.

One connection shared across threads and guarded by a re-entrant lock. Every
state transition of a notification job is a single conditional UPDATE keyed
by id and expected status, so a lost race shows up as ``rowcount == 0``.
"""
from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from matchflow.log import get_logger
from matchflow.models import (
    ACTIVE_STATUSES,
    CronJobConfig,
    EmbeddingVector,
    MatchResult,
    from_ts,
    to_ts,
)

log = get_logger(__name__)

_ACTIVE_SQL = ", ".join(f"'{s}'" for s in ACTIVE_STATUSES)

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS embeddings (
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    vector_json TEXT NOT NULL,
    computed_at TEXT NOT NULL,
    PRIMARY KEY (entity_type, entity_id)
);

CREATE TABLE IF NOT EXISTS match_results (
    resume_id TEXT NOT NULL,
    job_id TEXT NOT NULL,
    score REAL NOT NULL,
    computed_at TEXT NOT NULL,
    PRIMARY KEY (resume_id, job_id)
);
CREATE INDEX IF NOT EXISTS ix_match_results_computed ON match_results (computed_at);

CREATE TABLE IF NOT EXISTS notification_jobs (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    recipient_id TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    next_attempt_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    sent_at TEXT,
    last_error TEXT,
    dedup_key TEXT,
    channel TEXT NOT NULL DEFAULT 'email',
    priority INTEGER NOT NULL DEFAULT 5,
    claimed_by TEXT,
    claimed_at TEXT,
    external_id TEXT,
    opened INTEGER NOT NULL DEFAULT 0,
    opened_at TEXT,
    clicked INTEGER NOT NULL DEFAULT 0,
    clicked_at TEXT
);
CREATE INDEX IF NOT EXISTS ix_jobs_claimable
    ON notification_jobs (status, priority, next_attempt_at);
CREATE UNIQUE INDEX IF NOT EXISTS ux_jobs_dedup_active
    ON notification_jobs (dedup_key)
    WHERE dedup_key IS NOT NULL AND status IN ({_ACTIVE_SQL});

CREATE TABLE IF NOT EXISTS cron_jobs (
    name TEXT PRIMARY KEY,
    schedule TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    last_run TEXT,
    next_run TEXT
);
"""


class Store:
    def __init__(self, database_path: str | Path) -> None:
        self.database_path = str(database_path)
        self._connection: sqlite3.Connection | None = None
        self.lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> "Store":
        with self.lock:
            if self._connection is not None:
                return self
            if self.database_path != ":memory:":
                Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(
                self.database_path, check_same_thread=False, timeout=30.0
            )
            self._connection.row_factory = sqlite3.Row
            if self.database_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode=WAL")
            self._connection.executescript(SCHEMA)
            self._connection.commit()
            log.info("Store ready → %s", self.database_path)
        return self

    def close(self) -> None:
        with self.lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the lock and commit on success, roll back on error."""
        with self.lock:
            with self.connection as conn:
                yield conn

    # --- embeddings -------------------------------------------------------

    def get_embedding(self, entity_type: str, entity_id: str) -> EmbeddingVector | None:
        with self.lock:
            row = self.connection.execute(
                "SELECT * FROM embeddings WHERE entity_type = ? AND entity_id = ?",
                (entity_type, entity_id),
            ).fetchone()
        if row is None:
            return None
        return EmbeddingVector(
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            values=tuple(json.loads(row["vector_json"])),
            computed_at=from_ts(row["computed_at"]),
        )

    def put_embedding(self, vector: EmbeddingVector) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO embeddings (entity_type, entity_id, vector_json, computed_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (entity_type, entity_id) DO UPDATE SET
                    vector_json = excluded.vector_json,
                    computed_at = excluded.computed_at
                """,
                (
                    vector.entity_type,
                    vector.entity_id,
                    json.dumps(list(vector.values)),
                    to_ts(vector.computed_at),
                ),
            )

    def delete_embedding(self, entity_type: str, entity_id: str) -> bool:
        with self.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM embeddings WHERE entity_type = ? AND entity_id = ?",
                (entity_type, entity_id),
            )
        return cur.rowcount > 0

    # --- match results ----------------------------------------------------

    def upsert_match(self, result: MatchResult) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO match_results (resume_id, job_id, score, computed_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (resume_id, job_id) DO UPDATE SET
                    score = excluded.score,
                    computed_at = excluded.computed_at
                """,
                (result.resume_id, result.job_id, result.score, to_ts(result.computed_at)),
            )

    def get_match(self, resume_id: str, job_id: str) -> MatchResult | None:
        with self.lock:
            row = self.connection.execute(
                "SELECT * FROM match_results WHERE resume_id = ? AND job_id = ?",
                (resume_id, job_id),
            ).fetchone()
        if row is None:
            return None
        return MatchResult(
            resume_id=row["resume_id"],
            job_id=row["job_id"],
            score=row["score"],
            computed_at=from_ts(row["computed_at"]),
        )

    def match_times_for_resume(self, resume_id: str) -> dict[str, datetime]:
        """job_id -> computed_at for every current result of ``resume_id``."""
        with self.lock:
            rows = self.connection.execute(
                "SELECT job_id, computed_at FROM match_results WHERE resume_id = ?",
                (resume_id,),
            ).fetchall()
        return {r["job_id"]: from_ts(r["computed_at"]) for r in rows}

    def count_matches(
        self, since: datetime | None, until: datetime | None, threshold: float
    ) -> tuple[int, int]:
        clauses: list[str] = []
        params: list[object] = []
        if since is not None:
            clauses.append("computed_at >= ?")
            params.append(to_ts(since))
        if until is not None:
            clauses.append("computed_at < ?")
            params.append(to_ts(until))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.lock:
            row = self.connection.execute(
                f"""
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN score >= ? THEN 1 ELSE 0 END), 0) AS above
                FROM match_results {where}
                """,
                [threshold, *params],
            ).fetchone()
        return int(row["total"]), int(row["above"])

    # --- cron configs -----------------------------------------------------

    @staticmethod
    def _to_cron(row: sqlite3.Row) -> CronJobConfig:
        return CronJobConfig(
            name=row["name"],
            schedule=row["schedule"],
            enabled=bool(row["enabled"]),
            last_run=from_ts(row["last_run"]),
            next_run=from_ts(row["next_run"]),
        )

    def get_cron_job(self, name: str) -> CronJobConfig | None:
        with self.lock:
            row = self.connection.execute(
                "SELECT * FROM cron_jobs WHERE name = ?", (name,)
            ).fetchone()
        return self._to_cron(row) if row else None

    def list_cron_jobs(self) -> list[CronJobConfig]:
        with self.lock:
            rows = self.connection.execute("SELECT * FROM cron_jobs ORDER BY name").fetchall()
        return [self._to_cron(r) for r in rows]

    def seed_cron_job(self, config: CronJobConfig) -> CronJobConfig:
        """Insert ``config`` unless the name exists; a changed schedule resets next_run.

        An existing row keeps its enabled flag and run history.
        """
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM cron_jobs WHERE name = ?", (config.name,)).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO cron_jobs (name, schedule, enabled, last_run, next_run) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        config.name,
                        config.schedule,
                        int(config.enabled),
                        to_ts(config.last_run),
                        to_ts(config.next_run),
                    ),
                )
                return config
            if row["schedule"] != config.schedule:
                conn.execute(
                    "UPDATE cron_jobs SET schedule = ?, next_run = ? WHERE name = ?",
                    (config.schedule, to_ts(config.next_run), config.name),
                )
                row = conn.execute("SELECT * FROM cron_jobs WHERE name = ?", (config.name,)).fetchone()
        return self._to_cron(row)

    def set_cron_enabled(self, name: str, enabled: bool) -> bool:
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE cron_jobs SET enabled = ? WHERE name = ?", (int(enabled), name)
            )
        return cur.rowcount > 0

    def update_cron_run(
        self, name: str, *, last_run: datetime | None = None, next_run: datetime | None = None
    ) -> None:
        sets: list[str] = []
        params: list[object] = []
        if last_run is not None:
            sets.append("last_run = ?")
            params.append(to_ts(last_run))
        if next_run is not None:
            sets.append("next_run = ?")
            params.append(to_ts(next_run))
        if not sets:
            return
        with self.transaction() as conn:
            conn.execute(f"UPDATE cron_jobs SET {', '.join(sets)} WHERE name = ?", [*params, name])
