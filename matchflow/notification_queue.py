"""Durable notification queue with claim/complete/fail/retry semantics.

Lifecycle of a NotificationJob::

    pending --claim--> in_flight --complete--> sent
       ^                  |
       |   fail (attempts < max, next_attempt_at in the future)
       +------------------+
                          |
                          +--fail (attempts == max)--> dead_lettered --retry--> pending

Workers mutate jobs only through ``claim``, ``complete``, ``fail`` and
``retry``; each is a conditional UPDATE on (id, expected status), so two
workers can never own the same job. A worker that passes its id to
``complete`` or ``fail`` only touches a job it still holds.
"""
from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable

from matchflow.errors import DuplicateJob, JobNotFound
from matchflow.log import get_logger
from matchflow.models import (
    ACTIVE_STATUSES,
    DEAD_LETTERED,
    FAILED,
    IN_FLIGHT,
    PENDING,
    PRIORITIES,
    RETRYABLE_STATUSES,
    SENT,
    STATUSES,
    NotificationJob,
    Tracking,
    from_ts,
    to_ts,
    utcnow,
)
from matchflow.retry import backoff_delay
from matchflow.store import Store

log = get_logger(__name__)

TRACKING_EVENTS: tuple[str, ...] = ("opened", "clicked")
_PRIORITY_NAMES: dict[int, str] = {v: k for k, v in PRIORITIES.items()}


def _row_to_job(row: sqlite3.Row) -> NotificationJob:
    return NotificationJob(
        id=row["id"],
        type=row["type"],
        recipient_id=row["recipient_id"],
        payload=json.loads(row["payload_json"]),
        status=row["status"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        next_attempt_at=from_ts(row["next_attempt_at"]),
        created_at=from_ts(row["created_at"]),
        sent_at=from_ts(row["sent_at"]),
        last_error=row["last_error"],
        tracking=Tracking(
            opened=bool(row["opened"]),
            opened_at=from_ts(row["opened_at"]),
            clicked=bool(row["clicked"]),
            clicked_at=from_ts(row["clicked_at"]),
        ),
        dedup_key=row["dedup_key"],
        channel=row["channel"],
        priority=_PRIORITY_NAMES.get(row["priority"], "normal"),
        claimed_by=row["claimed_by"],
        claimed_at=from_ts(row["claimed_at"]),
        external_id=row["external_id"],
    )


class NotificationQueue:
    def __init__(
        self,
        store: Store,
        *,
        max_attempts: int = 3,
        base_delay: float = 5.0,
        max_delay: float = 3600.0,
        visibility_timeout: float = 300.0,
        throughput_window_minutes: int = 15,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be positive")
        self.store = store
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.visibility_timeout = visibility_timeout
        self.throughput_window_minutes = max(1, int(throughput_window_minutes))
        self.clock = clock

    @classmethod
    def from_settings(
        cls, store: Store, settings: dict[str, Any], clock: Callable[[], datetime] = utcnow
    ) -> "NotificationQueue":
        q = settings["queue"]
        return cls(
            store,
            max_attempts=int(q["max_attempts"]),
            base_delay=float(q["base_delay_seconds"]),
            max_delay=float(q["max_delay_seconds"]),
            visibility_timeout=float(q["visibility_timeout_seconds"]),
            throughput_window_minutes=int(q["throughput_window_minutes"]),
            clock=clock,
        )

    def backoff(self, attempts: int) -> timedelta:
        return timedelta(
            seconds=backoff_delay(attempts, base_delay=self.base_delay, max_delay=self.max_delay)
        )

    # --- producers --------------------------------------------------------

    def new_job(
        self,
        type: str,
        recipient_id: str,
        payload: dict[str, Any],
        *,
        dedup_key: str | None = None,
        priority: str = "normal",
        channel: str = "email",
        max_attempts: int | None = None,
    ) -> NotificationJob:
        if priority not in PRIORITIES:
            raise ValueError(f"unknown priority {priority!r}")
        return NotificationJob(
            type=type,
            recipient_id=recipient_id,
            payload=dict(payload),
            dedup_key=dedup_key,
            priority=priority,
            channel=channel,
            max_attempts=max_attempts or self.max_attempts,
        )

    def enqueue(self, job: NotificationJob) -> NotificationJob:
        """Insert ``job`` as pending; raises DuplicateJob on an active dedup key."""
        now = self.clock()
        job.status = PENDING
        job.attempts = 0
        job.next_attempt_at = now
        job.created_at = now
        job.sent_at = None
        job.claimed_by = None
        job.claimed_at = None
        if job.max_attempts < 1:
            job.max_attempts = self.max_attempts
        try:
            with self.store.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO notification_jobs (
                        id, type, recipient_id, payload_json, status, attempts,
                        max_attempts, next_attempt_at, created_at, updated_at,
                        dedup_key, channel, priority
                    ) VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        job.type,
                        job.recipient_id,
                        json.dumps(job.payload, default=str),
                        PENDING,
                        job.max_attempts,
                        to_ts(now),
                        to_ts(now),
                        to_ts(now),
                        job.dedup_key,
                        job.channel,
                        PRIORITIES.get(job.priority, PRIORITIES["normal"]),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            if job.dedup_key and self.count_active(job.dedup_key):
                raise DuplicateJob(job.dedup_key) from exc
            raise
        log.info("Queued %s job %s for %s", job.type, job.id, job.recipient_id)
        return job

    # --- workers ----------------------------------------------------------

    def claim(self, worker_id: str, batch_size: int) -> list[NotificationJob]:
        """Atomically move up to ``batch_size`` due pending jobs to in_flight."""
        if batch_size < 1:
            return []
        now = to_ts(self.clock())
        with self.store.lock:
            candidates = [
                r["id"]
                for r in self.store.connection.execute(
                    """
                    SELECT id FROM notification_jobs
                    WHERE status = ? AND next_attempt_at <= ?
                    ORDER BY priority DESC, next_attempt_at, created_at
                    LIMIT ?
                    """,
                    (PENDING, now, batch_size),
                ).fetchall()
            ]

        claimed: list[str] = []
        for job_id in candidates:
            with self.store.transaction() as conn:
                cur = conn.execute(
                    """
                    UPDATE notification_jobs
                    SET status = ?, claimed_by = ?, claimed_at = ?, updated_at = ?
                    WHERE id = ? AND status = ? AND next_attempt_at <= ?
                    """,
                    (IN_FLIGHT, worker_id, now, now, job_id, PENDING, now),
                )
            if cur.rowcount == 1:
                claimed.append(job_id)

        if not claimed:
            return []
        jobs = self._fetch(claimed)
        log.debug("%s claimed %d job(s)", worker_id, len(jobs))
        return jobs

    def complete(self, job_id: str, external_id: str | None = None, *, worker_id: str | None = None) -> bool:
        """Mark sent. Calling it again on a sent job is a no-op returning False.

        With ``worker_id`` an in_flight job must still be claimed by that
        worker; once the visibility sweep handed it to someone else the call
        is a no-op.
        """
        now = to_ts(self.clock())
        owner_sql, owner_params = ("", ()) if worker_id is None else (" AND claimed_by = ?", (worker_id,))
        with self.store.transaction() as conn:
            cur = conn.execute(
                f"""
                UPDATE notification_jobs
                SET status = ?, sent_at = ?, updated_at = ?, claimed_by = NULL,
                    external_id = COALESCE(?, external_id)
                WHERE id = ? AND ((status = ?{owner_sql}) OR status = ?)
                """,
                (SENT, now, now, external_id, job_id, IN_FLIGHT, *owner_params, PENDING),
            )
        if cur.rowcount == 1:
            log.info("Job %s sent", job_id)
            return True

        job = self.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.status == IN_FLIGHT:
            log.warning("Not completing job %s: it is now claimed by %s, not %s", job_id, job.claimed_by, worker_id)
        elif job.status != SENT:
            log.warning("Cannot complete job %s in status %s", job_id, job.status)
        return False

    def fail(
        self,
        job_id: str,
        error: str | BaseException,
        *,
        permanent: bool = False,
        worker_id: str | None = None,
    ) -> NotificationJob | None:
        """Record a failed attempt of an in_flight job.

        Transient: back to pending with ``next_attempt_at = now + backoff``
        until max_attempts is reached, then dead_lettered. Permanent: attempts
        jumps to max_attempts and the job is dead-lettered right away. Returns
        the updated job, or None if the job was no longer in flight (or, with
        ``worker_id``, no longer claimed by that worker).
        """
        message = str(error)[:1000] or error.__class__.__name__
        now = self.clock()
        with self.store.transaction() as conn:
            row = conn.execute(
                "SELECT status, attempts, max_attempts, claimed_by FROM notification_jobs WHERE id = ?",
                (job_id,),
            ).fetchone()
            if row is None:
                raise JobNotFound(job_id)
            if row["status"] != IN_FLIGHT:
                log.warning("Ignoring failure for job %s in status %s", job_id, row["status"])
                return None
            if worker_id is not None and row["claimed_by"] != worker_id:
                log.warning("Ignoring failure for job %s from %s: it is claimed by %s",
                            job_id, worker_id, row["claimed_by"])
                return None

            max_attempts = row["max_attempts"]
            attempts = max_attempts if permanent else min(row["attempts"] + 1, max_attempts)
            if attempts >= max_attempts:
                cur = conn.execute(
                    """
                    UPDATE notification_jobs
                    SET status = ?, attempts = ?, last_error = ?, claimed_by = NULL, updated_at = ?
                    WHERE id = ? AND status = ? AND attempts = ? AND claimed_by IS ?
                    """,
                    (DEAD_LETTERED, attempts, message, to_ts(now), job_id, IN_FLIGHT, row["attempts"], row["claimed_by"]),
                )
            else:
                next_at = now + self.backoff(attempts)
                cur = conn.execute(
                    """
                    UPDATE notification_jobs
                    SET status = ?, attempts = ?, next_attempt_at = ?, last_error = ?,
                        claimed_by = NULL, updated_at = ?
                    WHERE id = ? AND status = ? AND attempts = ? AND claimed_by IS ?
                    """,
                    (PENDING, attempts, to_ts(next_at), message, to_ts(now), job_id, IN_FLIGHT, row["attempts"],
                     row["claimed_by"]),
                )
            if cur.rowcount != 1:
                log.warning("Job %s changed while recording its failure", job_id)
                return None

        if attempts >= max_attempts:
            log.error(
                "Job %s dead-lettered after %d/%d attempt(s)%s: %s",
                job_id, attempts, max_attempts, " (permanent)" if permanent else "", message,
            )
        else:
            log.warning(
                "Job %s attempt %d/%d failed, next try at %s: %s",
                job_id, attempts, max_attempts, to_ts(next_at), message,
            )
        return self.get(job_id)

    # --- administration ---------------------------------------------------

    def retry(self, job_id: str) -> bool:
        """Manual override: reset a failed/dead-lettered job to pending, attempts 0."""
        now = to_ts(self.clock())
        placeholders = ", ".join("?" for _ in RETRYABLE_STATUSES)
        try:
            with self.store.transaction() as conn:
                cur = conn.execute(
                    f"""
                    UPDATE notification_jobs
                    SET status = ?, attempts = 0, next_attempt_at = ?, updated_at = ?,
                        claimed_by = NULL, claimed_at = NULL
                    WHERE id = ? AND status IN ({placeholders})
                    """,
                    (PENDING, now, now, job_id, *RETRYABLE_STATUSES),
                )
        except sqlite3.IntegrityError:
            log.info("Not retrying job %s: an equivalent notification is already active", job_id)
            return False
        if cur.rowcount == 1:
            log.info("Job %s reset to pending by operator", job_id)
            return True
        if self.get(job_id) is None:
            raise JobNotFound(job_id)
        return False

    def retry_all_failed(self) -> dict[str, int]:
        placeholders = ", ".join("?" for _ in RETRYABLE_STATUSES)
        with self.store.lock:
            ids = [
                r["id"]
                for r in self.store.connection.execute(
                    f"SELECT id FROM notification_jobs WHERE status IN ({placeholders}) ORDER BY created_at",
                    RETRYABLE_STATUSES,
                ).fetchall()
            ]
        retried = sum(1 for job_id in ids if self.retry(job_id))
        log.info("Retried %d of %d failed job(s)", retried, len(ids))
        return {"retried_count": retried, "total_failed": len(ids)}

    def reclaim_expired(self) -> int:
        """Visibility-timeout sweep: in_flight jobs claimed too long ago go back to pending."""
        now = self.clock()
        cutoff = to_ts(now - timedelta(seconds=self.visibility_timeout))
        next_at = to_ts(now + self.backoff(0))
        with self.store.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE notification_jobs
                SET status = ?, next_attempt_at = ?, claimed_by = NULL, updated_at = ?
                WHERE status = ? AND claimed_at < ?
                """,
                (PENDING, next_at, to_ts(now), IN_FLIGHT, cutoff),
            )
        if cur.rowcount:
            log.warning("Reclaimed %d stuck in-flight job(s)", cur.rowcount)
        return cur.rowcount

    def record_tracking(self, job_id: str, event: str, at: datetime | None = None) -> bool:
        """Apply a provider open/click callback. Idempotent, allowed in any status.

        Returns True when the flag was newly set.
        """
        if event not in TRACKING_EVENTS:
            raise ValueError(f"unknown tracking event {event!r}")
        when = to_ts(at or self.clock())
        flag, stamp = event, f"{event}_at"
        with self.store.transaction() as conn:
            cur = conn.execute(
                f"UPDATE notification_jobs SET {flag} = 1, {stamp} = ? WHERE id = ? AND {flag} = 0",
                (when, job_id),
            )
            if cur.rowcount == 0:
                exists = conn.execute(
                    "SELECT 1 FROM notification_jobs WHERE id = ?", (job_id,)
                ).fetchone()
                if exists is None:
                    raise JobNotFound(job_id)
                return False
        log.debug("Job %s %s", job_id, event)
        return True

    def cleanup(self, older_than_days: int) -> int:
        cutoff = to_ts(self.clock() - timedelta(days=older_than_days))
        with self.store.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM notification_jobs WHERE status = ? AND created_at < ?",
                (SENT, cutoff),
            )
        log.info("Removed %d sent job(s) older than %d days", cur.rowcount, older_than_days)
        return cur.rowcount

    # --- reads ------------------------------------------------------------

    def _fetch(self, ids: list[str]) -> list[NotificationJob]:
        placeholders = ", ".join("?" for _ in ids)
        with self.store.lock:
            rows = self.store.connection.execute(
                f"SELECT * FROM notification_jobs WHERE id IN ({placeholders})", ids
            ).fetchall()
        by_id = {r["id"]: _row_to_job(r) for r in rows}
        return [by_id[i] for i in ids if i in by_id]

    def get(self, job_id: str) -> NotificationJob | None:
        jobs = self._fetch([job_id])
        return jobs[0] if jobs else None

    def list_jobs(self, status: str | None = None, limit: int = 50) -> list[NotificationJob]:
        if status is not None and status not in STATUSES:
            raise ValueError(f"unknown status {status!r}")
        sql = "SELECT * FROM notification_jobs"
        params: list[object] = []
        if status:
            sql += " WHERE status = ?"
            params.append(status)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self.store.lock:
            rows = self.store.connection.execute(sql, params).fetchall()
        return [_row_to_job(r) for r in rows]

    def count_active(self, dedup_key: str) -> int:
        placeholders = ", ".join("?" for _ in ACTIVE_STATUSES)
        with self.store.lock:
            row = self.store.connection.execute(
                f"SELECT COUNT(*) AS n FROM notification_jobs WHERE dedup_key = ? AND status IN ({placeholders})",
                (dedup_key, *ACTIVE_STATUSES),
            ).fetchone()
        return int(row["n"])

    def stats(self) -> dict[str, Any]:
        """Queue depth per status plus recent throughput.

        ``failed`` counts jobs carrying a recorded failure that are not
        dead-lettered: rows in ``failed`` status plus pending jobs waiting out
        a backoff.
        """
        now = self.clock()
        since = to_ts(now - timedelta(minutes=self.throughput_window_minutes))
        with self.store.lock:
            conn = self.store.connection
            counts = {
                r["status"]: int(r["n"])
                for r in conn.execute(
                    "SELECT status, COUNT(*) AS n FROM notification_jobs GROUP BY status"
                ).fetchall()
            }
            retrying = conn.execute(
                "SELECT COUNT(*) AS n FROM notification_jobs WHERE status = ? AND attempts > 0",
                (PENDING,),
            ).fetchone()["n"]
            recent = conn.execute(
                "SELECT COUNT(*) AS n FROM notification_jobs WHERE status = ? AND sent_at >= ?",
                (SENT, since),
            ).fetchone()["n"]
        return {
            "pending": counts.get(PENDING, 0),
            "in_flight": counts.get(IN_FLIGHT, 0),
            "sent": counts.get(SENT, 0),
            "failed": counts.get(FAILED, 0) + int(retrying),
            "dead_lettered": counts.get(DEAD_LETTERED, 0),
            "throughput_per_minute": round(int(recent) / self.throughput_window_minutes, 2),
        }
