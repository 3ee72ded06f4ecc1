"""Operator-facing read/control surface: queue stats, retries, cron control,
match statistics, health and the daily summary report."""
from __future__ import annotations

import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from matchflow.dispatch import DispatchPool
from matchflow.errors import JobNotFound
from matchflow.evaluator import MatchEvaluator
from matchflow.log import get_logger
from matchflow.models import DEAD_LETTERED, NotificationJob, to_ts, utcnow
from matchflow.notification_queue import NotificationQueue
from matchflow.scheduler import Scheduler
from matchflow.triggers import TriggerConsumer

log = get_logger(__name__)

_RANGE_RE = re.compile(r"^(\d+)\s*([hdw])$")
_RANGE_UNITS = {"h": "hours", "d": "days", "w": "weeks"}

HEALTHY = "healthy"
DEGRADED = "degraded"


def parse_time_range(time_range: str | None) -> timedelta | None:
    """'24h', '7d', '2w' -> timedelta; None or 'all' -> None (no lower bound)."""
    if time_range is None or str(time_range).strip().lower() == "all":
        return None
    m = _RANGE_RE.match(str(time_range).strip().lower())
    if not m:
        raise ValueError(f"bad time range {time_range!r} (expected e.g. 24h, 7d, 2w or all)")
    return timedelta(**{_RANGE_UNITS[m.group(2)]: int(m.group(1))})


def _job_dict(job: NotificationJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "type": job.type,
        "recipient_id": job.recipient_id,
        "status": job.status,
        "priority": job.priority,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "next_attempt_at": to_ts(job.next_attempt_at),
        "created_at": to_ts(job.created_at),
        "sent_at": to_ts(job.sent_at),
        "last_error": job.last_error,
        "opened": job.tracking.opened,
        "clicked": job.tracking.clicked,
    }


class ControlSurface:
    def __init__(
        self,
        queue: NotificationQueue,
        evaluator: MatchEvaluator,
        scheduler: Scheduler,
        *,
        consumer: TriggerConsumer | None = None,
        pool: DispatchPool | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.queue = queue
        self.evaluator = evaluator
        self.scheduler = scheduler
        self.consumer = consumer
        self.pool = pool
        self.clock = clock

    # --- queue ------------------------------------------------------------

    def get_queue_stats(self) -> dict[str, Any]:
        return self.queue.stats()

    def retry_job(self, job_id: str) -> bool:
        return self.queue.retry(job_id)

    def retry_all_failed(self) -> dict[str, int]:
        return self.queue.retry_all_failed()

    def list_jobs(self, status: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        return [_job_dict(j) for j in self.queue.list_jobs(status, limit)]

    def get_job(self, job_id: str) -> dict[str, Any]:
        job = self.queue.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return _job_dict(job)

    def record_delivery_event(self, job_id: str, event: str, at: datetime | None = None) -> bool:
        """Provider callback (open/click)."""
        return self.queue.record_tracking(job_id, event, at)

    def pause_dispatch(self) -> bool:
        if self.pool is None:
            return False
        self.pool.pause()
        return True

    def resume_dispatch(self) -> bool:
        if self.pool is None:
            return False
        self.pool.resume()
        return True

    # --- cron -------------------------------------------------------------

    def list_cron_jobs(self) -> list[dict[str, Any]]:
        return self.scheduler.list_jobs()

    def set_cron_job_enabled(self, name: str, enabled: bool) -> dict[str, Any]:
        config = self.scheduler.set_enabled(name, enabled)
        return {"name": config.name, "enabled": config.enabled, "next_run": to_ts(config.next_run)}

    def run_cron_job_now(self, name: str) -> bool:
        return self.scheduler.run_now(name)

    # --- matching ---------------------------------------------------------

    def get_match_stats(self, time_range: str | None = "24h") -> dict[str, Any]:
        window = parse_time_range(time_range)
        now = self.clock()
        since = now - window if window is not None else None
        stats = self.evaluator.match_stats(since)
        return {
            "time_range": time_range or "all",
            "threshold": self.evaluator.notify_threshold,
            **stats,
        }

    # --- health -----------------------------------------------------------

    def get_health(self) -> dict[str, Any]:
        reasons: list[str] = []
        stats = self.queue.stats()
        triggers = self.consumer.health() if self.consumer else None
        if triggers and triggers["degraded"]:
            reasons.append("embedding provider unavailable")
        workers = None
        if self.pool is not None:
            workers = {"workers": self.pool.workers, "running": self.pool.running, "paused": self.pool.paused}
            if self.pool.paused:
                reasons.append("dispatch paused")
        if stats["dead_lettered"]:
            reasons.append(f"{stats['dead_lettered']} dead-lettered notification(s)")
        return {
            "status": DEGRADED if reasons else HEALTHY,
            "reasons": reasons,
            "queue": stats,
            "triggers": triggers,
            "dispatch": workers,
            "timestamp": to_ts(self.clock()),
        }

    # --- daily summary ----------------------------------------------------

    def build_daily_summary(self) -> str:
        now = self.clock()
        stats = self.queue.stats()
        matches = self.get_match_stats("24h")
        lines: list[str] = [f"# Match & Notify Summary — {now.strftime('%Y-%m-%d')}", ""]
        lines.append(
            f"**{matches['total_computed']}** matches computed | "
            f"**{matches['above_threshold']}** at or above {matches['threshold']:.0f} | "
            f"**{stats['sent']}** notifications sent"
        )
        lines.append("")

        lines.append("## Queue")
        lines.append("")
        lines.append("| Status | Count |")
        lines.append("|--------|------:|")
        for key in ("pending", "in_flight", "sent", "failed", "dead_lettered"):
            lines.append(f"| {key} | {stats[key]} |")
        lines.append(f"| throughput/min | {stats['throughput_per_minute']} |")
        lines.append("")

        dead = self.queue.list_jobs(DEAD_LETTERED, limit=10)
        if dead:
            lines.append("## Dead-lettered")
            lines.append("")
            for job in dead:
                error = (job.last_error or "")[:80]
                lines.append(f"- `{job.id}` {job.type} → {job.recipient_id}: {error}")
            lines.append("")

        cron = self.scheduler.list_jobs()
        if cron:
            lines.append("## Scheduled tasks")
            lines.append("")
            lines.append("| Task | Schedule | Enabled | Last run | Next run |")
            lines.append("|------|----------|---------|----------|----------|")
            for c in cron:
                lines.append(
                    f"| {c['name']} | `{c['schedule']}` | {'yes' if c['enabled'] else 'no'} | "
                    f"{c['last_run'] or '—'} | {c['next_run'] or '—'} |"
                )
            lines.append("")
        return "\n".join(lines)

    def write_daily_summary(self, reports_dir: Path) -> Path:
        reports_dir.mkdir(parents=True, exist_ok=True)
        path = reports_dir / f"summary_{self.clock().strftime('%Y-%m-%d')}.md"
        path.write_text(self.build_daily_summary(), encoding="utf-8")
        log.info("Daily summary written to %s", path)
        return path
