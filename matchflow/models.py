"""Data models for embeddings, matches, notification jobs and cron configs."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Notification job status
PENDING = "pending"
IN_FLIGHT = "in_flight"
SENT = "sent"
FAILED = "failed"
DEAD_LETTERED = "dead_lettered"
STATUSES: tuple[str, ...] = (PENDING, IN_FLIGHT, SENT, FAILED, DEAD_LETTERED)
# A dedup key is "taken" while a job holding it is in one of these states.
ACTIVE_STATUSES: tuple[str, ...] = (PENDING, IN_FLIGHT, SENT)
RETRYABLE_STATUSES: tuple[str, ...] = (FAILED, DEAD_LETTERED)

# Notification types
JOB_MATCH = "job_match"
STATUS_UPDATE = "status_update"
VERIFICATION = "verification"
REMINDER = "reminder"
WELCOME = "welcome"
NOTIFICATION_TYPES: tuple[str, ...] = (JOB_MATCH, STATUS_UPDATE, VERIFICATION, REMINDER, WELCOME)

PRIORITIES: dict[str, int] = {"urgent": 10, "high": 8, "normal": 5, "low": 2}

RESUME = "resume"
JOB = "job"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_ts(dt: datetime | None) -> str | None:
    """Fixed-width UTC text form; sorts lexically in time order."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)


def from_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def template_name_for(notification_type: str) -> str:
    return notification_type.replace("_", "-")


def job_match_dedup_key(resume_id: str, job_id: str) -> str:
    return f"{JOB_MATCH}:{resume_id}:{job_id}"


@dataclass(frozen=True)
class EmbeddingVector:
    entity_type: str
    entity_id: str
    values: tuple[float, ...]
    computed_at: datetime = field(default_factory=utcnow)

    def __len__(self) -> int:
        return len(self.values)


@dataclass(frozen=True)
class MatchResult:
    resume_id: str
    job_id: str
    score: float
    computed_at: datetime


@dataclass
class Tracking:
    opened: bool = False
    opened_at: datetime | None = None
    clicked: bool = False
    clicked_at: datetime | None = None


@dataclass
class NotificationJob:
    type: str
    recipient_id: str
    payload: dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: str = PENDING
    attempts: int = 0
    max_attempts: int = 3
    next_attempt_at: datetime | None = None
    created_at: datetime | None = None
    sent_at: datetime | None = None
    last_error: str | None = None
    tracking: Tracking = field(default_factory=Tracking)
    dedup_key: str | None = None
    channel: str = "email"
    priority: str = "normal"
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    external_id: str | None = None

    @property
    def template_name(self) -> str:
        return template_name_for(self.type)

    @property
    def is_terminal(self) -> bool:
        return self.status in (SENT, DEAD_LETTERED)


@dataclass
class CronJobConfig:
    name: str
    schedule: str
    enabled: bool = True
    last_run: datetime | None = None
    next_run: datetime | None = None


@dataclass
class TriggerEvent:
    kind: str
    resume_id: str | None = None
    job_id: str | None = None
    attempts: int = 0


# Trigger kinds
JOB_PUBLISHED = "job_published"
RESUME_ACTIVATED = "resume_activated"
SWEEP = "sweep"
TRIGGER_KINDS: tuple[str, ...] = (JOB_PUBLISHED, RESUME_ACTIVATED, SWEEP)
