"""Read-only view of resumes and job postings owned by the portal's CRUD layer.

The pipeline never writes here. ``InMemoryCatalog`` backs tests;
``YamlCatalog`` loads a fixture file for local runs.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import yaml

from matchflow.errors import ConfigError
from matchflow.log import get_logger
from matchflow.models import JOB, RESUME, utcnow

log = get_logger(__name__)


@dataclass
class Recipient:
    user_id: str
    name: str
    email: str


@dataclass
class ResumeRecord:
    id: str
    user_id: str
    name: str
    email: str
    text: str = ""
    skills: list[str] = field(default_factory=list)
    active: bool = True
    updated_at: datetime | None = None
    profile_completion: int = 0


@dataclass
class JobRecord:
    id: str
    title: str
    company: str
    location: str = ""
    url: str = ""
    description: str = ""
    skills: list[str] = field(default_factory=list)
    open: bool = True


@dataclass
class StaleCandidate:
    user_id: str
    name: str
    email: str
    days_since_update: int
    profile_completion: int = 0
    suggestions: list[str] = field(default_factory=list)


MIN_SKILLS = 5


def profile_suggestions(resume: ResumeRecord) -> list[str]:
    """Next steps shown in the weekly reminder for a stale profile."""
    suggestions = []
    if len(resume.skills) < MIN_SKILLS:
        suggestions.append("Add more skills")
    if not resume.text.strip():
        suggestions.append("Add work experience")
    if resume.profile_completion < 100:
        suggestions.append("Complete your profile")
    return suggestions


class Catalog(ABC):
    @abstractmethod
    def active_resume_ids(self) -> list[str]:
        pass

    @abstractmethod
    def open_job_ids(self) -> list[str]:
        pass

    @abstractmethod
    def recipient_for_resume(self, resume_id: str) -> Recipient | None:
        pass

    @abstractmethod
    def job_summary(self, job_id: str) -> JobRecord | None:
        pass

    @abstractmethod
    def entity_text(self, entity_type: str, entity_id: str) -> str | None:
        """Text an embedding is computed from, or None if the entity is unknown."""

    @abstractmethod
    def stale_candidates(self, days: int) -> list[StaleCandidate]:
        """Active resumes not updated for at least ``days`` days."""


def _as_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class InMemoryCatalog(Catalog):
    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self.clock = clock
        self.resumes: dict[str, ResumeRecord] = {}
        self.jobs: dict[str, JobRecord] = {}

    def add_resume(self, resume: ResumeRecord) -> ResumeRecord:
        self.resumes[resume.id] = resume
        return resume

    def add_job(self, job: JobRecord) -> JobRecord:
        self.jobs[job.id] = job
        return job

    def active_resume_ids(self) -> list[str]:
        return [r.id for r in self.resumes.values() if r.active]

    def open_job_ids(self) -> list[str]:
        return [j.id for j in self.jobs.values() if j.open]

    def recipient_for_resume(self, resume_id: str) -> Recipient | None:
        r = self.resumes.get(resume_id)
        if r is None:
            return None
        return Recipient(user_id=r.user_id, name=r.name, email=r.email)

    def job_summary(self, job_id: str) -> JobRecord | None:
        return self.jobs.get(job_id)

    def entity_text(self, entity_type: str, entity_id: str) -> str | None:
        if entity_type == RESUME:
            r = self.resumes.get(entity_id)
            if r is None:
                return None
            return "\n".join(p for p in (r.text, ", ".join(r.skills)) if p)
        if entity_type == JOB:
            j = self.jobs.get(entity_id)
            if j is None:
                return None
            return "\n".join(p for p in (j.title, j.description, ", ".join(j.skills)) if p)
        raise ValueError(f"unknown entity type {entity_type!r}")

    def stale_candidates(self, days: int) -> list[StaleCandidate]:
        now = self.clock()
        cutoff = now - timedelta(days=days)
        out: list[StaleCandidate] = []
        for r in self.resumes.values():
            if not r.active or r.updated_at is None or r.updated_at > cutoff:
                continue
            out.append(
                StaleCandidate(
                    user_id=r.user_id,
                    name=r.name,
                    email=r.email,
                    days_since_update=(now - r.updated_at).days,
                    profile_completion=r.profile_completion,
                    suggestions=profile_suggestions(r),
                )
            )
        return out


class YamlCatalog(InMemoryCatalog):
    """Catalog fixture file with top-level ``resumes:`` and ``jobs:`` lists."""

    def __init__(self, path: Path | str, clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__(clock)
        self.path = Path(path)
        self.reload()

    def reload(self) -> None:
        if not self.path.exists():
            raise ConfigError(f"catalog file not found: {self.path}")
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        self.resumes.clear()
        self.jobs.clear()
        try:
            for item in data.get("resumes", []):
                item = dict(item)
                item["updated_at"] = _as_datetime(item.get("updated_at"))
                self.add_resume(ResumeRecord(**item))
            for item in data.get("jobs", []):
                self.add_job(JobRecord(**item))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{self.path}: invalid catalog entry ({exc})") from exc
        log.info("Catalog loaded: %d resume(s), %d job(s) from %s",
                 len(self.resumes), len(self.jobs), self.path)
