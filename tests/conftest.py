from __future__ import annotations

import copy
import os

os.environ.setdefault("MATCHFLOW_LOG_FILE", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime, timedelta, timezone

import pytest

from matchflow.catalog import InMemoryCatalog, JobRecord, ResumeRecord
from matchflow.config import DEFAULTS
from matchflow.embeddings.base import EmbeddingProvider
from matchflow.errors import ProviderUnavailable
from matchflow.evaluator import MatchEvaluator
from matchflow.models import JOB, JOB_MATCH, RESUME, EmbeddingVector
from matchflow.notification_queue import NotificationQueue
from matchflow.store import Store
from matchflow.templates import RenderedMessage
from matchflow.transports.base import DeliveryReceipt, DeliveryTransport

# Monday 2026-01-05 09:00 UTC
START = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class DictEmbeddingProvider(EmbeddingProvider):
    """Vectors looked up in a dict; ids listed in ``failing`` raise.

    Ids the catalog does not know raise EntityNotFound like a real provider.
    """

    name = "dict"

    def __init__(self, catalog, vectors: dict | None = None) -> None:
        super().__init__(catalog)
        self.vectors: dict[tuple[str, str], list[float]] = dict(vectors or {})
        self.failing: set[tuple[str, str]] = set()
        self.calls: list[tuple[str, str]] = []

    def get_embedding(self, entity_type: str, entity_id: str) -> EmbeddingVector:
        self.calls.append((entity_type, entity_id))
        key = (entity_type, entity_id)
        if key not in self.vectors and key not in self.failing:
            self._text(entity_type, entity_id)
        if key in self.failing or key not in self.vectors:
            raise ProviderUnavailable(f"no vector for {entity_type} {entity_id}")
        return EmbeddingVector(entity_type=entity_type, entity_id=entity_id, values=tuple(self.vectors[key]))


class RecordingTransport(DeliveryTransport):
    """Records messages; raises the queued exceptions first, one per send."""

    name = "recording"

    def __init__(self) -> None:
        self.sent: list[tuple[str, RenderedMessage, str]] = []
        self.errors: list[BaseException] = []
        self.always_fail: BaseException | None = None

    def send(self, to_addr: str, message: RenderedMessage, *, job_id: str) -> DeliveryReceipt:
        if self.always_fail is not None:
            raise self.always_fail
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append((to_addr, message, job_id))
        return DeliveryReceipt(transport=self.name, external_id=f"msg-{job_id}")


def job_match_payload(**overrides) -> dict:
    payload = {
        "recipient_name": "Priya Sharma",
        "email": "priya@example.com",
        "resume_id": "R",
        "job_id": "J",
        "job_title": "Site Reliability Engineer",
        "company": "CloudScale",
        "score": 87.5,
        "location": "Remote",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store():
    s = Store(":memory:").connect()
    yield s
    s.close()


@pytest.fixture
def queue(store, clock) -> NotificationQueue:
    return NotificationQueue(
        store, max_attempts=3, base_delay=5.0, max_delay=3600.0, visibility_timeout=300, clock=clock
    )


@pytest.fixture
def catalog(clock) -> InMemoryCatalog:
    c = InMemoryCatalog(clock=clock)
    c.add_resume(ResumeRecord(id="R", user_id="u-R", name="Priya Sharma", email="priya@example.com",
                              skills=["kubernetes"], updated_at=START - timedelta(days=40)))
    c.add_job(JobRecord(id="J", title="Site Reliability Engineer", company="CloudScale",
                        location="Remote", url="https://example.com/jobs/J"))
    c.add_job(JobRecord(id="J2", title="Frontend Engineer", company="Pixel Labs", location="Berlin"))
    return c


@pytest.fixture
def provider(catalog) -> DictEmbeddingProvider:
    return DictEmbeddingProvider(catalog, {
        (RESUME, "R"): [1.0, 0.0],
        (JOB, "J"): [1.0, 0.0],
        (JOB, "J2"): [0.0, 1.0],
    })


@pytest.fixture
def evaluator(store, queue, provider, catalog, clock) -> MatchEvaluator:
    return MatchEvaluator(store, queue, provider, catalog, notify_threshold=50, sweep_stale_hours=24, clock=clock)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def settings() -> dict:
    s = copy.deepcopy(DEFAULTS)
    s["database"]["path"] = ":memory:"
    return s


@pytest.fixture
def enqueue_match(queue):
    def _enqueue(dedup_key: str | None = None, priority: str = "normal", **payload_overrides):
        job = queue.new_job(JOB_MATCH, "u-R", job_match_payload(**payload_overrides),
                            dedup_key=dedup_key, priority=priority)
        return queue.enqueue(job)
    return _enqueue
