"""Match evaluation: embeddings in, MatchResults and job_match notifications out."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from matchflow.catalog import Catalog
from matchflow.embeddings import EmbeddingProvider
from matchflow.errors import (
    DuplicateJob,
    EmbeddingUnavailable,
    EntityNotFound,
    ProviderTimeout,
    ProviderUnavailable,
)
from matchflow.log import get_logger
from matchflow.models import (
    JOB,
    JOB_MATCH,
    JOB_PUBLISHED,
    RESUME,
    RESUME_ACTIVATED,
    SWEEP,
    EmbeddingVector,
    MatchResult,
    TriggerEvent,
    job_match_dedup_key,
    utcnow,
)
from matchflow.notification_queue import NotificationQueue
from matchflow.ranker import match_score, rank
from matchflow.store import Store

log = get_logger(__name__)


class MatchEvaluator:
    def __init__(
        self,
        store: Store,
        queue: NotificationQueue,
        provider: EmbeddingProvider,
        catalog: Catalog,
        *,
        notify_threshold: float = 50.0,
        sweep_stale_hours: float = 24,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.queue = queue
        self.provider = provider
        self.catalog = catalog
        self.notify_threshold = float(notify_threshold)
        self.sweep_stale_hours = sweep_stale_hours
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: dict[str, Any],
        store: Store,
        queue: NotificationQueue,
        provider: EmbeddingProvider,
        catalog: Catalog,
        clock: Callable[[], datetime] = utcnow,
    ) -> "MatchEvaluator":
        m = settings["matching"]
        return cls(
            store,
            queue,
            provider,
            catalog,
            notify_threshold=float(m["notify_threshold"]),
            sweep_stale_hours=float(m["sweep_stale_hours"]),
            clock=clock,
        )

    # --- embeddings -------------------------------------------------------

    def embedding_for(self, entity_type: str, entity_id: str) -> EmbeddingVector:
        """Cached vector, computing and caching it on a miss."""
        cached = self.store.get_embedding(entity_type, entity_id)
        if cached is not None:
            return cached
        try:
            vector = self.provider.get_embedding(entity_type, entity_id)
        except (ProviderUnavailable, ProviderTimeout) as exc:
            raise EmbeddingUnavailable(entity_type, entity_id, exc) from exc
        self.store.put_embedding(vector)
        log.debug("Cached %s embedding for %s", entity_type, entity_id)
        return vector

    def invalidate_embedding(self, entity_type: str, entity_id: str) -> bool:
        """Drop the cached vector so the next evaluation recomputes it."""
        removed = self.store.delete_embedding(entity_type, entity_id)
        if removed:
            log.info("Invalidated %s embedding for %s", entity_type, entity_id)
        return removed

    # --- triggers ---------------------------------------------------------

    def handle(self, event: TriggerEvent) -> list[MatchResult]:
        if event.kind == RESUME_ACTIVATED:
            if not event.resume_id:
                raise ValueError("resume_activated event without resume_id")
            return self.evaluate_resume(event.resume_id)
        if event.kind == JOB_PUBLISHED:
            if not event.job_id:
                raise ValueError("job_published event without job_id")
            return self.evaluate_job(event.job_id)
        if event.kind == SWEEP:
            return self.sweep()
        raise ValueError(f"unknown trigger kind {event.kind!r}")

    def evaluate_resume(self, resume_id: str, job_ids: Iterable[str] | None = None) -> list[MatchResult]:
        jobs = list(job_ids) if job_ids is not None else self.catalog.open_job_ids()
        return self._evaluate(RESUME, resume_id, JOB, jobs)

    def evaluate_job(self, job_id: str, resume_ids: Iterable[str] | None = None) -> list[MatchResult]:
        resumes = list(resume_ids) if resume_ids is not None else self.catalog.active_resume_ids()
        return self._evaluate(JOB, job_id, RESUME, resumes)

    def evaluate_pair(self, resume_id: str, job_id: str) -> MatchResult | None:
        results = self._evaluate(RESUME, resume_id, JOB, [job_id])
        return results[0] if results else None

    def sweep(self) -> list[MatchResult]:
        """Re-evaluate never-matched pairs and pairs older than sweep_stale_hours.

        Resumes whose embedding is unavailable are skipped for this sweep;
        the next sweep picks them up again.
        """
        cutoff = self.clock() - timedelta(hours=self.sweep_stale_hours)
        open_jobs = self.catalog.open_job_ids()
        results: list[MatchResult] = []
        skipped = 0
        for resume_id in self.catalog.active_resume_ids():
            seen = self.store.match_times_for_resume(resume_id)
            due = [j for j in open_jobs if j not in seen or seen[j] < cutoff]
            if not due:
                continue
            try:
                results.extend(self.evaluate_resume(resume_id, due))
            except EmbeddingUnavailable as exc:
                skipped += 1
                log.warning("Sweep skipped part of resume %s: %s", resume_id, exc)
            except EntityNotFound as exc:
                skipped += 1
                log.warning("Sweep skipped resume %s: %s", resume_id, exc)
        log.info("Sweep evaluated %d pair(s), %d resume(s) incomplete", len(results), skipped)
        return results

    # --- core -------------------------------------------------------------

    def _evaluate(
        self, query_type: str, query_id: str, other_type: str, other_ids: list[str]
    ) -> list[MatchResult]:
        query = self.embedding_for(query_type, query_id)

        candidates: list[tuple[str, tuple[float, ...]]] = []
        unavailable: list[EmbeddingUnavailable] = []
        for other_id in other_ids:
            try:
                candidates.append((other_id, self.embedding_for(other_type, other_id).values))
            except EmbeddingUnavailable as exc:
                log.warning("%s", exc)
                unavailable.append(exc)
            except EntityNotFound as exc:
                log.warning("Skipping %s: %s", other_id, exc)

        now = self.clock()
        results: list[MatchResult] = []
        for other_id, sim in rank(query.values, candidates, threshold=None, skip_invalid=True):
            resume_id, job_id = (query_id, other_id) if query_type == RESUME else (other_id, query_id)
            result = MatchResult(resume_id=resume_id, job_id=job_id, score=match_score(sim), computed_at=now)
            self.store.upsert_match(result)
            results.append(result)
            if result.score >= self.notify_threshold:
                self._notify(result)

        log.info(
            "Evaluated %s %s against %d %s(s): %d result(s), %d above %.0f",
            query_type, query_id, len(other_ids), other_type, len(results),
            sum(1 for r in results if r.score >= self.notify_threshold), self.notify_threshold,
        )
        if unavailable:
            raise unavailable[0]
        return results

    def _notify(self, result: MatchResult) -> bool:
        recipient = self.catalog.recipient_for_resume(result.resume_id)
        job = self.catalog.job_summary(result.job_id)
        if recipient is None or job is None:
            log.warning("No recipient or job details for %s/%s, not notifying",
                        result.resume_id, result.job_id)
            return False

        payload = {
            "recipient_name": recipient.name,
            "email": recipient.email,
            "resume_id": result.resume_id,
            "job_id": result.job_id,
            "job_title": job.title,
            "company": job.company,
            "score": result.score,
            "location": job.location,
            "job_url": job.url,
            "skills": list(job.skills),
        }
        notification = self.queue.new_job(
            JOB_MATCH,
            recipient.user_id,
            payload,
            dedup_key=job_match_dedup_key(result.resume_id, result.job_id),
        )
        try:
            self.queue.enqueue(notification)
        except DuplicateJob:
            log.debug("Match %s/%s already notified", result.resume_id, result.job_id)
            return False
        return True

    # --- stats ------------------------------------------------------------

    def match_stats(self, since: datetime | None = None, until: datetime | None = None) -> dict[str, int]:
        total, above = self.store.count_matches(since, until, self.notify_threshold)
        return {"total_computed": total, "above_threshold": above}
