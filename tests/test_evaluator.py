from concurrent.futures import ThreadPoolExecutor

import pytest

from matchflow.catalog import JobRecord, ResumeRecord
from matchflow.errors import EmbeddingUnavailable, EntityNotFound
from matchflow.evaluator import MatchEvaluator
from matchflow.models import JOB, JOB_MATCH, JOB_PUBLISHED, PENDING, RESUME, RESUME_ACTIVATED, SWEEP, TriggerEvent


def _scores(results):
    return {(r.resume_id, r.job_id): r.score for r in results}


def test_identical_embeddings_notify_once(evaluator, queue, store):
    results = evaluator.evaluate_resume("R")
    assert _scores(results)[("R", "J")] == 100.0
    assert store.get_match("R", "J").score == 100.0

    jobs = queue.list_jobs()
    assert len(jobs) == 1
    job = jobs[0]
    assert job.type == JOB_MATCH
    assert job.status == PENDING
    assert job.recipient_id == "u-R"
    assert job.dedup_key == "job_match:R:J"
    assert job.payload["job_title"] == "Site Reliability Engineer"
    assert job.payload["score"] == 100.0


def test_orthogonal_embeddings_do_not_notify(evaluator, queue, store):
    evaluator.evaluate_resume("R", ["J2"])
    assert store.get_match("R", "J2").score == 0.0
    assert queue.list_jobs() == []


def test_rerun_is_idempotent(evaluator, queue):
    first = _scores(evaluator.evaluate_resume("R"))
    second = _scores(evaluator.evaluate_resume("R"))
    assert first == second
    assert len(queue.list_jobs()) == 1
    assert queue.count_active("job_match:R:J") == 1


def test_concurrent_evaluations_create_one_notification(evaluator, queue):
    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(lambda _: evaluator.evaluate_resume("R"), range(8)))
    assert len(queue.list_jobs()) == 1


@pytest.mark.parametrize("threshold, notified", [(96, True), (96.5, False)])
def test_threshold_is_inclusive(store, queue, provider, catalog, clock, threshold, notified):
    catalog.add_resume(ResumeRecord(id="R3", user_id="u-3", name="Ana Lima", email="ana@example.com"))
    catalog.add_job(JobRecord(id="J3", title="Data Engineer", company="Flow"))
    provider.vectors[(RESUME, "R3")] = [3.0, 4.0]
    provider.vectors[(JOB, "J3")] = [4.0, 3.0]
    ev = MatchEvaluator(store, queue, provider, catalog, notify_threshold=threshold, clock=clock)
    result = ev.evaluate_pair("R3", "J3")
    assert result.score == 96.0
    assert bool(queue.list_jobs()) is notified


def test_embeddings_are_cached(evaluator, provider, store):
    evaluator.evaluate_resume("R")
    calls = len(provider.calls)
    assert store.get_embedding(JOB, "J").values == (1.0, 0.0)
    evaluator.evaluate_resume("R")
    assert len(provider.calls) == calls


def test_invalidate_embedding_forces_recompute(evaluator, provider):
    evaluator.evaluate_pair("R", "J")
    assert evaluator.invalidate_embedding(JOB, "J") is True
    assert evaluator.invalidate_embedding(JOB, "J") is False
    provider.calls.clear()
    evaluator.evaluate_pair("R", "J")
    assert provider.calls == [(JOB, "J")]


def test_query_embedding_unavailable(evaluator, provider, store):
    provider.failing.add((RESUME, "R"))
    with pytest.raises(EmbeddingUnavailable) as exc:
        evaluator.evaluate_resume("R")
    assert exc.value.entity_id == "R"
    assert store.get_match("R", "J") is None


def test_candidate_unavailable_still_evaluates_the_rest(evaluator, provider, store, queue):
    provider.failing.add((JOB, "J2"))
    with pytest.raises(EmbeddingUnavailable) as exc:
        evaluator.evaluate_resume("R")
    assert exc.value.entity_id == "J2"
    assert store.get_match("R", "J").score == 100.0
    assert len(queue.list_jobs()) == 1


def test_unknown_entities_are_not_retried(evaluator, store):
    results = evaluator.evaluate_resume("R", ["J", "no-such-job"])
    assert _scores(results) == {("R", "J"): 100.0}
    assert store.get_match("R", "no-such-job") is None

    with pytest.raises(EntityNotFound):
        evaluator.evaluate_resume("no-such-resume")


def test_dimension_mismatch_skips_pair(evaluator, provider, catalog, store):
    catalog.add_job(JobRecord(id="J3", title="Odd", company="Shape"))
    provider.vectors[(JOB, "J3")] = [1.0, 0.0, 0.0]
    results = evaluator.evaluate_resume("R")
    assert {r.job_id for r in results} == {"J", "J2"}
    assert store.get_match("R", "J3") is None


def test_evaluate_job_against_active_resumes(evaluator, catalog, provider):
    catalog.add_resume(ResumeRecord(id="R-old", user_id="u-9", name="Old", email="old@example.com", active=False))
    provider.vectors[(RESUME, "R-old")] = [1.0, 0.0]
    results = evaluator.evaluate_job("J")
    assert _scores(results) == {("R", "J"): 100.0}


def test_missing_recipient_stores_result_without_notifying(evaluator, provider, queue, store):
    provider.vectors[(RESUME, "ghost")] = [1.0, 0.0]
    result = evaluator.evaluate_pair("ghost", "J")
    assert result.score == 100.0
    assert store.get_match("ghost", "J") is not None
    assert queue.list_jobs() == []


def test_sweep_only_picks_stale_or_new_pairs(evaluator, clock, queue):
    assert len(evaluator.sweep()) == 2
    assert evaluator.sweep() == []
    clock.advance(hours=25)
    assert len(evaluator.sweep()) == 2
    assert len(queue.list_jobs()) == 1


def test_handle_routes_events(evaluator):
    assert _scores(evaluator.handle(TriggerEvent(kind=RESUME_ACTIVATED, resume_id="R")))[("R", "J")] == 100.0
    assert _scores(evaluator.handle(TriggerEvent(kind=JOB_PUBLISHED, job_id="J2"))) == {("R", "J2"): 0.0}
    assert evaluator.handle(TriggerEvent(kind=SWEEP)) == []
    with pytest.raises(ValueError):
        evaluator.handle(TriggerEvent(kind=JOB_PUBLISHED))
    with pytest.raises(ValueError):
        evaluator.handle(TriggerEvent(kind="nope"))


def test_match_stats(evaluator, clock):
    start = clock.now
    evaluator.evaluate_resume("R")
    assert evaluator.match_stats() == {"total_computed": 2, "above_threshold": 1}
    clock.advance(hours=1)
    assert evaluator.match_stats(since=clock.now) == {"total_computed": 0, "above_threshold": 0}
    assert evaluator.match_stats(since=start, until=clock.now)["total_computed"] == 2
