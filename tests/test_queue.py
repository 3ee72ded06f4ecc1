from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from matchflow.errors import DuplicateJob, JobNotFound
from matchflow.models import DEAD_LETTERED, IN_FLIGHT, PENDING, SENT


def test_enqueue_sets_initial_state(queue, enqueue_match, clock):
    job = enqueue_match()
    stored = queue.get(job.id)
    assert stored.status == PENDING
    assert stored.attempts == 0
    assert stored.next_attempt_at == clock.now
    assert stored.created_at == clock.now
    assert stored.payload["job_title"] == "Site Reliability Engineer"


def test_duplicate_dedup_key_rejected_while_active(queue, enqueue_match):
    enqueue_match(dedup_key="job_match:R:J")
    with pytest.raises(DuplicateJob):
        enqueue_match(dedup_key="job_match:R:J")
    assert queue.count_active("job_match:R:J") == 1


def test_dedup_key_reusable_after_dead_letter(queue, enqueue_match):
    job = enqueue_match(dedup_key="k")
    queue.claim("w", 1)
    queue.fail(job.id, "bounced", permanent=True)
    again = enqueue_match(dedup_key="k")
    assert queue.get(again.id).status == PENDING


def test_claim_moves_to_in_flight(queue, enqueue_match, clock):
    job = enqueue_match()
    claimed = queue.claim("worker-1", 10)
    assert [j.id for j in claimed] == [job.id]
    assert claimed[0].status == IN_FLIGHT
    assert claimed[0].claimed_by == "worker-1"
    assert claimed[0].claimed_at == clock.now
    assert queue.claim("worker-2", 10) == []


def test_claim_orders_by_priority_then_age(queue, enqueue_match, clock):
    low = enqueue_match(priority="low")
    clock.advance(seconds=1)
    normal = enqueue_match()
    clock.advance(seconds=1)
    urgent = enqueue_match(priority="urgent")
    clock.advance(seconds=1)
    newer_normal = enqueue_match()
    ids = [j.id for j in queue.claim("w", 10)]
    assert ids == [urgent.id, normal.id, newer_normal.id, low.id]


def test_claim_respects_batch_size_and_next_attempt(queue, enqueue_match, clock):
    for _ in range(3):
        enqueue_match()
    assert len(queue.claim("w", 2)) == 2
    job = queue.claim("w", 2)[0]
    queue.fail(job.id, "timeout")
    assert queue.claim("w", 5) == []
    clock.advance(seconds=10)
    assert [j.id for j in queue.claim("w", 5)] == [job.id]


def test_concurrent_claims_never_overlap(queue, enqueue_match):
    created = {enqueue_match().id for _ in range(40)}

    def worker(n):
        got = []
        while True:
            batch = queue.claim(f"w{n}", 3)
            if not batch:
                return got
            got.extend(j.id for j in batch)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(worker, range(8)))
    all_ids = [i for r in results for i in r]
    assert len(all_ids) == len(set(all_ids))
    assert set(all_ids) == created


def test_transient_failures_back_off_then_dead_letter(queue, enqueue_match, clock):
    job = enqueue_match()
    expected_delays = [10, 20]
    for attempt, delay in enumerate(expected_delays, start=1):
        queue.claim("w", 1)
        updated = queue.fail(job.id, "connection reset")
        assert updated.status == PENDING
        assert updated.attempts == attempt
        assert updated.next_attempt_at == clock.now + timedelta(seconds=delay)
        assert updated.next_attempt_at > clock.now
        clock.advance(seconds=delay)

    queue.claim("w", 1)
    final = queue.fail(job.id, "connection reset")
    assert final.status == DEAD_LETTERED
    assert final.attempts == 3
    assert final.last_error == "connection reset"
    assert queue.claim("w", 1) == []


def test_permanent_failure_dead_letters_immediately(queue, enqueue_match):
    job = enqueue_match()
    queue.claim("w", 1)
    updated = queue.fail(job.id, "template missing", permanent=True)
    assert updated.status == DEAD_LETTERED
    assert updated.attempts == updated.max_attempts


def test_fail_ignores_jobs_not_in_flight(queue, enqueue_match):
    job = enqueue_match()
    assert queue.fail(job.id, "late failure") is None
    assert queue.get(job.id).attempts == 0
    with pytest.raises(JobNotFound):
        queue.fail("missing", "x")


def test_retry_resets_dead_lettered(queue, enqueue_match, clock):
    job = enqueue_match()
    queue.claim("w", 1)
    queue.fail(job.id, "bad", permanent=True)
    clock.advance(minutes=5)
    assert queue.retry(job.id) is True
    stored = queue.get(job.id)
    assert stored.status == PENDING
    assert stored.attempts == 0
    assert stored.next_attempt_at == clock.now
    assert queue.retry(job.id) is False
    with pytest.raises(JobNotFound):
        queue.retry("missing")


def test_retry_skipped_when_equivalent_job_active(queue, enqueue_match):
    first = enqueue_match(dedup_key="k")
    queue.claim("w", 1)
    queue.fail(first.id, "bad", permanent=True)
    enqueue_match(dedup_key="k")
    assert queue.retry(first.id) is False
    assert queue.get(first.id).status == DEAD_LETTERED


def test_retry_all_failed(queue, enqueue_match):
    jobs = [enqueue_match() for _ in range(3)]
    queue.claim("w", 3)
    for job in jobs[:2]:
        queue.fail(job.id, "bad", permanent=True)
    result = queue.retry_all_failed()
    assert result == {"retried_count": 2, "total_failed": 2}
    assert queue.get(jobs[0].id).status == PENDING


def test_complete_is_idempotent(queue, enqueue_match, clock):
    job = enqueue_match()
    queue.claim("w", 1)
    assert queue.complete(job.id, "provider-123") is True
    sent_at = queue.get(job.id).sent_at
    clock.advance(seconds=30)
    assert queue.complete(job.id) is False
    stored = queue.get(job.id)
    assert stored.status == SENT
    assert stored.sent_at == sent_at
    assert stored.external_id == "provider-123"
    with pytest.raises(JobNotFound):
        queue.complete("missing")


def test_reclaim_expired_returns_stuck_jobs(queue, enqueue_match, clock):
    job = enqueue_match()
    queue.claim("w", 1)
    clock.advance(seconds=299)
    assert queue.reclaim_expired() == 0
    clock.advance(seconds=2)
    assert queue.reclaim_expired() == 1
    stored = queue.get(job.id)
    assert stored.status == PENDING
    assert stored.attempts == 0
    assert stored.next_attempt_at > clock.now


def test_reclaimed_job_ignores_its_previous_worker(queue, enqueue_match, clock):
    job = enqueue_match()
    queue.claim("worker-A", 1)
    clock.advance(seconds=301)
    assert queue.reclaim_expired() == 1
    clock.advance(seconds=5)
    [again] = queue.claim("worker-B", 1)
    assert again.id == job.id

    assert queue.fail(job.id, "late timeout", worker_id="worker-A") is None
    assert queue.complete(job.id, "late-msg", worker_id="worker-A") is False
    stored = queue.get(job.id)
    assert stored.status == IN_FLIGHT
    assert stored.claimed_by == "worker-B"
    assert stored.attempts == 0
    assert stored.last_error is None

    assert queue.complete(job.id, "msg-b", worker_id="worker-B") is True
    assert queue.get(job.id).external_id == "msg-b"


def test_late_completion_of_reclaimed_pending_job(queue, enqueue_match, clock):
    job = enqueue_match()
    queue.claim("worker-A", 1)
    clock.advance(seconds=301)
    queue.reclaim_expired()
    assert queue.complete(job.id, "msg-a", worker_id="worker-A") is True
    assert queue.get(job.id).status == SENT


def test_tracking_is_idempotent_and_status_independent(queue, enqueue_match, clock):
    job = enqueue_match()
    queue.claim("w", 1)
    queue.complete(job.id)
    first_open = clock.now
    assert queue.record_tracking(job.id, "opened") is True
    clock.advance(minutes=1)
    assert queue.record_tracking(job.id, "opened") is False
    assert queue.record_tracking(job.id, "clicked") is True
    stored = queue.get(job.id)
    assert stored.status == SENT
    assert stored.tracking.opened and stored.tracking.clicked
    assert stored.tracking.opened_at == first_open
    assert stored.tracking.clicked_at == clock.now


def test_tracking_rejects_unknown(queue, enqueue_match):
    job = enqueue_match()
    with pytest.raises(ValueError):
        queue.record_tracking(job.id, "bounced")
    with pytest.raises(JobNotFound):
        queue.record_tracking("missing", "opened")


def test_stats(queue, enqueue_match, clock):
    a, b, c, d = (enqueue_match() for _ in range(4))
    queue.claim("w", 4)
    queue.complete(a.id)
    queue.fail(b.id, "timeout")
    queue.fail(c.id, "bad", permanent=True)
    stats = queue.stats()
    assert stats["sent"] == 1
    assert stats["pending"] == 1
    assert stats["in_flight"] == 1
    assert stats["failed"] == 1
    assert stats["dead_lettered"] == 1
    assert stats["throughput_per_minute"] == round(1 / 15, 2)


def test_cleanup_removes_old_sent_only(queue, enqueue_match, clock):
    old = enqueue_match()
    queue.claim("w", 1)
    queue.complete(old.id)
    pending = enqueue_match()
    clock.advance(days=91)
    assert queue.cleanup(90) == 1
    assert queue.get(old.id) is None
    assert queue.get(pending.id) is not None


def test_list_jobs_filters_status(queue, enqueue_match):
    a = enqueue_match()
    enqueue_match()
    queue.claim("w", 2)
    queue.complete(a.id)
    assert [j.id for j in queue.list_jobs(SENT)] == [a.id]
    assert len(queue.list_jobs()) == 2
    with pytest.raises(ValueError):
        queue.list_jobs("unknown")
