"""Tests for the durable job queue: enqueue, atomic claim, settle, housekeeping."""
from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy import DateTime

from capture_relay.models.job import JobStatus, QueueJob, utcnow
from capture_relay.services.job_queue import JobQueue

from conftest import make_settings

NOW = datetime(2026, 3, 1, 12, 0, 0)


# ── Helpers ──────────────────────────────────────────────────────────


def _enqueue(queue: JobQueue, capture_id: int = 42, **kwargs) -> int:
    return queue.enqueue(capture_id, "send_webhook", payload={"id": capture_id}, **kwargs)


# ── Enqueue ──────────────────────────────────────────────────────────


class TestEnqueue:
    def test_enqueue_creates_pending_job(self, queue):
        job_id = _enqueue(queue, priority=3)
        job = queue.get(job_id)
        assert job.status == JobStatus.PENDING.value
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.priority == 3
        assert job.next_eligible_at is None
        assert json.loads(job.payload_json) == {"id": 42}

    def test_enqueue_uses_default_priority(self, queue, settings):
        job = queue.get(_enqueue(queue))
        assert job.priority == settings.queue_default_priority

    def test_unknown_action_rejected(self, queue):
        with pytest.raises(ValueError, match="Unknown job action"):
            queue.enqueue(42, "send_fax")

    def test_registered_action_accepted(self, queue):
        queue.register_action("transcribe")
        job_id = queue.enqueue(42, "transcribe")
        assert queue.get(job_id).action == "transcribe"

    def test_max_attempts_below_one_rejected(self, queue):
        with pytest.raises(ValueError, match="max_attempts"):
            _enqueue(queue, max_attempts=0)

    def test_same_capture_can_have_several_jobs(self, queue):
        first = _enqueue(queue)
        second = _enqueue(queue)
        assert first != second
        assert len(queue.list_jobs(capture_id=42)) == 2


# ── Claim ────────────────────────────────────────────────────────────


class TestClaimBatch:
    def test_claims_lowest_priority_values_first(self, queue):
        """Five pending jobs, limit 3: the three most urgent are claimed."""
        ids = {p: _enqueue(queue, capture_id=100 + p, priority=p) for p in (5, 1, 4, 2, 3)}

        claimed = queue.claim_batch(3, owner="worker-a")

        assert [j.priority for j in claimed] == [1, 2, 3]
        for job in claimed:
            assert job.status == JobStatus.PROCESSING.value
            assert job.claimed_by == "worker-a"
            assert job.claimed_at is not None
        assert queue.get(ids[4]).status == JobStatus.PENDING.value
        assert queue.get(ids[5]).status == JobStatus.PENDING.value

    def test_ties_broken_by_age(self, queue):
        first = _enqueue(queue, capture_id=1)
        second = _enqueue(queue, capture_id=2)
        claimed = queue.claim_batch(1)
        assert [j.id for j in claimed] == [first]
        assert queue.get(second).status == JobStatus.PENDING.value

    def test_claimed_jobs_not_claimed_again(self, queue):
        _enqueue(queue)
        assert len(queue.claim_batch(5)) == 1
        assert queue.claim_batch(5) == []

    def test_empty_queue(self, queue):
        assert queue.claim_batch(5) == []

    def test_zero_limit(self, queue):
        _enqueue(queue)
        assert queue.claim_batch(0) == []

    def test_skips_jobs_not_yet_eligible(self, engine):
        queue = JobQueue(engine, make_settings(queue_retry_base_delay_seconds=60, queue_retry_max_delay_seconds=600))
        job_id = _enqueue(queue)
        queue.claim_batch(1, now=NOW)
        queue.fail(job_id, "HTTP 500", now=NOW)

        assert queue.claim_batch(1, now=NOW + timedelta(seconds=59)) == []
        claimed = queue.claim_batch(1, now=NOW + timedelta(seconds=60))
        assert [j.id for j in claimed] == [job_id]

    def test_terminal_jobs_never_claimed(self, queue):
        done = _enqueue(queue, capture_id=1)
        dead = _enqueue(queue, capture_id=2)
        queue.claim_batch(2)
        queue.complete(done)
        queue.fail(dead, "boom", retry=False)
        assert queue.claim_batch(5) == []


class TestConcurrentClaim:
    def test_no_job_claimed_twice(self, file_engine):
        """Several threads with their own connections drain the queue without overlap."""
        queue = JobQueue(file_engine, make_settings())
        expected = {_enqueue(queue, capture_id=i) for i in range(1, 31)}

        claimed: list[int] = []
        lock = threading.Lock()
        errors: list[Exception] = []

        def _drain(owner: str) -> None:
            try:
                while True:
                    batch = queue.claim_batch(3, owner=owner)
                    if not batch:
                        return
                    with lock:
                        claimed.extend(j.id for j in batch)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=_drain, args=(f"w{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        assert len(claimed) == len(set(claimed))
        assert set(claimed) == expected


# ── Settle ───────────────────────────────────────────────────────────


class TestComplete:
    def test_complete_counts_the_attempt(self, queue):
        job_id = _enqueue(queue)
        queue.claim_batch(1)
        assert queue.complete(job_id) is True

        job = queue.get(job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.attempts == 1
        assert job.completed_at is not None

    def test_complete_requires_processing(self, queue):
        job_id = _enqueue(queue)
        assert queue.complete(job_id) is False
        assert queue.get(job_id).status == JobStatus.PENDING.value

    def test_complete_is_not_repeatable(self, queue):
        job_id = _enqueue(queue)
        queue.claim_batch(1)
        queue.complete(job_id)
        assert queue.complete(job_id) is False
        assert queue.get(job_id).attempts == 1

    def test_complete_rejects_other_owner(self, queue):
        job_id = _enqueue(queue)
        queue.claim_batch(1, owner="worker-a")
        assert queue.complete(job_id, owner="worker-b") is False
        assert queue.get(job_id).status == JobStatus.PROCESSING.value


class TestFail:
    def test_retryable_failure_goes_back_to_pending(self, engine):
        queue = JobQueue(engine, make_settings(queue_retry_base_delay_seconds=30, queue_retry_max_delay_seconds=3600))
        job_id = _enqueue(queue)
        queue.claim_batch(1, now=NOW, owner="worker-a")

        status = queue.fail(job_id, "HTTP 503: unavailable", now=NOW)

        assert status is JobStatus.PENDING
        job = queue.get(job_id)
        assert job.status == JobStatus.PENDING.value
        assert job.attempts == 1
        assert job.last_error == "HTTP 503: unavailable"
        assert job.next_eligible_at == NOW + timedelta(seconds=30)
        assert job.claimed_by is None
        assert job.claimed_at is None

    def test_backoff_grows_between_attempts(self, engine):
        queue = JobQueue(engine, make_settings(queue_max_attempts=5, queue_retry_base_delay_seconds=30, queue_retry_max_delay_seconds=3600))
        job_id = _enqueue(queue)

        queue.claim_batch(1, now=NOW)
        queue.fail(job_id, "first", now=NOW)
        first_wait = queue.get(job_id).next_eligible_at - NOW

        later = NOW + timedelta(hours=1)
        queue.claim_batch(1, now=later)
        queue.fail(job_id, "second", now=later)
        second_wait = queue.get(job_id).next_eligible_at - later

        assert first_wait == timedelta(seconds=30)
        assert second_wait == timedelta(seconds=60)

    def test_exhausted_retries_fail_permanently(self, queue):
        job_id = _enqueue(queue, max_attempts=2)
        queue.claim_batch(1)
        assert queue.fail(job_id, "HTTP 500") is JobStatus.PENDING
        queue.claim_batch(1)
        assert queue.fail(job_id, "HTTP 500 again") is JobStatus.FAILED

        job = queue.get(job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.attempts == 2
        assert job.last_error == "HTTP 500 again"
        assert job.failed_at is not None

    def test_non_retryable_failure_is_immediate(self, queue):
        job_id = _enqueue(queue)
        queue.claim_batch(1)
        assert queue.fail(job_id, "bad payload", retry=False) is JobStatus.FAILED
        job = queue.get(job_id)
        assert job.attempts == 1
        assert job.status == JobStatus.FAILED.value

    def test_fail_requires_processing(self, queue):
        job_id = _enqueue(queue)
        assert queue.fail(job_id, "nope") is None
        assert queue.get(job_id).attempts == 0

    def test_fail_rejects_other_owner(self, queue):
        job_id = _enqueue(queue)
        queue.claim_batch(1, owner="worker-a")
        assert queue.fail(job_id, "x", owner="worker-b") is None
        assert queue.get(job_id).status == JobStatus.PROCESSING.value

    def test_long_error_truncated(self, queue):
        job_id = _enqueue(queue)
        queue.claim_batch(1)
        queue.fail(job_id, "x" * 5000)
        assert len(queue.get(job_id).last_error) == 2000


class TestTimestamps:
    @pytest.mark.parametrize(
        "column",
        ["next_eligible_at", "claimed_at", "completed_at", "failed_at", "created_at", "updated_at"],
    )
    def test_columns_are_plain_datetime(self, column):
        assert type(QueueJob.__table__.c[column].type) is DateTime

    def test_naive_utc_round_trip(self, engine):
        queue = JobQueue(engine, make_settings(queue_retry_base_delay_seconds=30, queue_retry_max_delay_seconds=3600))
        before = utcnow()
        job_id = _enqueue(queue)
        queue.claim_batch(1, now=NOW, owner="worker-a")
        queue.fail(job_id, "HTTP 500", now=NOW)

        job = queue.get(job_id)
        assert job.created_at.tzinfo is None
        assert job.created_at >= before
        assert job.next_eligible_at == NOW + timedelta(seconds=30)
        assert job.next_eligible_at.tzinfo is None


# ── Stale reclaim ────────────────────────────────────────────────────


class TestReclaimStale:
    def test_stale_job_requeued_as_failed_attempt(self, queue):
        job_id = _enqueue(queue)
        queue.claim_batch(1, now=NOW, owner="crashed")

        result = queue.reclaim_stale(300, now=NOW + timedelta(seconds=301))

        assert result.requeued == [job_id]
        assert result.failed == []
        job = queue.get(job_id)
        assert job.status == JobStatus.PENDING.value
        assert job.attempts == 1
        assert job.last_error == "Processing timeout"
        assert job.claimed_by is None

    def test_fresh_job_left_alone(self, queue):
        job_id = _enqueue(queue)
        queue.claim_batch(1, now=NOW)
        result = queue.reclaim_stale(300, now=NOW + timedelta(seconds=299))
        assert result.total == 0
        assert queue.get(job_id).status == JobStatus.PROCESSING.value

    def test_stale_job_on_last_attempt_fails(self, queue):
        job_id = _enqueue(queue, max_attempts=1)
        queue.claim_batch(1, now=NOW)
        result = queue.reclaim_stale(300, now=NOW + timedelta(minutes=10))
        assert result.failed == [job_id]
        job = queue.get(job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.attempts == 1

    def test_stale_owner_cannot_settle_after_reclaim(self, queue):
        job_id = _enqueue(queue)
        queue.claim_batch(1, now=NOW, owner="slow")
        queue.reclaim_stale(300, now=NOW + timedelta(minutes=10))
        queue.claim_batch(1, now=NOW + timedelta(minutes=10), owner="fresh")

        assert queue.complete(job_id, owner="slow") is False
        assert queue.complete(job_id, owner="fresh") is True


# ── Operator / housekeeping ──────────────────────────────────────────


class TestMarkFailed:
    def test_pending_job_can_be_abandoned(self, queue):
        job_id = _enqueue(queue)
        assert queue.mark_failed(job_id, "capture deleted") is True
        job = queue.get(job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.last_error == "capture deleted"
        assert queue.claim_batch(5) == []

    def test_terminal_job_untouched(self, queue):
        job_id = _enqueue(queue)
        queue.claim_batch(1)
        queue.complete(job_id)
        assert queue.mark_failed(job_id) is False
        assert queue.get(job_id).status == JobStatus.COMPLETED.value

    def test_missing_job(self, queue):
        assert queue.mark_failed(9999) is False


class TestPurgeTerminal:
    def test_only_old_terminal_jobs_deleted(self, queue):
        done = _enqueue(queue, capture_id=1)
        pending = _enqueue(queue, capture_id=2)
        queue.claim_batch(1)
        queue.complete(done, now=NOW)

        assert queue.purge_terminal(NOW + timedelta(days=1)) == 1
        assert queue.get(done) is None
        assert queue.get(pending) is not None

    def test_recent_terminal_jobs_kept(self, queue):
        done = _enqueue(queue)
        queue.claim_batch(1)
        queue.complete(done, now=NOW)
        assert queue.purge_terminal(NOW - timedelta(days=1)) == 0


class TestQueries:
    def test_list_jobs_filters(self, queue):
        a = _enqueue(queue, capture_id=1)
        b = _enqueue(queue, capture_id=2)
        queue.claim_batch(1)

        assert [j.id for j in queue.list_jobs(status="processing")] == [a]
        assert [j.id for j in queue.list_jobs(capture_id=2)] == [b]
        assert [j.id for j in queue.list_jobs()] == [b, a]
        assert [j.id for j in queue.list_jobs(limit=1, offset=1)] == [a]

    def test_has_open_job(self, queue):
        job_id = _enqueue(queue)
        assert queue.has_open_job(42, "send_webhook") is True
        assert queue.has_open_job(42, "process_media") is False
        queue.claim_batch(1)
        assert queue.has_open_job(42, "send_webhook") is True
        queue.complete(job_id)
        assert queue.has_open_job(42, "send_webhook") is False

    def test_stats(self, queue):
        ok = _enqueue(queue, capture_id=1)
        bad = _enqueue(queue, capture_id=2)
        retrying = _enqueue(queue, capture_id=3)
        _enqueue(queue, capture_id=4)
        queue.claim_batch(3)
        queue.complete(ok)
        queue.fail(bad, "HTTP 410", retry=False)
        queue.fail(retrying, "HTTP 502")

        stats = queue.stats()
        assert stats["pending"] == 2
        assert stats["processing"] == 0
        assert stats["completed"] == 1
        assert stats["failed"] == 1
        assert stats["total"] == 4
        assert stats["success_rate"] == 50.0
        assert stats["pending_retries"] == 1
        assert stats["recent_failures"][0]["id"] == bad
        assert stats["recent_failures"][0]["last_error"] == "HTTP 410"

    def test_stats_empty(self, queue):
        stats = queue.stats()
        assert stats["total"] == 0
        assert stats["success_rate"] == 0.0
        assert stats["recent_failures"] == []
