"""Test the Redis job store."""

import pytest

from app.queue import JobState, JobType, QueueConfig, RetryPolicy
from app.queue.store import JobStore

QUEUE = "transaction-sync"


@pytest.fixture
def job_store(redis_client, clock):
    """Store with one queue: 3 attempts, 2s base backoff, 60s lease."""
    queues = {
        QUEUE: QueueConfig(
            name=QUEUE,
            retry=RetryPolicy(max_attempts=3, base_delay=2.0, max_delay=300.0),
            lease_seconds=60,
        )
    }
    return JobStore(redis_client, queues, prefix="test", completed_retention=2, clock=clock)


def enqueue(store, name, **kwargs):
    return store.enqueue(QUEUE, JobType.SYNC, {"name": name}, **kwargs)


class TestRetryPolicy:
    """Test backoff arithmetic."""

    def test_delay_doubles_and_caps(self):
        policy = RetryPolicy(max_attempts=10, base_delay=2.0, max_delay=10.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [2.0, 4.0, 8.0, 10.0, 10.0]

    def test_should_retry_until_max_attempts(self):
        policy = RetryPolicy(max_attempts=3)
        assert policy.should_retry(2)
        assert not policy.should_retry(3)

    def test_rejects_invalid_settings(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(base_delay=10.0, max_delay=1.0)


class TestOrdering:
    """Test priority, FIFO and delayed eligibility."""

    def test_higher_priority_first_then_fifo(self, job_store):
        low = enqueue(job_store, "low", priority=0)
        high_1 = enqueue(job_store, "high-1", priority=10)
        high_2 = enqueue(job_store, "high-2", priority=10)
        mid = enqueue(job_store, "mid", priority=5)

        claimed = [job_store.claim(QUEUE, "w1").id for _ in range(4)]
        assert claimed == [high_1, high_2, mid, low]
        assert job_store.claim(QUEUE, "w1") is None

    def test_delayed_job_waits_for_its_delay(self, job_store, clock):
        job_id = enqueue(job_store, "later", delay=30)
        assert job_store.get_job(QUEUE, job_id).state is JobState.DELAYED
        assert job_store.claim(QUEUE, "w1") is None

        clock.advance(31)
        job = job_store.claim(QUEUE, "w1")
        assert job.id == job_id
        assert job.state is JobState.ACTIVE

    def test_rejects_unknown_queue_and_bad_priority(self, job_store):
        with pytest.raises(ValueError):
            job_store.enqueue("nope", JobType.SYNC, {})
        with pytest.raises(ValueError):
            enqueue(job_store, "too-high", priority=101)


class TestDedup:
    """Test coalescing of jobs sharing a dedup key."""

    def test_pending_job_is_reused(self, job_store):
        first = enqueue(job_store, "a", dedup_key="sync:c1")
        second = enqueue(job_store, "b", dedup_key="sync:c1")

        assert first == second
        assert job_store.stats(QUEUE)["waiting"] == 1

    def test_submit_reports_whether_job_was_created(self, job_store):
        created = job_store.submit(QUEUE, JobType.SYNC, {}, dedup_key="sync:c1")
        coalesced = job_store.submit(QUEUE, JobType.SYNC, {}, dedup_key="sync:c1")

        assert created[1] is True
        assert coalesced == (created[0], False)

    def test_higher_priority_request_promotes_pending_job(self, job_store):
        other = enqueue(job_store, "other", priority=5)
        coalesced = enqueue(job_store, "a", priority=0, dedup_key="sync:c1")
        enqueue(job_store, "a-again", priority=10, dedup_key="sync:c1")

        assert job_store.get_job(QUEUE, coalesced).priority == 10
        assert job_store.claim(QUEUE, "w1").id == coalesced
        assert job_store.claim(QUEUE, "w1").id == other

    def test_claimed_job_no_longer_coalesces(self, job_store):
        first = enqueue(job_store, "a", dedup_key="sync:c1")
        job_store.claim(QUEUE, "w1")

        second = enqueue(job_store, "b", dedup_key="sync:c1")
        assert second != first


class TestLifecycle:
    """Test claim, complete, fail, defer and lease recovery."""

    def test_claim_leases_and_counts_attempt(self, job_store, clock):
        job_id = enqueue(job_store, "a", connection_id="c1")
        job = job_store.claim(QUEUE, "w1")

        assert job.id == job_id
        assert job.attempts == 1
        assert job.worker_id == "w1"
        assert job.lease_token
        assert job.connection_id == "c1"
        assert job.lease_until.timestamp() == pytest.approx(clock() + 60, abs=0.01)

    def test_claimed_job_invisible_to_other_workers(self, job_store):
        enqueue(job_store, "a")
        assert job_store.claim(QUEUE, "w1") is not None
        assert job_store.claim(QUEUE, "w2") is None

    def test_complete_stores_result_and_trims(self, job_store, clock):
        ids = [enqueue(job_store, str(i)) for i in range(3)]
        for _ in ids:
            job_store.complete(job_store.claim(QUEUE, "w1"), {"ok": True})
            clock.advance(1)

        stats = job_store.stats(QUEUE)
        assert stats["completed"] == 2
        assert job_store.get_job(QUEUE, ids[0]) is None
        finished = job_store.get_job(QUEUE, ids[2])
        assert finished.state is JobState.COMPLETED
        assert finished.result == {"ok": True}

    def test_failures_back_off_then_dead_letter(self, job_store, clock):
        job_id = enqueue(job_store, "flaky")

        job = job_store.claim(QUEUE, "w1")
        assert job_store.fail(job, "boom 1") is JobState.DELAYED
        assert job_store.claim(QUEUE, "w1") is None
        clock.advance(2)

        job = job_store.claim(QUEUE, "w1")
        assert job.attempts == 2
        assert job_store.fail(job, "boom 2") is JobState.DELAYED
        clock.advance(3)
        assert job_store.claim(QUEUE, "w1") is None
        clock.advance(1)

        job = job_store.claim(QUEUE, "w1")
        assert job.attempts == 3
        assert job_store.fail(job, "boom 3") is JobState.DEAD

        dead = job_store.list_jobs(QUEUE, JobState.DEAD)
        assert [j.id for j in dead] == [job_id]
        assert dead[0].last_error == "boom 3"
        assert job_store.stats(QUEUE)["failed"] == 1

    def test_permanent_failure_skips_retries(self, job_store):
        enqueue(job_store, "bad")
        job = job_store.claim(QUEUE, "w1")

        assert job_store.fail(job, "revoked", permanent=True) is JobState.DEAD
        assert job_store.stats(QUEUE)["delayed"] == 0

    def test_defer_does_not_consume_attempt(self, job_store, clock):
        job_id = enqueue(job_store, "busy")
        job = job_store.claim(QUEUE, "w1")

        assert job_store.defer(job, 5)
        deferred = job_store.get_job(QUEUE, job_id)
        assert deferred.state is JobState.DELAYED
        assert deferred.attempts == 0

        clock.advance(5)
        assert job_store.claim(QUEUE, "w1").attempts == 1

    def test_expired_lease_is_reclaimed_and_stale_ack_rejected(self, job_store, clock):
        job_id = enqueue(job_store, "slow")
        stale = job_store.claim(QUEUE, "w1")

        assert job_store.recover_expired(QUEUE) == []
        clock.advance(61)
        assert job_store.recover_expired(QUEUE) == [job_id]

        reclaimed = job_store.get_job(QUEUE, job_id)
        assert reclaimed.state is JobState.DELAYED
        assert reclaimed.last_error == "lease expired"

        clock.advance(2)
        fresh = job_store.claim(QUEUE, "w2")
        assert fresh.attempts == 2

        assert job_store.complete(stale) is False
        assert job_store.fail(stale, "late failure") is None
        assert job_store.complete(fresh) is True


class TestRateLimit:
    """Test the per-queue cap on claims within a time window."""

    @pytest.fixture
    def limited_store(self, redis_client, clock):
        queues = {
            QUEUE: QueueConfig(name=QUEUE, rate_limit_max=2, rate_limit_window_seconds=60)
        }
        return JobStore(redis_client, queues, prefix="limited", clock=clock)

    def test_claims_pause_once_window_is_full(self, limited_store, clock):
        ids = [enqueue(limited_store, str(i)) for i in range(3)]

        first = limited_store.claim(QUEUE, "w1")
        clock.advance(10)
        second = limited_store.claim(QUEUE, "w1")
        assert [first.id, second.id] == ids[:2]
        assert limited_store.claim(QUEUE, "w1") is None
        assert limited_store.stats(QUEUE)["waiting"] == 1

        # The first claim leaves the window; the second one still counts.
        clock.advance(51)
        assert limited_store.claim(QUEUE, "w1").id == ids[2]

    def test_finished_jobs_still_count_against_window(self, limited_store):
        enqueue(limited_store, "a")
        enqueue(limited_store, "b")
        enqueue(limited_store, "c")

        for _ in range(2):
            limited_store.complete(limited_store.claim(QUEUE, "w1"))

        assert limited_store.claim(QUEUE, "w1") is None

    def test_empty_queue_does_not_use_budget(self, limited_store):
        for _ in range(5):
            assert limited_store.claim(QUEUE, "w1") is None

        enqueue(limited_store, "a")
        enqueue(limited_store, "b")
        assert limited_store.claim(QUEUE, "w1") is not None
        assert limited_store.claim(QUEUE, "w1") is not None

    def test_unlimited_by_default(self, job_store):
        for i in range(15):
            enqueue(job_store, str(i))

        assert all(job_store.claim(QUEUE, "w1") is not None for _ in range(15))


def test_sync_queue_uses_configured_rate_limit(settings):
    from app.queue.policy import build_queue_configs

    config = build_queue_configs(settings)[QUEUE]
    assert config.rate_limit_max == settings.sync_rate_limit_max == 10
    assert config.rate_limit_window_seconds == 60


def test_ping(job_store):
    assert job_store.ping() is True
