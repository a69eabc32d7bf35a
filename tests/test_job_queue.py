import os
import sys
from types import SimpleNamespace

import fakeredis
import pytest
import redis

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from config.settings import Settings
from services.errors import InputError, QueueUnavailableError
from services.job_queue import (
    EXPIRY_QUEUE,
    FULFILLMENT_QUEUE,
    MATCHING_QUEUE,
    InMemoryQueueBackend,
    JobQueue,
    QueueJob,
    QueueManager,
    QueuePolicy,
    RedisQueueBackend,
    WorkerPool,
    build_queue_backend,
    fulfillment_job_id,
    matching_job_id,
)


class FakeTime:
    def __init__(self, start=1_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeTime()


@pytest.fixture(params=["memory", "redis"])
def backend(request):
    if request.param == "memory":
        return InMemoryQueueBackend()
    return RedisQueueBackend(fakeredis.FakeRedis(), prefix="test:queue")


def _queue(clock, backend, **policy):
    values = dict(attempts=3, backoff_seconds=2.0, keep_completed=10, keep_failed=10, concurrency=1)
    values.update(policy)
    return JobQueue("matching", backend, QueuePolicy(**values), clock=clock)


def test_job_ids_are_derived_from_logical_target():
    assert matching_job_id("R1") == "match-request-R1"
    assert fulfillment_job_id("R1", "C7") == "fulfil-R1-C7"
    assert fulfillment_job_id("R1", None) == "fulfil-R1-unmatched"


def test_adding_same_job_id_twice_is_idempotent(clock, backend):
    queue = _queue(clock, backend)
    first = queue.add("match", {"request_id": "R1"}, "match-request-R1")
    second = queue.add("match", {"request_id": "R1"}, "match-request-R1")

    assert first.status == "queued"
    assert second.already_queued
    assert queue.counts()["waiting"] == 1


def test_running_job_still_counts_as_queued(clock, backend):
    queue = _queue(clock, backend)
    queue.add("match", {}, "job-1")
    job = queue.claim()

    assert queue.add("match", {}, "job-1").already_queued
    queue.complete(job, {"ok": True})
    assert queue.add("match", {}, "job-1").status == "queued"


def test_lower_priority_value_is_claimed_first(clock, backend):
    queue = _queue(clock, backend)
    queue.add("refresh", {}, "routine", priority=5)
    queue.add("refresh", {}, "onboarding", priority=1)
    queue.add("refresh", {}, "routine-2", priority=5)

    assert [queue.claim().job_id for _ in range(3)] == ["onboarding", "routine", "routine-2"]
    assert queue.claim() is None


def test_delayed_job_waits_until_due(clock, backend):
    queue = _queue(clock, backend)
    queue.add("expire", {}, "expire-request-R1", delay=30)

    assert queue.claim() is None
    clock.advance(30)
    assert queue.claim().job_id == "expire-request-R1"


def test_backoff_is_exponential():
    policy = QueuePolicy(backoff_seconds=2.0)
    assert [policy.backoff_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]


def test_failed_job_is_retried_after_backoff_then_fails_permanently(clock, backend):
    queue = _queue(clock, backend, attempts=2)
    queue.add("match", {}, "job-1")

    job = queue.claim()
    assert queue.fail(job, "boom") == "retrying"
    assert queue.claim() is None
    clock.advance(2.0)

    job = queue.claim()
    assert job.attempts_made == 1
    assert queue.fail(job, "boom again") == "failed"

    failed = queue.history("failed")
    assert [entry.job_id for entry in failed] == ["job-1"]
    assert failed[0].error == "boom again"
    assert queue.get("job-1").state == "failed"


def test_non_retryable_failure_skips_retries(clock, backend):
    queue = _queue(clock, backend, attempts=5)
    queue.add("match", {}, "job-1")
    assert queue.fail(queue.claim(), "bad input", retryable=False) == "failed"


def test_history_is_capped_newest_first(clock, backend):
    queue = _queue(clock, backend, keep_completed=2)
    for index in range(3):
        queue.add("match", {}, f"job-{index}")
        queue.complete(queue.claim())

    assert [job.job_id for job in queue.history("completed")] == ["job-2", "job-1"]
    assert queue.counts()["completed"] == 2


def test_remove_only_affects_jobs_that_are_not_running(clock, backend):
    queue = _queue(clock, backend)
    queue.add("fulfil", {}, "waiting")
    queue.add("fulfil", {}, "running", priority=1)
    queue.claim()

    assert queue.remove("running") is False
    assert queue.remove("waiting") is True
    assert queue.remove("waiting") is False


def test_worker_completes_successful_jobs(clock, backend):
    queue = _queue(clock, backend)
    queue.add("match", {"request_id": "R1"}, "job-1")
    pool = WorkerPool(queue, lambda job: {"handled": job.data["request_id"]})

    assert pool.process_next() is True
    assert pool.process_next() is False
    assert queue.history("completed")[0].result == {"handled": "R1"}


def test_worker_does_not_retry_input_errors(clock, backend):
    def handler(_job):
        raise InputError("request has no embedding")

    queue = _queue(clock, backend)
    queue.add("match", {}, "job-1")
    WorkerPool(queue, handler).process_next()

    assert queue.history("failed")[0].attempts_made == 1
    assert queue.counts()["delayed"] == 0


def test_worker_retries_unexpected_errors(clock, backend):
    def handler(_job):
        raise RuntimeError("database hiccup")

    queue = _queue(clock, backend)
    queue.add("match", {}, "job-1")
    WorkerPool(queue, handler).process_next()

    assert queue.counts()["delayed"] == 1
    assert queue.get("job-1").error == "database hiccup"


def test_queue_manager_builds_named_queues_from_settings(clock):
    settings = Settings(fulfillment_attempts=4, fulfillment_backoff_seconds=7.0)
    manager = QueueManager.from_settings(settings, InMemoryQueueBackend(), clock=clock)

    assert set(manager.names()) == {MATCHING_QUEUE, "embedding", FULFILLMENT_QUEUE, EXPIRY_QUEUE}
    fulfillment = manager.queue(FULFILLMENT_QUEUE)
    assert fulfillment.policy.attempts == 4
    assert fulfillment.policy.backoff_seconds == 7.0
    with pytest.raises(KeyError):
        manager.queue("unknown")

    pool = manager.register_handler(MATCHING_QUEUE, lambda job: None)
    assert pool.concurrency == settings.matching_concurrency
    assert fulfillment.policy.lease_seconds == settings.queue_lease_seconds


def test_queue_job_json_round_trip():
    job = QueueJob(job_id="j", queue="q", name="n", data={"a": 1}, priority=2)
    assert QueueJob.from_json(job.to_json().encode()) == job


def test_job_abandoned_by_dead_worker_is_handed_out_again(clock, backend):
    queue = _queue(clock, backend, lease_seconds=60)
    queue.add("match", {"request_id": "R1"}, "match-request-R1")
    assert queue.claim().job_id == "match-request-R1"

    # The worker died without completing; resubmitting is still a no-op.
    assert queue.add("match", {"request_id": "R1"}, "match-request-R1").already_queued
    clock.advance(30)
    assert queue.claim() is None

    clock.advance(31)
    assert queue.claim() is None
    assert queue.counts()["delayed"] == 1
    clock.advance(2.0)

    job = queue.claim()
    assert job.job_id == "match-request-R1"
    assert job.attempts_made == 1
    assert job.data == {"request_id": "R1"}
    assert "lease expired" in job.error


def test_abandoned_job_out_of_attempts_lands_in_failed_history(clock, backend):
    queue = _queue(clock, backend, attempts=1, lease_seconds=60)
    queue.add("match", {}, "match-request-R1")
    queue.claim()
    clock.advance(61)

    assert queue.claim() is None
    failed = queue.history("failed")
    assert [entry.job_id for entry in failed] == ["match-request-R1"]
    assert queue.counts()["active"] == 0
    assert queue.add("match", {}, "match-request-R1").status == "queued"


def test_restarted_process_recovers_jobs_claimed_before_crash(clock):
    server = fakeredis.FakeServer()
    crashed = _queue(clock, RedisQueueBackend(fakeredis.FakeRedis(server=server)), lease_seconds=60)
    crashed.add("match", {"request_id": "R1"}, "match-request-R1")
    crashed.claim()

    restarted = _queue(clock, RedisQueueBackend(fakeredis.FakeRedis(server=server)), lease_seconds=60)
    assert restarted.add("match", {"request_id": "R1"}, "match-request-R1").already_queued
    assert restarted.counts()["active"] == 1

    clock.advance(61)
    assert restarted.claim() is None
    clock.advance(2.0)
    job = restarted.claim()
    assert job.job_id == "match-request-R1"
    assert restarted.counts()["active"] == 1


class BrokenRedis:
    def register_script(self, _script):
        def run(keys=None, args=None):
            raise redis.ConnectionError("connection refused")

        return run

    def zrangebyscore(self, _key, _low, _high):
        raise redis.ConnectionError("connection refused")

    def get(self, _key):
        raise redis.ConnectionError("connection refused")


def test_redis_backend_errors_surface_as_queue_unavailable(clock):
    queue = JobQueue("matching", RedisQueueBackend(BrokenRedis()), QueuePolicy(), clock=clock)

    with pytest.raises(QueueUnavailableError):
        queue.add("match", {}, "job-1")
    with pytest.raises(QueueUnavailableError):
        queue.claim()


def test_build_queue_backend_prefers_redis_client():
    settings = SimpleNamespace(queue_key_prefix="test:queue")
    assert isinstance(build_queue_backend(settings, None), InMemoryQueueBackend)
    backend = build_queue_backend(settings, BrokenRedis())
    assert isinstance(backend, RedisQueueBackend)
    assert backend._key("matching", "waiting") == "test:queue:matching:waiting"
