"""Named durable job queues with idempotent job ids, bounded retries and worker pools.

A job id is derived from the job's logical target (``match-request-R1``,
``fulfil-R1-C7``) so adding the same logical job while it is waiting,
delayed or running is a no-op that reports ``already_queued``.  Failures are
retried with exponential backoff up to the queue's attempt bound and
finished jobs are kept in capped history lists.  A claim holds a lease; a job
whose worker vanished is handed out again once the lease runs out.
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

import redis

from services.errors import InputError, QueueUnavailableError

logger = logging.getLogger(__name__)

MATCHING_QUEUE = "matching"
EMBEDDING_QUEUE = "embedding"
FULFILLMENT_QUEUE = "fulfillment"
EXPIRY_QUEUE = "deadline-expiry"

_PRIORITY_SCALE = 10 ** 13


def matching_job_id(request_id: str) -> str:
    return f"match-request-{request_id}"


def embedding_job_id(candidate_id: str) -> str:
    return f"embed-candidate-{candidate_id}"


def fulfillment_job_id(request_id: str, candidate_id: Optional[str]) -> str:
    return f"fulfil-{request_id}-{candidate_id or 'unmatched'}"


def expiry_job_id(request_id: str) -> str:
    return f"expire-request-{request_id}"


@dataclass
class QueuePolicy:
    attempts: int = 3
    backoff_seconds: float = 2.0
    keep_completed: int = 100
    keep_failed: int = 50
    concurrency: int = 1
    lease_seconds: float = 300.0

    @classmethod
    def from_settings(cls, settings, prefix: str) -> "QueuePolicy":
        return cls(
            attempts=int(getattr(settings, f"{prefix}_attempts")),
            backoff_seconds=float(getattr(settings, f"{prefix}_backoff_seconds")),
            keep_completed=int(getattr(settings, f"{prefix}_keep_completed")),
            keep_failed=int(getattr(settings, f"{prefix}_keep_failed")),
            concurrency=int(getattr(settings, f"{prefix}_concurrency")),
            lease_seconds=float(settings.queue_lease_seconds),
        )

    def backoff_for(self, attempts_made: int) -> float:
        return self.backoff_seconds * (2 ** max(0, attempts_made - 1))


@dataclass
class QueueJob:
    job_id: str
    queue: str
    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    priority: int = 5
    attempts_made: int = 0
    max_attempts: int = 3
    state: str = "waiting"
    run_at: float = 0.0
    created_at: float = 0.0
    finished_at: Optional[float] = None
    result: Any = None
    error: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, raw: Any) -> "QueueJob":
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode()
        return cls(**json.loads(raw))


@dataclass
class EnqueueResult:
    job_id: str
    status: str

    @property
    def already_queued(self) -> bool:
        return self.status == "already_queued"


class InMemoryQueueBackend:
    """Lock-protected process-local backend."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._live: Dict[str, Dict[str, QueueJob]] = {}
        self._history: Dict[str, Dict[str, List[QueueJob]]] = {}
        self._sequence = itertools.count()
        self._order: Dict[str, int] = {}
        self._leases: Dict[str, float] = {}

    def _jobs(self, queue: str) -> Dict[str, QueueJob]:
        return self._live.setdefault(queue, {})

    def add_if_absent(self, job: QueueJob) -> bool:
        with self._lock:
            jobs = self._jobs(job.queue)
            if job.job_id in jobs:
                return False
            jobs[job.job_id] = job
            self._order[f"{job.queue}:{job.job_id}"] = next(self._sequence)
            return True

    def recover_stalled(self, queue: str, now: float) -> List[QueueJob]:
        with self._lock:
            stalled = []
            for job in self._jobs(queue).values():
                key = f"{queue}:{job.job_id}"
                if job.state == "active" and self._leases.get(key, now + 1) <= now:
                    del self._leases[key]
                    stalled.append(QueueJob(**asdict(job)))
            return stalled

    def claim(self, queue: str, now: float, lease_until: float) -> Optional[QueueJob]:
        with self._lock:
            jobs = self._jobs(queue)
            for job in jobs.values():
                if job.state == "delayed" and job.run_at <= now:
                    job.state = "waiting"
            ready = [job for job in jobs.values() if job.state == "waiting"]
            if not ready:
                return None
            job = min(
                ready,
                key=lambda item: (item.priority, self._order[f"{queue}:{item.job_id}"]),
            )
            job.state = "active"
            self._leases[f"{queue}:{job.job_id}"] = lease_until
            return QueueJob(**asdict(job))

    def retry(self, job: QueueJob) -> None:
        with self._lock:
            jobs = self._jobs(job.queue)
            job.state = "delayed"
            jobs[job.job_id] = job
            self._order[f"{job.queue}:{job.job_id}"] = next(self._sequence)
            self._leases.pop(f"{job.queue}:{job.job_id}", None)

    def finish(self, job: QueueJob, keep: int) -> None:
        with self._lock:
            self._jobs(job.queue).pop(job.job_id, None)
            self._order.pop(f"{job.queue}:{job.job_id}", None)
            self._leases.pop(f"{job.queue}:{job.job_id}", None)
            history = self._history.setdefault(job.queue, {}).setdefault(job.state, [])
            history.insert(0, job)
            del history[keep:]

    def get(self, queue: str, job_id: str) -> Optional[QueueJob]:
        with self._lock:
            job = self._jobs(queue).get(job_id)
            if job is not None:
                return QueueJob(**asdict(job))
            for entries in self._history.get(queue, {}).values():
                for entry in entries:
                    if entry.job_id == job_id:
                        return QueueJob(**asdict(entry))
        return None

    def remove(self, queue: str, job_id: str) -> bool:
        with self._lock:
            jobs = self._jobs(queue)
            job = jobs.get(job_id)
            if job is None or job.state == "active":
                return False
            jobs.pop(job_id)
            self._order.pop(f"{queue}:{job_id}", None)
            return True

    def counts(self, queue: str) -> Dict[str, int]:
        with self._lock:
            counts = {"waiting": 0, "delayed": 0, "active": 0}
            for job in self._jobs(queue).values():
                counts[job.state] = counts.get(job.state, 0) + 1
            for state, entries in self._history.get(queue, {}).items():
                counts[state] = len(entries)
            return counts

    def history(self, queue: str, state: str) -> List[QueueJob]:
        with self._lock:
            return [QueueJob(**asdict(job)) for job in self._history.get(queue, {}).get(state, [])]


_ADD_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return 0
end
local seq = redis.call('INCR', KEYS[4])
local rank = tonumber(ARGV[2]) * 10000000000000 + seq
redis.call('SET', KEYS[1], ARGV[1])
redis.call('HSET', KEYS[5], ARGV[4], rank)
if tonumber(ARGV[3]) > 0 then
    redis.call('ZADD', KEYS[3], ARGV[3], ARGV[4])
else
    redis.call('ZADD', KEYS[2], rank, ARGV[4])
end
return 1
"""

_CLAIM_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, id in ipairs(due) do
    redis.call('ZREM', KEYS[2], id)
    local rank = redis.call('HGET', KEYS[4], id)
    if rank then
        redis.call('ZADD', KEYS[1], rank, id)
    end
end
local ids = redis.call('ZRANGE', KEYS[1], 0, 0)
if #ids == 0 then
    return false
end
redis.call('ZREM', KEYS[1], ids[1])
redis.call('ZADD', KEYS[3], ARGV[2], ids[1])
return ids[1]
"""


class RedisQueueBackend:
    """Redis backend: job payload strings, waiting/delayed sorted sets, capped history lists.

    Running jobs sit in an ``active`` sorted set scored by their lease expiry,
    so jobs claimed by a worker that died are found and handed out again.
    """

    def __init__(self, client, *, prefix: str = "quotebridge:queue") -> None:
        self.client = client
        self.prefix = prefix
        self._add = client.register_script(_ADD_SCRIPT)
        self._claim = client.register_script(_CLAIM_SCRIPT)

    def _key(self, queue: str, suffix: str) -> str:
        return f"{self.prefix}:{queue}:{suffix}"

    def _job_key(self, queue: str, job_id: str) -> str:
        return self._key(queue, f"job:{job_id}")

    def _call(self, func: Callable[[], Any]) -> Any:
        try:
            return func()
        except redis.RedisError as exc:
            raise QueueUnavailableError(f"Redis queue backend unavailable: {exc}") from exc

    def add_if_absent(self, job: QueueJob) -> bool:
        delay_until = job.run_at if job.state == "delayed" else 0
        keys = [
            self._job_key(job.queue, job.job_id),
            self._key(job.queue, "waiting"),
            self._key(job.queue, "delayed"),
            self._key(job.queue, "seq"),
            self._key(job.queue, "rank"),
        ]
        args = [job.to_json(), job.priority, delay_until, job.job_id]
        return bool(self._call(lambda: self._add(keys=keys, args=args)))

    def recover_stalled(self, queue: str, now: float) -> List[QueueJob]:
        active_key = self._key(queue, "active")
        expired = self._call(lambda: self.client.zrangebyscore(active_key, "-inf", now))
        stalled = []
        for raw_id in expired:
            job_id = raw_id.decode() if isinstance(raw_id, bytes) else raw_id
            # Whoever removes the lease entry owns the recovery.
            if not self._call(lambda: self.client.zrem(active_key, job_id)):
                continue
            raw = self._call(lambda: self.client.get(self._job_key(queue, job_id)))
            if raw is not None:
                stalled.append(QueueJob.from_json(raw))
        return stalled

    def claim(self, queue: str, now: float, lease_until: float) -> Optional[QueueJob]:
        keys = [
            self._key(queue, "waiting"),
            self._key(queue, "delayed"),
            self._key(queue, "active"),
            self._key(queue, "rank"),
        ]
        job_id = self._call(lambda: self._claim(keys=keys, args=[now, lease_until]))
        if not job_id:
            return None
        if isinstance(job_id, bytes):
            job_id = job_id.decode()
        raw = self._call(lambda: self.client.get(self._job_key(queue, job_id)))
        if raw is None:
            self._call(lambda: self.client.zrem(self._key(queue, "active"), job_id))
            return None
        job = QueueJob.from_json(raw)
        job.state = "active"
        self._call(lambda: self.client.set(self._job_key(queue, job_id), job.to_json()))
        return job

    def retry(self, job: QueueJob) -> None:
        job.state = "delayed"
        pipe = self.client.pipeline()
        pipe.set(self._job_key(job.queue, job.job_id), job.to_json())
        pipe.zrem(self._key(job.queue, "active"), job.job_id)
        pipe.zadd(self._key(job.queue, "delayed"), {job.job_id: job.run_at})
        self._call(pipe.execute)

    def finish(self, job: QueueJob, keep: int) -> None:
        history_key = self._key(job.queue, job.state)
        pipe = self.client.pipeline()
        pipe.delete(self._job_key(job.queue, job.job_id))
        pipe.zrem(self._key(job.queue, "active"), job.job_id)
        pipe.hdel(self._key(job.queue, "rank"), job.job_id)
        pipe.lpush(history_key, job.to_json())
        pipe.ltrim(history_key, 0, max(0, keep - 1))
        self._call(pipe.execute)

    def get(self, queue: str, job_id: str) -> Optional[QueueJob]:
        raw = self._call(lambda: self.client.get(self._job_key(queue, job_id)))
        if raw is not None:
            return QueueJob.from_json(raw)
        for state in ("completed", "failed"):
            for entry in self.history(queue, state):
                if entry.job_id == job_id:
                    return entry
        return None

    def remove(self, queue: str, job_id: str) -> bool:
        lease = self._call(lambda: self.client.zscore(self._key(queue, "active"), job_id))
        if lease is not None:
            return False
        pipe = self.client.pipeline()
        pipe.delete(self._job_key(queue, job_id))
        pipe.zrem(self._key(queue, "waiting"), job_id)
        pipe.zrem(self._key(queue, "delayed"), job_id)
        pipe.hdel(self._key(queue, "rank"), job_id)
        results = self._call(pipe.execute)
        return bool(results[0])

    def counts(self, queue: str) -> Dict[str, int]:
        pipe = self.client.pipeline()
        pipe.zcard(self._key(queue, "waiting"))
        pipe.zcard(self._key(queue, "delayed"))
        pipe.zcard(self._key(queue, "active"))
        pipe.llen(self._key(queue, "completed"))
        pipe.llen(self._key(queue, "failed"))
        waiting, delayed, active, completed, failed = self._call(pipe.execute)
        return {
            "waiting": int(waiting),
            "delayed": int(delayed),
            "active": int(active),
            "completed": int(completed),
            "failed": int(failed),
        }

    def history(self, queue: str, state: str) -> List[QueueJob]:
        raw_entries = self._call(lambda: self.client.lrange(self._key(queue, state), 0, -1))
        return [QueueJob.from_json(raw) for raw in raw_entries]


class JobQueue:
    def __init__(
        self,
        name: str,
        backend,
        policy: Optional[QueuePolicy] = None,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.name = name
        self.backend = backend
        self.policy = policy or QueuePolicy()
        self._clock = clock or time.time

    def add(
        self,
        job_name: str,
        data: Optional[Dict[str, Any]],
        job_id: str,
        *,
        priority: int = 5,
        delay: float = 0.0,
    ) -> EnqueueResult:
        now = self._clock()
        job = QueueJob(
            job_id=job_id,
            queue=self.name,
            name=job_name,
            data=dict(data or {}),
            priority=int(priority),
            max_attempts=self.policy.attempts,
            state="delayed" if delay > 0 else "waiting",
            run_at=now + max(0.0, delay),
            created_at=now,
        )
        if not self.backend.add_if_absent(job):
            logger.info("Job %s already queued on %s", job_id, self.name)
            return EnqueueResult(job_id=job_id, status="already_queued")
        logger.debug("Queued job %s on %s (priority=%s, delay=%.1fs)", job_id, self.name, priority, delay)
        return EnqueueResult(job_id=job_id, status="queued")

    def claim(self) -> Optional[QueueJob]:
        """Claim the next due job under a lease.

        Jobs whose lease ran out without ``complete``/``fail`` count as a
        failed attempt and are retried with backoff like any other failure.
        """

        now = self._clock()
        for stalled in self.backend.recover_stalled(self.name, now):
            self.fail(stalled, "worker lease expired before the job finished")
        return self.backend.claim(self.name, now, now + self.policy.lease_seconds)

    def complete(self, job: QueueJob, result: Any = None) -> None:
        job.state = "completed"
        job.result = result
        job.finished_at = self._clock()
        self.backend.finish(job, self.policy.keep_completed)

    def fail(self, job: QueueJob, error: str, *, retryable: bool = True) -> str:
        """Record a failed attempt; returns ``"retrying"`` or ``"failed"``."""

        job.attempts_made += 1
        job.error = error
        if retryable and job.attempts_made < job.max_attempts:
            delay = self.policy.backoff_for(job.attempts_made)
            job.run_at = self._clock() + delay
            self.backend.retry(job)
            logger.warning(
                "Job %s on %s failed (attempt %d/%d); retrying in %.1fs: %s",
                job.job_id,
                self.name,
                job.attempts_made,
                job.max_attempts,
                delay,
                error,
            )
            return "retrying"
        job.state = "failed"
        job.finished_at = self._clock()
        self.backend.finish(job, self.policy.keep_failed)
        logger.error(
            "Job %s on %s failed permanently after %d attempt(s): %s",
            job.job_id,
            self.name,
            job.attempts_made,
            error,
        )
        return "failed"

    def get(self, job_id: str) -> Optional[QueueJob]:
        return self.backend.get(self.name, job_id)

    def remove(self, job_id: str) -> bool:
        return self.backend.remove(self.name, job_id)

    def counts(self) -> Dict[str, int]:
        return self.backend.counts(self.name)

    def history(self, state: str) -> List[QueueJob]:
        return self.backend.history(self.name, state)


JobHandler = Callable[[QueueJob], Any]


class WorkerPool:
    """Fixed number of daemon threads draining one queue."""

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        *,
        concurrency: Optional[int] = None,
        poll_seconds: float = 1.0,
    ) -> None:
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency or queue.policy.concurrency
        self.poll_seconds = poll_seconds
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if any(thread.is_alive() for thread in self._threads):
                return
            self._stop_event.clear()
            self._threads = [
                threading.Thread(
                    target=self._run_loop,
                    name=f"quotebridge-{self.queue.name}-worker-{index}",
                    daemon=True,
                )
                for index in range(self.concurrency)
            ]
            for thread in self._threads:
                thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop_event.set()
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            if thread.is_alive():
                thread.join(timeout=timeout)

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                processed = self.process_next()
            except QueueUnavailableError:
                logger.exception("Queue %s unavailable; backing off", self.queue.name)
                processed = False
            if not processed:
                self._stop_event.wait(self.poll_seconds)

    def process_next(self) -> bool:
        """Claim and run one job; returns ``False`` when the queue is empty."""

        job = self.queue.claim()
        if job is None:
            return False
        try:
            result = self.handler(job)
        except InputError as exc:
            logger.warning("Job %s rejected: %s", job.job_id, exc)
            self.queue.fail(job, str(exc), retryable=False)
        except Exception as exc:
            logger.exception("Job %s on %s raised", job.job_id, self.queue.name)
            self.queue.fail(job, str(exc) or exc.__class__.__name__)
        else:
            self.queue.complete(job, result)
        return True


class QueueManager:
    """Owns the named queues and their worker pools."""

    def __init__(self, backend, *, poll_seconds: float = 1.0, clock: Optional[Callable[[], float]] = None) -> None:
        self.backend = backend
        self.poll_seconds = poll_seconds
        self._clock = clock
        self._queues: Dict[str, JobQueue] = {}
        self._pools: Dict[str, WorkerPool] = {}

    @classmethod
    def from_settings(cls, settings, backend, **kwargs) -> "QueueManager":
        manager = cls(backend, poll_seconds=float(settings.queue_poll_seconds), **kwargs)
        for name, prefix in (
            (MATCHING_QUEUE, "matching"),
            (EMBEDDING_QUEUE, "embedding"),
            (FULFILLMENT_QUEUE, "fulfillment"),
            (EXPIRY_QUEUE, "expiry"),
        ):
            manager.create_queue(name, QueuePolicy.from_settings(settings, prefix))
        return manager

    def create_queue(self, name: str, policy: QueuePolicy) -> JobQueue:
        queue = JobQueue(name, self.backend, policy, clock=self._clock)
        self._queues[name] = queue
        return queue

    def queue(self, name: str) -> JobQueue:
        try:
            return self._queues[name]
        except KeyError:
            raise KeyError(f"Unknown queue {name!r}") from None

    def names(self) -> List[str]:
        return list(self._queues)

    def register_handler(self, name: str, handler: JobHandler) -> WorkerPool:
        queue = self.queue(name)
        pool = WorkerPool(queue, handler, poll_seconds=self.poll_seconds)
        self._pools[name] = pool
        return pool

    def start(self) -> None:
        for pool in self._pools.values():
            pool.start()

    def stop(self) -> None:
        for pool in self._pools.values():
            pool.stop()

    def counts(self) -> Dict[str, Dict[str, int]]:
        return {name: queue.counts() for name, queue in self._queues.items()}


def build_queue_backend(settings, redis_client=None):
    """Use Redis when a client is available, else the in-process backend."""

    if redis_client is not None:
        return RedisQueueBackend(redis_client, prefix=settings.queue_key_prefix)
    logger.info("Redis not configured; job queues run in-process")
    return InMemoryQueueBackend()
