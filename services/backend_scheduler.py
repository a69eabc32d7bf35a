import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

logger: logging.Logger = logging.getLogger(__name__)


class _ScheduledJob:
    def __init__(
        self,
        name: str,
        runner: Callable[[], None],
        interval: timedelta,
        initial_delay: Optional[timedelta] = None,
    ) -> None:
        self.name = name
        self.runner = runner
        self.interval = interval
        delay = initial_delay or timedelta(0)
        self.next_run = datetime.now(timezone.utc) + delay
        self._lock = threading.Lock()

    def due(self, moment: datetime) -> bool:
        with self._lock:
            return moment >= self.next_run

    def mark_executed(self, executed_at: datetime) -> None:
        with self._lock:
            self.next_run = executed_at + self.interval


class BackendScheduler:
    """Fixed-period timers that run independently of queue activity."""

    _poll_seconds: float = 5.0

    def __init__(self, *, poll_seconds: Optional[float] = None) -> None:
        self._jobs: Dict[str, _ScheduledJob] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        if poll_seconds is not None:
            self._poll_seconds = poll_seconds

    @classmethod
    def for_runtime(cls, settings, *, agent_registry, monitor, snapshot_store=None, **kwargs) -> "BackendScheduler":
        scheduler = cls(**kwargs)
        scheduler.register_job(
            "agent-heartbeat-sweep",
            agent_registry.sweep,
            interval=timedelta(seconds=settings.heartbeat_sweep_seconds),
            initial_delay=timedelta(seconds=settings.heartbeat_sweep_seconds),
        )
        scheduler.register_job(
            "fulfillment-timeout-sweep",
            monitor.sweep,
            interval=timedelta(minutes=settings.timeout_sweep_minutes),
            initial_delay=timedelta(minutes=settings.timeout_sweep_minutes),
        )
        if snapshot_store is not None:
            scheduler.register_job(
                "agent-registry-snapshot",
                lambda: snapshot_store.save(agent_registry.snapshot()),
                interval=timedelta(seconds=settings.agent_snapshot_seconds),
                initial_delay=timedelta(seconds=settings.agent_snapshot_seconds),
            )
        return scheduler

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run_loop,
                name="quotebridge-backend-scheduler",
                daemon=True,
            )
            self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread = None
        with self._lock:
            thread = self._thread
        if thread and thread.is_alive():
            thread.join(timeout=2)

    def register_job(
        self,
        name: str,
        runner: Callable[[], None],
        interval: timedelta,
        initial_delay: Optional[timedelta] = None,
    ) -> None:
        job = _ScheduledJob(name, runner, interval, initial_delay)
        with self._lock:
            self._jobs[name] = job

    def job_names(self):
        with self._lock:
            return sorted(self._jobs)

    def run_due(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        with self._lock:
            jobs_snapshot = list(self._jobs.values())
        executed = 0
        for job in jobs_snapshot:
            if not job.due(now):
                continue
            self._execute_job(job)
            executed += 1
        return executed

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self._poll_seconds):
            self.run_due()

    def _execute_job(self, job: _ScheduledJob) -> None:
        try:
            job.runner()
        except Exception:
            logger.exception("Backend job %s failed", job.name)
        finally:
            executed_at = datetime.now(timezone.utc)
            job.mark_executed(executed_at)
