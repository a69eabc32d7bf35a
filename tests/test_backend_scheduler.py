import os
import sys
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import services.backend_scheduler as backend_scheduler


class DummyRegistry:
    def __init__(self):
        self.sweeps = 0

    def sweep(self):
        self.sweeps += 1
        return []

    def snapshot(self):
        return {"agents": []}


class DummyMonitor:
    def __init__(self):
        self.sweeps = 0

    def sweep(self):
        self.sweeps += 1


class DummySnapshotStore:
    def __init__(self):
        self.saved = []

    def save(self, value):
        self.saved.append(value)
        return True


def _settings(**overrides):
    values = dict(heartbeat_sweep_seconds=60, timeout_sweep_minutes=5, agent_snapshot_seconds=300)
    values.update(overrides)
    return SimpleNamespace(**values)


def _later(**kwargs):
    return datetime.now(timezone.utc) + timedelta(**kwargs)


def test_for_runtime_registers_sweeps_and_snapshot():
    scheduler = backend_scheduler.BackendScheduler.for_runtime(
        _settings(),
        agent_registry=DummyRegistry(),
        monitor=DummyMonitor(),
        snapshot_store=DummySnapshotStore(),
    )

    assert scheduler.job_names() == [
        "agent-heartbeat-sweep",
        "agent-registry-snapshot",
        "fulfillment-timeout-sweep",
    ]
    assert scheduler._jobs["agent-heartbeat-sweep"].interval == timedelta(seconds=60)
    assert scheduler._jobs["fulfillment-timeout-sweep"].interval == timedelta(minutes=5)


def test_snapshot_job_only_registered_with_store():
    scheduler = backend_scheduler.BackendScheduler.for_runtime(
        _settings(), agent_registry=DummyRegistry(), monitor=DummyMonitor()
    )
    assert "agent-registry-snapshot" not in scheduler.job_names()


def test_run_due_fires_timers_independently_of_each_other():
    registry = DummyRegistry()
    monitor = DummyMonitor()
    store = DummySnapshotStore()
    scheduler = backend_scheduler.BackendScheduler.for_runtime(
        _settings(), agent_registry=registry, monitor=monitor, snapshot_store=store
    )

    assert scheduler.run_due(_later(seconds=1)) == 0
    assert scheduler.run_due(_later(seconds=61)) == 1
    assert registry.sweeps == 1 and monitor.sweeps == 0

    assert scheduler.run_due(_later(minutes=6)) == 3
    assert monitor.sweeps == 1
    assert store.saved == [{"agents": []}]


def test_failing_job_is_rescheduled():
    scheduler = backend_scheduler.BackendScheduler()

    def broken():
        raise RuntimeError("sweep failed")

    scheduler.register_job("broken", broken, interval=timedelta(minutes=1))
    assert scheduler.run_due(_later(seconds=1)) == 1
    assert "broken" in scheduler.job_names()
    assert scheduler._jobs["broken"].next_run > datetime.now(timezone.utc)


def test_start_and_stop_background_thread():
    scheduler = backend_scheduler.BackendScheduler(poll_seconds=0.01)
    scheduler.start()
    scheduler.start()
    assert scheduler._thread is not None and scheduler._thread.is_alive()
    scheduler.stop()
    assert not scheduler._thread.is_alive()
