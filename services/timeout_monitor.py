"""Periodic detection of stalled fulfillment jobs and escalation policy."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from models.domain import (
    AlertEvent,
    AlertKind,
    FulfillmentJob,
    FulfillmentMode,
    JobStatus,
    ProgressStage,
    utcnow,
)
from services.errors import QueueUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    retried: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    escalated: List[str] = field(default_factory=list)
    degraded: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "retried": list(self.retried),
            "failed": list(self.failed),
            "escalated": list(self.escalated),
            "degraded": list(self.degraded),
        }


class TimeoutMonitor:
    def __init__(
        self,
        jobs,
        alerts,
        *,
        enqueue: Callable[[FulfillmentJob], None],
        timeout: timedelta = timedelta(minutes=30),
        degradation_threshold: int = 3,
        degradation_window: timedelta = timedelta(hours=1),
        progress=None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.jobs = jobs
        self.alerts = alerts
        self.enqueue = enqueue
        self.timeout = timeout
        self.degradation_threshold = degradation_threshold
        self.degradation_window = degradation_window
        self.progress = progress
        self._clock = clock or utcnow

    @classmethod
    def from_settings(cls, settings, jobs, alerts, **kwargs) -> "TimeoutMonitor":
        return cls(
            jobs,
            alerts,
            timeout=timedelta(minutes=settings.fulfillment_timeout_minutes),
            degradation_threshold=settings.degradation_threshold,
            degradation_window=timedelta(minutes=settings.degradation_window_minutes),
            **kwargs,
        )

    def is_expired(self, job: FulfillmentJob, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        return job.status in (JobStatus.QUEUED, JobStatus.IN_PROGRESS) and (
            now - job.enqueued_at > self.timeout
        )

    def sweep(self) -> SweepReport:
        now = self._clock()
        report = SweepReport()
        stalled = self.jobs.list_open_older_than(now - self.timeout)
        for job in stalled:
            try:
                self._handle_timeout(job, now, report)
            except Exception:
                logger.exception("Timeout handling failed for job %s", job.job_id)
        if stalled:
            logger.info("Timeout sweep processed %d stalled jobs: %s", len(stalled), report.to_dict())
        return report

    def handle_job_deadline(self, job: FulfillmentJob) -> Optional[SweepReport]:
        """Apply the timeout policy to ``job`` if it is still open past the threshold."""

        now = self._clock()
        if not self.is_expired(job, now):
            return None
        report = SweepReport()
        self._handle_timeout(job, now, report)
        return report

    def _save(self, job: FulfillmentJob, now: datetime) -> bool:
        job.updated_at = now
        if self.jobs.save_if_active(job):
            return True
        logger.info("Job %s was finished by another writer; timeout handling skipped", job.job_id)
        return False

    def _handle_timeout(self, job: FulfillmentJob, now: datetime, report: SweepReport) -> None:
        job.status = JobStatus.TIMEOUT
        job.last_error = f"no quote within {int(self.timeout.total_seconds() // 60)} minutes (mode {job.mode.value})"
        if not self._save(job, now):
            return

        if job.attempt_count < job.max_attempts:
            self._retry(job, now, report)
            return

        job.status = JobStatus.FAILED
        if not self._save(job, now):
            return
        report.failed.append(job.job_id)
        self.alerts.send(
            AlertEvent(
                kind=AlertKind.FAILED,
                job_id=job.job_id,
                candidate_id=job.candidate_id,
                agent_id=job.agent_id,
                retry_count=job.attempt_count,
                message=(
                    f"Job failed after {job.attempt_count} attempt(s); "
                    f"last mode attempted: {job.mode.value}"
                ),
                timestamp=now,
            )
        )
        if self._reached_degradation(job, now):
            report.degraded.append(job.job_id)
            self.alerts.send(
                AlertEvent(
                    kind=AlertKind.DEGRADED,
                    job_id=job.job_id,
                    candidate_id=job.candidate_id,
                    agent_id=job.agent_id,
                    retry_count=job.attempt_count,
                    message=(
                        f"Candidate {job.candidate_id} failed {self.degradation_threshold} "
                        f"consecutive jobs within {int(self.degradation_window.total_seconds() // 60)} "
                        "minutes; switch to manual handling"
                    ),
                    timestamp=now,
                )
            )

    def _retry(self, job: FulfillmentJob, now: datetime, report: SweepReport) -> None:
        job.attempt_count += 1
        job.status = JobStatus.QUEUED
        job.enqueued_at = now
        try:
            self.enqueue(job)
        except QueueUnavailableError as exc:
            logger.error("Queue unavailable re-enqueueing %s: %s", job.job_id, exc)
            if self.escalate(job, f"queue unavailable on retry: {exc}", now=now) is not None:
                report.escalated.append(job.job_id)
            return
        if not self._save(job, now):
            return
        report.retried.append(job.job_id)
        self.alerts.send(
            AlertEvent(
                kind=AlertKind.TIMEOUT,
                job_id=job.job_id,
                candidate_id=job.candidate_id,
                agent_id=job.agent_id,
                retry_count=job.attempt_count - 1,
                auto_retried=True,
                message=(
                    f"Timed out in mode {job.mode.value}; re-enqueued "
                    f"(attempt {job.attempt_count}/{job.max_attempts})"
                ),
                timestamp=now,
            )
        )

    def escalate(
        self, job: FulfillmentJob, reason: str, *, now: Optional[datetime] = None
    ) -> Optional[FulfillmentJob]:
        """Convert ``job`` into a manual job a human can act on.

        Returns ``None`` without alerting when the stored job already finished.
        """

        now = now or self._clock()
        last_mode = job.mode.value
        job.mode = FulfillmentMode.MANUAL
        job.status = JobStatus.ESCALATED
        job.last_error = f"{reason} (last mode attempted: {last_mode})"
        if not self._save(job, now):
            return None
        self.alerts.send(
            AlertEvent(
                kind=AlertKind.FAILED,
                job_id=job.job_id,
                candidate_id=job.candidate_id,
                agent_id=job.agent_id,
                retry_count=job.attempt_count,
                message=f"Escalated to manual quoting: {job.last_error}",
                timestamp=now,
            )
        )
        if self.progress is not None:
            self.progress.emit(
                ProgressStage.ESCALATED,
                job.request_id,
                requester_id=job.requester_id,
                candidate_id=job.candidate_id,
                message=job.last_error,
            )
        return job

    def consecutive_failures(self, candidate_id: Optional[str], now: datetime) -> int:
        if not candidate_id:
            return 0
        outcomes = self.jobs.outcomes_for_candidate(candidate_id, now - self.degradation_window)
        streak = 0
        for job in reversed(outcomes):
            if job.status is not JobStatus.FAILED:
                break
            streak += 1
        return streak

    def _reached_degradation(self, job: FulfillmentJob, now: datetime) -> bool:
        streak = self.consecutive_failures(job.candidate_id, now)
        return streak > 0 and streak % self.degradation_threshold == 0
