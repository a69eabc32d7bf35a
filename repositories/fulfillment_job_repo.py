"""Durable FulfillmentJob records keyed by their deterministic job id."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from models.domain import (
    FulfillmentJob,
    FulfillmentMode,
    JobStatus,
    OPEN_JOB_STATUSES,
    QuoteOffer,
    TierPrice,
)
from services.db import get_conn

logger = logging.getLogger(__name__)

DDL = """
CREATE SCHEMA IF NOT EXISTS sourcing;

CREATE TABLE IF NOT EXISTS sourcing.fulfillment_jobs (
    job_id TEXT PRIMARY KEY,
    request_id TEXT NOT NULL,
    candidate_id TEXT,
    requester_id TEXT,
    mode TEXT NOT NULL,
    status TEXT NOT NULL,
    attempt_count INTEGER NOT NULL DEFAULT 1,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    deadline TIMESTAMPTZ,
    enqueued_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_error TEXT,
    agent_id TEXT,
    offer JSONB
);

CREATE INDEX IF NOT EXISTS fulfillment_jobs_status_idx
    ON sourcing.fulfillment_jobs (status, enqueued_at);

CREATE INDEX IF NOT EXISTS fulfillment_jobs_candidate_idx
    ON sourcing.fulfillment_jobs (candidate_id, updated_at);
"""

_COLUMNS = (
    "job_id",
    "request_id",
    "candidate_id",
    "requester_id",
    "mode",
    "status",
    "attempt_count",
    "max_attempts",
    "deadline",
    "enqueued_at",
    "created_at",
    "updated_at",
    "last_error",
    "agent_id",
    "offer",
)

_OPEN_VALUES = tuple(status.value for status in OPEN_JOB_STATUSES)
_ACTIVE_VALUES = _OPEN_VALUES + (JobStatus.TIMEOUT.value,)
_OUTCOME_VALUES = (JobStatus.FULFILLED.value, JobStatus.FAILED.value)


def init_schema() -> None:
    with get_conn() as conn:
        cur = conn.cursor()
        for statement in filter(None, (stmt.strip() for stmt in DDL.split(";"))):
            cur.execute(statement)
        cur.close()


def _serialise_offer(offer: Optional[QuoteOffer]) -> Optional[str]:
    if offer is None:
        return None
    return json.dumps(offer.to_dict(), default=str)


def _deserialise_offer(value: Any) -> Optional[QuoteOffer]:
    if value in (None, "", {}):
        return None
    if isinstance(value, str):
        value = json.loads(value)
    data = dict(value)
    data["tier_pricing"] = [TierPrice(**tier) for tier in data.get("tier_pricing") or []]
    return QuoteOffer(**data)


def _row_to_job(row: Sequence) -> FulfillmentJob:
    data = dict(zip(_COLUMNS, row))
    return FulfillmentJob(
        job_id=data["job_id"],
        request_id=data["request_id"],
        candidate_id=data["candidate_id"],
        requester_id=data["requester_id"],
        mode=FulfillmentMode(data["mode"]),
        status=JobStatus(data["status"]),
        attempt_count=int(data["attempt_count"]),
        max_attempts=int(data["max_attempts"]),
        deadline=data["deadline"],
        enqueued_at=data["enqueued_at"],
        created_at=data["created_at"],
        updated_at=data["updated_at"],
        last_error=data["last_error"],
        agent_id=data["agent_id"],
        offer=_deserialise_offer(data["offer"]),
    )


def _job_params(job: FulfillmentJob) -> Tuple[Any, ...]:
    return (
        job.job_id,
        job.request_id,
        job.candidate_id,
        job.requester_id,
        job.mode.value,
        job.status.value,
        job.attempt_count,
        job.max_attempts,
        job.deadline,
        job.enqueued_at,
        job.created_at,
        job.updated_at,
        job.last_error,
        job.agent_id,
        _serialise_offer(job.offer),
    )


_UPSERT_SQL = f"""
INSERT INTO sourcing.fulfillment_jobs ({', '.join(_COLUMNS)})
VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
"""

_UPDATE_ACTIVE_SQL = f"""
UPDATE sourcing.fulfillment_jobs SET
    {', '.join(f'{column} = %s' for column in _COLUMNS[1:-1])}, offer = %s::jsonb
WHERE job_id = %s AND status IN %s
RETURNING job_id
"""


class PostgresFulfillmentJobRepository:
    def create_if_absent(self, job: FulfillmentJob) -> Tuple[FulfillmentJob, bool]:
        """Insert ``job`` unless an active job with the same id exists.

        A finished job under the same id is replaced by the new run.
        Returns the stored job and whether it was created.
        """

        with get_conn(autocommit=False) as conn:
            cur = conn.cursor()
            cur.execute(
                _UPSERT_SQL
                + f"""
                ON CONFLICT (job_id) DO UPDATE SET
                    {', '.join(f'{column} = EXCLUDED.{column}' for column in _COLUMNS[1:])}
                WHERE sourcing.fulfillment_jobs.status NOT IN %s
                RETURNING job_id
                """,
                _job_params(job) + (_ACTIVE_VALUES,),
            )
            created = cur.fetchone() is not None
            existing = None
            if not created:
                cur.execute(
                    f"SELECT {', '.join(_COLUMNS)} FROM sourcing.fulfillment_jobs WHERE job_id = %s",
                    (job.job_id,),
                )
                existing = cur.fetchone()
            cur.close()
        if created:
            return job, True
        return _row_to_job(existing), False

    def get(self, job_id: str) -> Optional[FulfillmentJob]:
        with get_conn() as conn:
            cur = conn.cursor()
            cur.execute(
                f"SELECT {', '.join(_COLUMNS)} FROM sourcing.fulfillment_jobs WHERE job_id = %s",
                (job_id,),
            )
            row = cur.fetchone()
            cur.close()
        return _row_to_job(row) if row else None

    def save(self, job: FulfillmentJob) -> FulfillmentJob:
        with get_conn() as conn:
            cur = conn.cursor()
            cur.execute(
                _UPSERT_SQL
                + f"""
                ON CONFLICT (job_id) DO UPDATE SET
                    {', '.join(f'{column} = EXCLUDED.{column}' for column in _COLUMNS[1:])}
                """,
                _job_params(job),
            )
            cur.close()
        return job

    def save_if_active(self, job: FulfillmentJob) -> bool:
        """Write ``job`` only while the stored row is still queued, in progress or timed out.

        Returns ``False`` when another writer already finished the job.
        """

        with get_conn() as conn:
            cur = conn.cursor()
            cur.execute(_UPDATE_ACTIVE_SQL, _job_params(job)[1:] + (job.job_id, _ACTIVE_VALUES))
            written = cur.fetchone() is not None
            cur.close()
        return written

    def list_open_older_than(self, cutoff: datetime) -> List[FulfillmentJob]:
        with get_conn() as conn:
            cur = conn.cursor()
            cur.execute(
                f"SELECT {', '.join(_COLUMNS)} FROM sourcing.fulfillment_jobs "
                "WHERE status IN %s AND enqueued_at < %s ORDER BY enqueued_at ASC",
                (_OPEN_VALUES, cutoff),
            )
            rows = cur.fetchall()
            cur.close()
        return [_row_to_job(row) for row in rows]

    def list_for_request(self, request_id: str) -> List[FulfillmentJob]:
        with get_conn() as conn:
            cur = conn.cursor()
            cur.execute(
                f"SELECT {', '.join(_COLUMNS)} FROM sourcing.fulfillment_jobs "
                "WHERE request_id = %s ORDER BY created_at ASC, job_id ASC",
                (request_id,),
            )
            rows = cur.fetchall()
            cur.close()
        return [_row_to_job(row) for row in rows]

    def outcomes_for_candidate(self, candidate_id: str, since: datetime) -> List[FulfillmentJob]:
        """Fulfilled and failed jobs for ``candidate_id`` updated since ``since``, oldest first."""

        with get_conn() as conn:
            cur = conn.cursor()
            cur.execute(
                f"SELECT {', '.join(_COLUMNS)} FROM sourcing.fulfillment_jobs "
                "WHERE candidate_id = %s AND status IN %s AND updated_at >= %s "
                "ORDER BY updated_at ASC, job_id ASC",
                (candidate_id, _OUTCOME_VALUES, since),
            )
            rows = cur.fetchall()
            cur.close()
        return [_row_to_job(row) for row in rows]


class InMemoryFulfillmentJobRepository:
    def __init__(self) -> None:
        self._jobs: Dict[str, FulfillmentJob] = {}
        self._lock = threading.Lock()

    def create_if_absent(self, job: FulfillmentJob) -> Tuple[FulfillmentJob, bool]:
        with self._lock:
            existing = self._jobs.get(job.job_id)
            if existing is not None and existing.status.value in _ACTIVE_VALUES:
                return replace(existing), False
            self._jobs[job.job_id] = replace(job)
        return job, True

    def get(self, job_id: str) -> Optional[FulfillmentJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def save(self, job: FulfillmentJob) -> FulfillmentJob:
        with self._lock:
            self._jobs[job.job_id] = replace(job)
        return job

    def save_if_active(self, job: FulfillmentJob) -> bool:
        with self._lock:
            stored = self._jobs.get(job.job_id)
            if stored is None or stored.status.value not in _ACTIVE_VALUES:
                return False
            self._jobs[job.job_id] = replace(job)
        return True

    def list_open_older_than(self, cutoff: datetime) -> List[FulfillmentJob]:
        with self._lock:
            jobs = [
                replace(job)
                for job in self._jobs.values()
                if job.status.value in _OPEN_VALUES and job.enqueued_at < cutoff
            ]
        return sorted(jobs, key=lambda job: job.enqueued_at)

    def list_for_request(self, request_id: str) -> List[FulfillmentJob]:
        with self._lock:
            jobs = [replace(job) for job in self._jobs.values() if job.request_id == request_id]
        return sorted(jobs, key=lambda job: (job.created_at, job.job_id))

    def outcomes_for_candidate(self, candidate_id: str, since: datetime) -> List[FulfillmentJob]:
        with self._lock:
            jobs = [
                replace(job)
                for job in self._jobs.values()
                if job.candidate_id == candidate_id
                and job.status.value in _OUTCOME_VALUES
                and job.updated_at >= since
            ]
        return sorted(jobs, key=lambda job: (job.updated_at, job.job_id))
