"""Queue job handlers for the matching, embedding, fulfillment and expiry queues."""

from __future__ import annotations

import logging
from typing import Any, Dict

from services.errors import InputError
from services.job_queue import QueueJob

logger = logging.getLogger(__name__)


class JobHandlers:
    def __init__(self, *, orchestrator, requests_repo, jobs, monitor, embeddings=None) -> None:
        self.orchestrator = orchestrator
        self.requests_repo = requests_repo
        self.jobs = jobs
        self.monitor = monitor
        self.embeddings = embeddings

    @staticmethod
    def _require(job: QueueJob, key: str) -> str:
        value = (job.data or {}).get(key)
        if not value:
            raise InputError(f"Job {job.job_id} is missing {key!r}")
        return str(value)

    def handle_matching(self, job: QueueJob) -> Dict[str, Any]:
        request_id = self._require(job, "request_id")
        request = self.requests_repo.get(request_id)
        if request is None:
            raise InputError(f"Unknown request {request_id!r}")
        outcome = self.orchestrator.fulfill(request)
        return {
            "request_id": request_id,
            "matches": len(outcome.results),
            "category_fallback": outcome.category_fallback,
            "dispatches": [dispatch.to_dict() for dispatch in outcome.dispatches],
        }

    def handle_embedding(self, job: QueueJob) -> Dict[str, Any]:
        candidate_id = self._require(job, "candidate_id")
        if self.embeddings is None:
            raise RuntimeError("Embedding service is not configured")
        vector = self.embeddings.refresh_candidate(candidate_id)
        return {"candidate_id": candidate_id, "dimensions": len(vector)}

    def handle_fulfillment(self, job: QueueJob) -> Dict[str, Any]:
        job_id = self._require(job, "job_id")
        return {"job_id": job_id, "outcome": self.orchestrator.attempt_dispatched_job(job_id)}

    def handle_deadline(self, job: QueueJob) -> Dict[str, Any]:
        request_id = self._require(job, "request_id")
        handled = []
        for record in self.jobs.list_for_request(request_id):
            report = self.monitor.handle_job_deadline(record)
            if report is not None:
                handled.append(record.job_id)
        if handled:
            logger.info("Deadline for request %s applied to jobs %s", request_id, handled)
        return {"request_id": request_id, "handled": handled}
