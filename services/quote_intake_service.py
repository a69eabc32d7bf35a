from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from models.domain import FulfillmentJob, JobStatus, ProgressStage, QuoteOffer, utcnow
from services.callback_auth import verify_callback
from services.data_source_adapters import QuoteParams
from services.errors import InputError
from services.job_queue import expiry_job_id

logger = logging.getLogger(__name__)

AGENT_CALLBACK = "agent_callback"


class QuoteIntakeService:
    """Accepts quotes pushed back by supplier agents for dispatched jobs."""

    def __init__(
        self,
        *,
        jobs,
        agent_registry,
        progress,
        callback_secret: Optional[str],
        fulfillment_queue=None,
        expiry_queue=None,
        structured_adapter=None,
        clock: Optional[Callable] = None,
    ) -> None:
        self.jobs = jobs
        self.agent_registry = agent_registry
        self.progress = progress
        self.callback_secret = callback_secret
        self.fulfillment_queue = fulfillment_queue
        self.expiry_queue = expiry_queue
        self.structured_adapter = structured_adapter
        self._clock = clock or utcnow

    def accept_callback(
        self,
        task_id: str,
        payload: Dict[str, Any],
        *,
        signature: Optional[str],
        presented_secret: Optional[str],
        agent_id: Optional[str] = None,
    ) -> FulfillmentJob:
        verify_callback(
            payload,
            signature=signature,
            presented_secret=presented_secret,
            expected_secret=self.callback_secret,
        )
        job = self.jobs.get(task_id)
        if job is None:
            raise InputError(f"Unknown task {task_id!r}")
        if job.status is JobStatus.FULFILLED:
            logger.info("Duplicate callback for fulfilled job %s ignored", task_id)
            return job

        try:
            offer = QuoteOffer.from_payload(
                payload,
                provenance=AGENT_CALLBACK,
                confidence=round(0.7 + (0.2 if payload.get("is_verified") else 0.0), 2),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InputError(f"Malformed quote payload: {exc}") from exc

        job.status = JobStatus.FULFILLED
        job.offer = offer
        job.last_error = None
        if agent_id:
            job.agent_id = agent_id
        job.updated_at = self._clock()
        self.jobs.save(job)
        logger.info("Job %s fulfilled by agent callback (%s %s)", job.job_id, offer.unit_price, offer.currency)

        self._acknowledge(job, agent_id)
        self._clear_queues(job)
        self._reverse_sync(job, offer)

        self.progress.emit(
            ProgressStage.QUOTE_GENERATED,
            job.request_id,
            requester_id=job.requester_id,
            candidate_id=job.candidate_id,
            message=f"Quote received from supplier agent: {offer.unit_price} {offer.currency}",
        )
        self.progress.emit(
            ProgressStage.DELIVERED,
            job.request_id,
            requester_id=job.requester_id,
            candidate_id=job.candidate_id,
            message="Quote delivered",
        )
        return job

    def _acknowledge(self, job: FulfillmentJob, agent_id: Optional[str]) -> None:
        if agent_id:
            try:
                self.agent_registry.acknowledge_task(agent_id, job.job_id)
                return
            except InputError:
                logger.warning("Callback for %s came from unregistered agent %s", job.job_id, agent_id)
        if job.candidate_id:
            self.agent_registry.acknowledge_candidate_task(job.candidate_id, job.job_id)

    def _clear_queues(self, job: FulfillmentJob) -> None:
        if self.fulfillment_queue is not None:
            self.fulfillment_queue.remove(job.job_id)
        if self.expiry_queue is None:
            return
        still_open = [
            other
            for other in self.jobs.list_for_request(job.request_id)
            if other.job_id != job.job_id and not other.status.is_terminal
        ]
        if not still_open:
            self.expiry_queue.remove(expiry_job_id(job.request_id))

    def _reverse_sync(self, job: FulfillmentJob, offer: QuoteOffer) -> None:
        if self.structured_adapter is None or not job.candidate_id:
            return
        try:
            if self.structured_adapter.is_available():
                self.structured_adapter.write_quote(
                    offer, QuoteParams(candidate_id=job.candidate_id, request_id=job.request_id)
                )
        except Exception:
            logger.exception("Reverse sync of quote for job %s failed", job.job_id)
