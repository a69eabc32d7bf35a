import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from engines.candidate_scorer import CandidateScorer
from models.domain import (
    AgentTask,
    AlertEvent,
    AlertKind,
    FulfillmentJob,
    FulfillmentMode,
    JobStatus,
    MatchResult,
    ProgressStage,
    SourcingRequest,
    utcnow,
)
from services.data_source_adapters import (
    AdapterRegistry,
    AdapterResult,
    QuoteParams,
    build_candidate_registry,
)
from services.errors import InputError, QueueUnavailableError, TransientSourceError
from services.job_queue import expiry_job_id, fulfillment_job_id

logger = logging.getLogger(__name__)

QUOTE_REQUEST_TASK = "quote_request"


@dataclass
class CandidateDispatch:
    """What happened for one selected candidate during :meth:`fulfill`."""

    candidate_id: Optional[str]
    job_id: str
    mode: FulfillmentMode
    status: JobStatus
    pushed: bool = False
    enqueue_status: Optional[str] = None
    source: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate_id": self.candidate_id,
            "job_id": self.job_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "pushed": self.pushed,
            "enqueue_status": self.enqueue_status,
            "source": self.source,
            "error": self.error,
        }


@dataclass
class FulfillmentOutcome:
    request_id: str
    results: List[MatchResult] = field(default_factory=list)
    dispatches: List[CandidateDispatch] = field(default_factory=list)
    category_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "category_fallback": self.category_fallback,
            "results": [result.to_dict() for result in self.results],
            "dispatches": [dispatch.to_dict() for dispatch in self.dispatches],
        }


class FulfillmentOrchestrator:
    """Scores a request, tries inline sources, then dispatches to agents and the queue.

    Every dispatch has a fast path (push to an online agent) and a guaranteed
    path (a durable ``agent_dispatch`` job on the fulfillment queue); the
    guaranteed path is never skipped.  When the queue is unreachable and the
    candidate has never had an agent, the work becomes a manual job.
    """

    def __init__(
        self,
        *,
        settings,
        scorer: CandidateScorer,
        directory,
        requests_repo,
        matches,
        jobs,
        agent_registry,
        fulfillment_queue,
        expiry_queue,
        progress,
        alerts,
        monitor,
        structured_adapter=None,
        registry_factory: Optional[Callable[[str], AdapterRegistry]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.scorer = scorer
        self.directory = directory
        self.requests_repo = requests_repo
        self.matches = matches
        self.jobs = jobs
        self.agent_registry = agent_registry
        self.fulfillment_queue = fulfillment_queue
        self.expiry_queue = expiry_queue
        self.progress = progress
        self.alerts = alerts
        self.monitor = monitor
        self.structured_adapter = structured_adapter
        self.registry_factory = registry_factory or self._default_registry
        self._clock = clock or utcnow
        self.inline_timeout = float(settings.inline_fetch_timeout_seconds)
        self.queued_timeout = float(settings.queued_fetch_timeout_seconds)
        self.max_attempts = int(settings.fulfillment_max_attempts)
        self.job_timeout = timedelta(minutes=settings.fulfillment_timeout_minutes)
        self.request_deadline = timedelta(minutes=settings.request_deadline_minutes)

    def _default_registry(self, candidate_id: str) -> AdapterRegistry:
        return build_candidate_registry(
            candidate_id,
            self.agent_registry.capabilities_for(candidate_id),
            structured_adapter=self.structured_adapter,
            agent_registry=self.agent_registry,
            settings=self.settings,
        )

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------
    def match(self, request: SourcingRequest):
        if not request.embedding:
            raise InputError(f"Request {request.request_id} has no embedding")
        outcome = self.scorer.rank(request, self.directory.list_active())
        self.matches.replace(request.request_id, outcome.results)
        return outcome

    def latest_results(self, demand_key: str) -> List[MatchResult]:
        """Match set of the newest request for ``demand_key``."""

        latest = self.requests_repo.latest_for_demand(demand_key)
        if latest is None:
            return []
        return self.matches.list_for_request(latest.request_id)

    # ------------------------------------------------------------------
    # Fulfillment
    # ------------------------------------------------------------------
    def fulfill(self, request: SourcingRequest) -> FulfillmentOutcome:
        self.requests_repo.save(request)
        self._emit(ProgressStage.STARTED, request, None, "Matching suppliers")
        ranking = self.match(request)
        outcome = FulfillmentOutcome(
            request_id=request.request_id,
            results=list(ranking.results),
            category_fallback=ranking.category_fallback,
        )
        if not ranking.results:
            outcome.dispatches.append(self._escalate_unmatched(request))
            return outcome

        for result in ranking.results:
            try:
                dispatch = self._fulfil_candidate(request, result.candidate_id)
            except Exception as exc:
                logger.exception(
                    "Fulfillment failed for request %s candidate %s",
                    request.request_id,
                    result.candidate_id,
                )
                dispatch = self._escalate_new_manual(
                    request, result.candidate_id, f"orchestration error: {exc}"
                )
            outcome.dispatches.append(dispatch)

        self._schedule_deadline(request)
        return outcome

    def _params(self, request: SourcingRequest, candidate_id: str) -> QuoteParams:
        return QuoteParams(
            candidate_id=candidate_id,
            request_id=request.request_id,
            product_name=request.product_name,
            quantity=request.quantity,
            target_price=request.target_price,
            category=request.category,
        )

    def _fulfil_candidate(self, request: SourcingRequest, candidate_id: str) -> CandidateDispatch:
        job_id = fulfillment_job_id(request.request_id, candidate_id)
        existing = self.jobs.get(job_id)
        if existing is not None and not existing.status.is_terminal:
            logger.info("Job %s already active; not dispatching again", job_id)
            return CandidateDispatch(
                candidate_id=candidate_id,
                job_id=job_id,
                mode=existing.mode,
                status=existing.status,
                enqueue_status="already_queued",
            )

        params = self._params(request, candidate_id)
        result = self.registry_factory(candidate_id).fetch_with_fallback(
            params, timeout=self.inline_timeout
        )
        if result.success and result.offer is not None:
            return self._record_direct(request, candidate_id, job_id, result)
        return self._dispatch_to_agent(request, candidate_id, job_id, params, result)

    def _new_job(
        self,
        request: SourcingRequest,
        candidate_id: Optional[str],
        job_id: str,
        mode: FulfillmentMode,
        status: JobStatus,
    ) -> FulfillmentJob:
        now = self._clock()
        return FulfillmentJob(
            job_id=job_id,
            request_id=request.request_id,
            candidate_id=candidate_id,
            requester_id=request.requester_id,
            mode=mode,
            status=status,
            attempt_count=1,
            max_attempts=self.max_attempts,
            deadline=now + self.job_timeout,
            enqueued_at=now,
            created_at=now,
            updated_at=now,
        )

    def _record_direct(
        self,
        request: SourcingRequest,
        candidate_id: str,
        job_id: str,
        result: AdapterResult,
    ) -> CandidateDispatch:
        job = self._new_job(
            request, candidate_id, job_id, FulfillmentMode.DIRECT_SOURCE, JobStatus.FULFILLED
        )
        job.offer = result.offer
        stored, created = self.jobs.create_if_absent(job)
        if not created:
            return CandidateDispatch(
                candidate_id=candidate_id,
                job_id=job_id,
                mode=stored.mode,
                status=stored.status,
                enqueue_status="already_queued",
            )
        offer = result.offer
        self._emit(
            ProgressStage.SOURCE_FOUND,
            request,
            candidate_id,
            f"Price found via {result.source} (confidence {offer.confidence:.2f})",
        )
        self._emit(
            ProgressStage.QUOTE_GENERATED,
            request,
            candidate_id,
            f"Quote: {offer.unit_price} {offer.currency}",
        )
        self._emit(ProgressStage.DELIVERED, request, candidate_id, "Quote delivered")
        return CandidateDispatch(
            candidate_id=candidate_id,
            job_id=job_id,
            mode=FulfillmentMode.DIRECT_SOURCE,
            status=JobStatus.FULFILLED,
            source=result.source,
        )

    def _dispatch_to_agent(
        self,
        request: SourcingRequest,
        candidate_id: str,
        job_id: str,
        params: QuoteParams,
        inline: AdapterResult,
    ) -> CandidateDispatch:
        job = self._new_job(
            request, candidate_id, job_id, FulfillmentMode.AGENT_DISPATCH, JobStatus.QUEUED
        )
        job.last_error = f"inline sources failed: {inline.error} (last source: {inline.source})"
        stored, created = self.jobs.create_if_absent(job)
        if not created:
            return CandidateDispatch(
                candidate_id=candidate_id,
                job_id=job_id,
                mode=stored.mode,
                status=stored.status,
                enqueue_status="already_queued",
            )

        # Fast path: hand the task to an online agent.
        task = AgentTask(
            task_id=job_id,
            kind=QUOTE_REQUEST_TASK,
            payload=dict(params.to_payload(), job_id=job_id),
            created_at=self._clock(),
        )
        pushed = self.agent_registry.push_task(candidate_id, task)
        if pushed:
            job.agent_id = self.agent_registry.online_agent_for(candidate_id)

        dispatch = CandidateDispatch(
            candidate_id=candidate_id,
            job_id=job_id,
            mode=FulfillmentMode.AGENT_DISPATCH,
            status=JobStatus.QUEUED,
            pushed=pushed,
            source=inline.source,
            error=inline.error,
        )

        # Guaranteed path: always enqueue the durable job.
        try:
            enqueued = self.fulfillment_queue.add(
                "fulfil",
                {"job_id": job_id, "request_id": request.request_id, "candidate_id": candidate_id},
                job_id,
            )
        except QueueUnavailableError as exc:
            return self._handle_queue_unavailable(request, job, dispatch, exc)

        dispatch.enqueue_status = enqueued.status
        if not self._touch(job):
            return self._already_finished(dispatch)
        self._emit(
            ProgressStage.QUEUED,
            request,
            candidate_id,
            "Quote request sent to supplier agent" if pushed else "Waiting for supplier agent to pick up quote request",
        )
        return dispatch

    def _handle_queue_unavailable(
        self,
        request: SourcingRequest,
        job: FulfillmentJob,
        dispatch: CandidateDispatch,
        exc: Exception,
    ) -> CandidateDispatch:
        logger.error("Fulfillment queue unavailable for job %s: %s", job.job_id, exc)
        if self.agent_registry.has_registered_agent(job.candidate_id):
            # The timeout monitor re-enqueues this job once the queue is back.
            job.status = JobStatus.IN_PROGRESS
            job.last_error = f"queue unavailable: {exc} (mode {job.mode.value})"
            if not self._touch(job):
                return self._already_finished(dispatch)
            dispatch.status = JobStatus.IN_PROGRESS
            dispatch.enqueue_status = "queue_unavailable"
            self._emit(
                ProgressStage.QUEUED,
                request,
                job.candidate_id,
                "Awaiting supplier agent; queue temporarily unavailable",
            )
            return dispatch
        if self.monitor.escalate(job, f"queue unavailable and no agent registered: {exc}") is None:
            return self._already_finished(dispatch)
        dispatch.mode = FulfillmentMode.MANUAL
        dispatch.status = JobStatus.ESCALATED
        dispatch.enqueue_status = "queue_unavailable"
        return dispatch

    def _already_finished(self, dispatch: CandidateDispatch) -> CandidateDispatch:
        stored = self.jobs.get(dispatch.job_id)
        if stored is not None:
            dispatch.mode = stored.mode
            dispatch.status = stored.status
        logger.info("Job %s was finished by a callback during dispatch", dispatch.job_id)
        return dispatch

    def _escalate_new_manual(
        self, request: SourcingRequest, candidate_id: Optional[str], reason: str
    ) -> CandidateDispatch:
        job_id = fulfillment_job_id(request.request_id, candidate_id)
        job = self._new_job(request, candidate_id, job_id, FulfillmentMode.MANUAL, JobStatus.ESCALATED)
        job.last_error = reason
        self.jobs.save(job)
        self.alerts.send(
            AlertEvent(
                kind=AlertKind.FAILED,
                job_id=job_id,
                candidate_id=candidate_id,
                message=f"Manual quoting required: {reason}",
                timestamp=self._clock(),
            )
        )
        self._emit(ProgressStage.ESCALATED, request, candidate_id, reason)
        return CandidateDispatch(
            candidate_id=candidate_id,
            job_id=job_id,
            mode=FulfillmentMode.MANUAL,
            status=JobStatus.ESCALATED,
            error=reason,
        )

    def _escalate_unmatched(self, request: SourcingRequest) -> CandidateDispatch:
        logger.warning("Request %s matched no candidates", request.request_id)
        return self._escalate_new_manual(request, None, "no supplier candidates matched the request")

    def _schedule_deadline(self, request: SourcingRequest) -> None:
        try:
            self.expiry_queue.add(
                "expire",
                {"request_id": request.request_id},
                expiry_job_id(request.request_id),
                delay=self.request_deadline.total_seconds(),
            )
        except QueueUnavailableError:
            logger.warning(
                "Could not schedule deadline for request %s; the timeout sweep still applies",
                request.request_id,
            )

    # ------------------------------------------------------------------
    # Queue-driven attempts
    # ------------------------------------------------------------------
    def attempt_dispatched_job(self, job_id: str) -> str:
        """Retry sources for a queued ``agent_dispatch`` job, else hand it to an agent.

        Raises :class:`TransientSourceError` when nothing answered and no agent
        is online, so the queue retries with backoff.
        """

        job = self.jobs.get(job_id)
        if job is None:
            raise InputError(f"Unknown fulfillment job {job_id!r}")
        if job.status.is_terminal:
            return "skipped"
        request = self.requests_repo.get(job.request_id)
        if request is None:
            raise InputError(f"Unknown request {job.request_id!r} for job {job_id}")

        job.status = JobStatus.IN_PROGRESS
        if not self._touch(job):
            return "skipped"

        params = self._params(request, job.candidate_id)
        result = self.registry_factory(job.candidate_id).fetch_with_fallback(
            params, timeout=self.queued_timeout
        )
        if result.success and result.offer is not None:
            job.status = JobStatus.FULFILLED
            job.offer = result.offer
            job.last_error = None
            if not self._touch(job):
                logger.info("Job %s finished elsewhere while sources ran; keeping stored result", job_id)
                return "skipped"
            self._emit(ProgressStage.SOURCE_FOUND, request, job.candidate_id, f"Price found via {result.source}")
            self._emit(
                ProgressStage.QUOTE_GENERATED,
                request,
                job.candidate_id,
                f"Quote: {result.offer.unit_price} {result.offer.currency}",
            )
            self._emit(ProgressStage.DELIVERED, request, job.candidate_id, "Quote delivered")
            return "fulfilled"

        task = AgentTask(
            task_id=job_id,
            kind=QUOTE_REQUEST_TASK,
            payload=dict(params.to_payload(), job_id=job_id),
            created_at=self._clock(),
        )
        if self.agent_registry.push_task(job.candidate_id, task):
            job.agent_id = self.agent_registry.online_agent_for(job.candidate_id)
            if not self._touch(job):
                self.agent_registry.acknowledge_candidate_task(job.candidate_id, job_id)
                return "skipped"
            return "dispatched"

        job.last_error = f"no source answered ({result.error}) and no agent online (mode {job.mode.value})"
        if not self._touch(job):
            return "skipped"
        raise TransientSourceError(job.last_error, source=result.source)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _touch(self, job: FulfillmentJob) -> bool:
        """Persist ``job`` unless a callback or sweep has already finished it."""

        job.updated_at = self._clock()
        return self.jobs.save_if_active(job)

    def _emit(
        self,
        stage: ProgressStage,
        request: SourcingRequest,
        candidate_id: Optional[str],
        message: str,
    ) -> None:
        self.progress.emit(
            stage,
            request.request_id,
            requester_id=request.requester_id,
            candidate_id=candidate_id,
            message=message,
        )
