"""Entry points used by buyers, supplier agents and the HTTP adapter."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from models.domain import AgentCapability, SourcingRequest
from services.errors import InputError, QueueUnavailableError
from services.job_queue import EnqueueResult, embedding_job_id, matching_job_id

logger = logging.getLogger(__name__)

ONBOARDING_PRIORITY = 1
PROFILE_UPDATE_PRIORITY = 5


class IngressService:
    def __init__(
        self,
        *,
        requests_repo,
        matching_queue,
        embedding_queue,
        agent_registry,
        quote_intake,
        orchestrator,
    ) -> None:
        self.requests_repo = requests_repo
        self.matching_queue = matching_queue
        self.embedding_queue = embedding_queue
        self.agent_registry = agent_registry
        self.quote_intake = quote_intake
        self.orchestrator = orchestrator

    def submit_request(self, request: SourcingRequest) -> EnqueueResult:
        """Persist ``request`` and enqueue its matching job.

        If the queue backend is unreachable the request is matched and
        dispatched inline so it is never dropped.
        """

        if not request.request_id or not request.demand_key:
            raise InputError("request_id and demand_key are required")
        if not request.embedding:
            raise InputError(f"Request {request.request_id} has no embedding")
        self.requests_repo.save(request)
        job_id = matching_job_id(request.request_id)
        try:
            return self.matching_queue.add("match", {"request_id": request.request_id}, job_id)
        except QueueUnavailableError:
            logger.error("Matching queue unavailable; fulfilling request %s inline", request.request_id)
            self.orchestrator.fulfill(request)
            return EnqueueResult(job_id=job_id, status="processed_inline")

    def register_agent(
        self,
        agent_id: str,
        candidate_id: str,
        capabilities: Iterable[Dict[str, Any]],
        *,
        version: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            parsed = [AgentCapability.from_payload(dict(item)) for item in capabilities or []]
        except (TypeError, ValueError) as exc:
            raise InputError(f"Invalid capability declaration: {exc}") from exc
        record = self.agent_registry.register_agent(agent_id, candidate_id, parsed, version=version)
        return {
            "agent_id": record.agent_id,
            "candidate_id": record.candidate_id,
            "status": self.agent_registry.status(record.agent_id).value,
            "capabilities": [capability.type for capability in record.capabilities],
        }

    def heartbeat(
        self,
        agent_id: str,
        stats: Optional[Dict[str, Any]] = None,
        completed_task_ids: Optional[List[str]] = None,
    ) -> Dict[str, List[Dict[str, Any]]]:
        return self.agent_registry.heartbeat(agent_id, stats, completed_task_ids)

    def acknowledge_task(self, agent_id: str, task_id: str) -> bool:
        return self.agent_registry.acknowledge_task(agent_id, task_id)

    def callback(
        self,
        task_id: str,
        offer_payload: Dict[str, Any],
        signature: Optional[str],
        secret: Optional[str],
        *,
        agent_id: Optional[str] = None,
    ):
        return self.quote_intake.accept_callback(
            task_id,
            offer_payload,
            signature=signature,
            presented_secret=secret,
            agent_id=agent_id,
        )

    def refresh_candidate_embedding(self, candidate_id: str, *, onboarding: bool = False) -> EnqueueResult:
        if not candidate_id:
            raise InputError("candidate_id is required")
        return self.embedding_queue.add(
            "embed",
            {"candidate_id": candidate_id},
            embedding_job_id(candidate_id),
            priority=ONBOARDING_PRIORITY if onboarding else PROFILE_UPDATE_PRIORITY,
        )
