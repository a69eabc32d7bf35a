"""Wires settings, stores, queues, monitors and the orchestrator together."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from engines.candidate_scorer import CandidateScorer
from engines.category_map import CategoryMap
from models.domain import AgentRecord, AgentState, AlertEvent, AlertKind, FulfillmentJob, utcnow
from orchestration.job_handlers import JobHandlers
from orchestration.orchestrator import FulfillmentOrchestrator
from repositories import (
    candidate_directory_repo,
    fulfillment_job_repo,
    match_result_repo,
    price_record_repo,
    sourcing_request_repo,
)
from services import db
from services.agent_registry import AgentRegistry
from services.alert_service import AlertService, EventBusPushChannel, WebhookMessageChannel
from services.backend_scheduler import BackendScheduler
from services.data_source_adapters import StructuredTableAdapter
from services.embedding_service import EmbeddingService, SentenceTransformerEncoder
from services.event_bus import EventBus, get_event_bus
from services.ingress_service import IngressService
from services.job_queue import (
    EMBEDDING_QUEUE,
    EXPIRY_QUEUE,
    FULFILLMENT_QUEUE,
    MATCHING_QUEUE,
    QueueManager,
    build_queue_backend,
)
from services.progress_service import ProgressEmitter
from services.quote_intake_service import QuoteIntakeService
from services.redis_client import RedisSnapshotStore
from services.timeout_monitor import TimeoutMonitor

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Any
    event_bus: EventBus
    progress: ProgressEmitter
    alerts: AlertService
    agent_registry: AgentRegistry
    queues: QueueManager
    requests_repo: Any
    directory: Any
    matches: Any
    jobs: Any
    price_source: Any
    structured_adapter: StructuredTableAdapter
    scorer: CandidateScorer
    monitor: TimeoutMonitor
    orchestrator: FulfillmentOrchestrator
    quote_intake: QuoteIntakeService
    embeddings: EmbeddingService
    handlers: JobHandlers
    ingress: IngressService
    scheduler: BackendScheduler
    snapshot_store: Optional[RedisSnapshotStore] = None

    def start(self, *, workers: bool = True, timers: bool = True) -> None:
        if self.snapshot_store is not None:
            self.agent_registry.restore(self.snapshot_store.load())
        if workers:
            self.queues.start()
        if timers:
            self.scheduler.start()
        logger.info("Runtime started (workers=%s, timers=%s)", workers, timers)

    def stop(self) -> None:
        self.scheduler.stop()
        self.queues.stop()
        if self.snapshot_store is not None:
            self.snapshot_store.save(self.agent_registry.snapshot())
        logger.info("Runtime stopped")


def _agent_transition_alert(alerts: AlertService) -> Callable[[AgentRecord, AgentState, AgentState], None]:
    def _listener(record: AgentRecord, previous: AgentState, current: AgentState) -> None:
        if current is AgentState.OFFLINE:
            alerts.send(
                AlertEvent(
                    kind=AlertKind.TIMEOUT,
                    job_id=None,
                    candidate_id=record.candidate_id,
                    agent_id=record.agent_id,
                    message=f"Agent {record.agent_id} missed heartbeats and is offline",
                )
            )
        elif previous is AgentState.OFFLINE and current is AgentState.ONLINE:
            alerts.send(
                AlertEvent(
                    kind=AlertKind.RECOVERED,
                    job_id=None,
                    candidate_id=record.candidate_id,
                    agent_id=record.agent_id,
                    message=f"Agent {record.agent_id} is back online",
                )
            )

    return _listener


def build_runtime(
    settings,
    *,
    redis_client=None,
    use_database: Optional[bool] = None,
    event_bus: Optional[EventBus] = None,
    encoder=None,
    alert_session=None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Runtime:
    clock = clock or utcnow
    event_bus = event_bus or get_event_bus()
    if use_database is None:
        use_database = db.is_configured()

    if use_database:
        for module in (
            sourcing_request_repo,
            candidate_directory_repo,
            match_result_repo,
            fulfillment_job_repo,
            price_record_repo,
        ):
            module.init_schema()
        requests_repo = sourcing_request_repo.PostgresSourcingRequestRepository()
        directory = candidate_directory_repo.PostgresCandidateDirectory()
        matches = match_result_repo.PostgresMatchResultRepository()
        jobs = fulfillment_job_repo.PostgresFulfillmentJobRepository()
        price_source = price_record_repo.PostgresPriceRecordSource()
    else:
        logger.info("PostgreSQL not configured; using in-process stores")
        requests_repo = sourcing_request_repo.InMemorySourcingRequestRepository()
        directory = candidate_directory_repo.InMemoryCandidateDirectory()
        matches = match_result_repo.InMemoryMatchResultRepository()
        jobs = fulfillment_job_repo.InMemoryFulfillmentJobRepository()
        price_source = price_record_repo.InMemoryPriceRecordSource()

    progress = ProgressEmitter(event_bus, clock=clock)
    alerts = AlertService(
        [
            WebhookMessageChannel(
                settings.alert_webhook_url,
                timeout=settings.http_timeout_seconds,
                session=alert_session,
            ),
            EventBusPushChannel(event_bus),
        ]
    )
    agent_registry = AgentRegistry.from_settings(settings, clock=clock)
    agent_registry.add_transition_listener(_agent_transition_alert(alerts))

    queues = QueueManager.from_settings(
        settings,
        build_queue_backend(settings, redis_client),
        clock=lambda: clock().timestamp(),
    )
    fulfillment_queue = queues.queue(FULFILLMENT_QUEUE)

    def _requeue(job: FulfillmentJob) -> None:
        fulfillment_queue.add(
            "fulfil",
            {"job_id": job.job_id, "request_id": job.request_id, "candidate_id": job.candidate_id},
            job.job_id,
        )

    monitor = TimeoutMonitor.from_settings(
        settings, jobs, alerts, enqueue=_requeue, progress=progress, clock=clock
    )
    structured_adapter = StructuredTableAdapter(
        price_source,
        staleness_days=settings.price_staleness_days,
        enabled=settings.structured_table_enabled,
        clock=clock,
    )
    scorer = CandidateScorer(
        settings,
        category_map=CategoryMap.from_settings(settings),
        liveness_check=agent_registry.is_online,
    )
    orchestrator = FulfillmentOrchestrator(
        settings=settings,
        scorer=scorer,
        directory=directory,
        requests_repo=requests_repo,
        matches=matches,
        jobs=jobs,
        agent_registry=agent_registry,
        fulfillment_queue=fulfillment_queue,
        expiry_queue=queues.queue(EXPIRY_QUEUE),
        progress=progress,
        alerts=alerts,
        monitor=monitor,
        structured_adapter=structured_adapter,
        clock=clock,
    )
    quote_intake = QuoteIntakeService(
        jobs=jobs,
        agent_registry=agent_registry,
        progress=progress,
        callback_secret=settings.callback_secret,
        fulfillment_queue=fulfillment_queue,
        expiry_queue=queues.queue(EXPIRY_QUEUE),
        structured_adapter=structured_adapter,
        clock=clock,
    )
    embeddings = EmbeddingService(
        directory,
        encoder=encoder,
        encoder_factory=lambda: SentenceTransformerEncoder(
            settings.embedding_model, device=settings.embedding_device
        ),
        clock=clock,
    )
    handlers = JobHandlers(
        orchestrator=orchestrator,
        requests_repo=requests_repo,
        jobs=jobs,
        monitor=monitor,
        embeddings=embeddings,
    )
    queues.register_handler(MATCHING_QUEUE, handlers.handle_matching)
    queues.register_handler(EMBEDDING_QUEUE, handlers.handle_embedding)
    queues.register_handler(FULFILLMENT_QUEUE, handlers.handle_fulfillment)
    queues.register_handler(EXPIRY_QUEUE, handlers.handle_deadline)

    ingress = IngressService(
        requests_repo=requests_repo,
        matching_queue=queues.queue(MATCHING_QUEUE),
        embedding_queue=queues.queue(EMBEDDING_QUEUE),
        agent_registry=agent_registry,
        quote_intake=quote_intake,
        orchestrator=orchestrator,
    )
    snapshot_store = (
        RedisSnapshotStore(redis_client, settings.agent_snapshot_key) if redis_client is not None else None
    )
    scheduler = BackendScheduler.for_runtime(
        settings,
        agent_registry=agent_registry,
        monitor=monitor,
        snapshot_store=snapshot_store,
    )
    return Runtime(
        settings=settings,
        event_bus=event_bus,
        progress=progress,
        alerts=alerts,
        agent_registry=agent_registry,
        queues=queues,
        requests_repo=requests_repo,
        directory=directory,
        matches=matches,
        jobs=jobs,
        price_source=price_source,
        structured_adapter=structured_adapter,
        scorer=scorer,
        monitor=monitor,
        orchestrator=orchestrator,
        quote_intake=quote_intake,
        embeddings=embeddings,
        handlers=handlers,
        ingress=ingress,
        scheduler=scheduler,
        snapshot_store=snapshot_store,
    )
