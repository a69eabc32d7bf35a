import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from config.settings import Settings
from models.domain import (
    AlertKind,
    Candidate,
    FulfillmentMode,
    JobStatus,
    ProgressStage,
    SourcingRequest,
)
from orchestration.runtime import build_runtime
from repositories.price_record_repo import PriceRecord
from services.callback_auth import sign_payload
from services.data_source_adapters import AdapterResult
from services.errors import InputError, QueueUnavailableError, TransientSourceError
from services.event_bus import EventBus, progress_topic
from services.job_queue import (
    EXPIRY_QUEUE,
    FULFILLMENT_QUEUE,
    MATCHING_QUEUE,
    WorkerPool,
    expiry_job_id,
    fulfillment_job_id,
)

SECRET = "s3cret"


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class UnavailableQueue:
    name = "fulfillment"

    def add(self, *args, **kwargs):
        raise QueueUnavailableError("redis down")

    def remove(self, job_id):
        raise QueueUnavailableError("redis down")


class CallbackDuringSources:
    """Source chain that lets the agent's quote land before it returns."""

    def __init__(self, runtime, job_id, result):
        self.runtime = runtime
        self.job_id = job_id
        self.result = result

    def fetch_with_fallback(self, params, timeout=None):
        offer = {"unit_price": 88.5, "currency": "USD", "product_name": params.product_name}
        self.runtime.ingress.callback(self.job_id, offer, sign_payload(offer, SECRET), SECRET, agent_id="agent-1")
        return self.result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runtime(clock):
    settings = Settings(callback_secret=SECRET, match_top_n=2)
    rt = build_runtime(settings, use_database=False, event_bus=EventBus(), clock=clock)
    for candidate in (
        Candidate("C1", [1.0, 0.0], category="solar-panel", trust_override=0.9),
        Candidate("C2", [0.8, 0.6], category="solar-panel", trust_override=0.95),
        Candidate("C3", [0.0, 1.0], category="textile", trust_override=0.7),
    ):
        rt.directory.upsert(candidate)
    return rt


def _request(request_id="R1", demand_key="buyer-1:solar", requester="buyer-1", submitted_at=None):
    return SourcingRequest(
        request_id=request_id,
        demand_key=demand_key,
        embedding=[1.0, 0.0],
        category="solar-panel",
        requester_id=requester,
        product_name="Mono Panel 400W",
        quantity=500,
        submitted_at=submitted_at or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc),
    )


def _stages(stream):
    stages = []
    while True:
        payload = stream.get(timeout=0.01)
        if payload is None:
            return stages
        stages.append((payload["stage"], payload["candidateId"]))


def test_unpriced_candidate_is_queued_for_agent_not_manual(runtime):
    outcome = runtime.orchestrator.fulfill(_request())

    assert [d.candidate_id for d in outcome.dispatches] == ["C1", "C2"]
    dispatch = outcome.dispatches[0]
    assert dispatch.mode is FulfillmentMode.AGENT_DISPATCH
    assert dispatch.status is JobStatus.QUEUED
    assert dispatch.pushed is False
    assert dispatch.enqueue_status == "queued"

    job = runtime.jobs.get(fulfillment_job_id("R1", "C1"))
    assert job.mode is FulfillmentMode.AGENT_DISPATCH
    assert "structured_table" in job.last_error
    assert runtime.queues.queue(FULFILLMENT_QUEUE).get(job.job_id) is not None
    assert runtime.queues.queue(EXPIRY_QUEUE).get(expiry_job_id("R1")) is not None


def test_price_table_hit_is_fulfilled_directly(runtime):
    runtime.price_source.upsert(
        PriceRecord("C1", "Mono Panel 400W", 98.0, is_verified=True, updated_at=runtime.orchestrator._clock())
    )
    stream = runtime.event_bus.open_stream(progress_topic("buyer-1"))

    outcome = runtime.orchestrator.fulfill(_request())

    direct = outcome.dispatches[0]
    assert direct.mode is FulfillmentMode.DIRECT_SOURCE
    assert direct.status is JobStatus.FULFILLED
    assert direct.source == "structured_table"
    job = runtime.jobs.get(fulfillment_job_id("R1", "C1"))
    assert job.offer.unit_price == 98.0
    assert job.offer.provenance == "structured_table"
    assert runtime.queues.queue(FULFILLMENT_QUEUE).get(job.job_id) is None

    stages = _stages(stream)
    assert stages[0] == ("started", None)
    assert [stage for stage, cid in stages if cid == "C1"] == ["source_found", "quote_generated", "delivered"]
    assert [stage for stage, cid in stages if cid == "C2"] == ["queued"]


def test_online_agent_gets_task_and_callback_completes_job(runtime):
    runtime.ingress.register_agent("agent-1", "C1", [{"type": "agent_api"}])
    runtime.ingress.heartbeat("agent-1")

    outcome = runtime.orchestrator.fulfill(_request())

    dispatch = outcome.dispatches[0]
    assert dispatch.pushed is True
    assert dispatch.enqueue_status == "queued"
    job_id = fulfillment_job_id("R1", "C1")
    assert runtime.jobs.get(job_id).agent_id == "agent-1"

    tasks = runtime.ingress.heartbeat("agent-1")["new_tasks"]
    assert [task["task_id"] for task in tasks] == [job_id]
    assert tasks[0]["payload"]["product_name"] == "Mono Panel 400W"

    offer = {"unit_price": 97.25, "currency": "USD", "product_name": "Mono Panel 400W"}
    job = runtime.ingress.callback(job_id, offer, sign_payload(offer, SECRET), SECRET, agent_id="agent-1")

    assert job.status is JobStatus.FULFILLED
    assert runtime.queues.queue(FULFILLMENT_QUEUE).get(job_id) is None
    assert runtime.price_source.find("C1", "Mono Panel 400W")[0].unit_price == 97.25


def test_refulfilling_same_request_does_not_duplicate_jobs(runtime):
    runtime.orchestrator.fulfill(_request())
    again = runtime.orchestrator.fulfill(_request())

    assert {d.enqueue_status for d in again.dispatches} == {"already_queued"}
    assert len(runtime.jobs.list_for_request("R1")) == 2
    assert runtime.queues.queue(FULFILLMENT_QUEUE).counts()["waiting"] == 2


def test_queue_outage_without_any_agent_escalates_to_manual(runtime):
    runtime.orchestrator.fulfillment_queue = UnavailableQueue()

    outcome = runtime.orchestrator.fulfill(_request())

    dispatch = outcome.dispatches[0]
    assert dispatch.mode is FulfillmentMode.MANUAL
    assert dispatch.status is JobStatus.ESCALATED
    job = runtime.jobs.get(fulfillment_job_id("R1", "C1"))
    assert job.mode is FulfillmentMode.MANUAL
    assert "last mode attempted: agent_dispatch" in job.last_error
    assert AlertKind.FAILED in [event.kind for event in runtime.alerts.sent]


def test_queue_outage_with_registered_agent_keeps_job_in_progress(runtime):
    runtime.ingress.register_agent("agent-1", "C1", [])
    runtime.orchestrator.fulfillment_queue = UnavailableQueue()

    outcome = runtime.orchestrator.fulfill(_request())

    dispatch = outcome.dispatches[0]
    assert dispatch.mode is FulfillmentMode.AGENT_DISPATCH
    assert dispatch.status is JobStatus.IN_PROGRESS
    assert dispatch.enqueue_status == "queue_unavailable"
    assert runtime.jobs.get(fulfillment_job_id("R1", "C1")).status is JobStatus.IN_PROGRESS


def test_request_without_candidates_becomes_manual_job(clock):
    rt = build_runtime(Settings(callback_secret=SECRET), use_database=False, event_bus=EventBus(), clock=clock)

    outcome = rt.orchestrator.fulfill(_request())

    assert outcome.results == []
    assert outcome.dispatches[0].job_id == "fulfil-R1-unmatched"
    assert rt.jobs.get("fulfil-R1-unmatched").status is JobStatus.ESCALATED


def test_match_requires_embedding(runtime):
    request = SourcingRequest(request_id="R9", demand_key="d", embedding=[])
    with pytest.raises(InputError):
        runtime.orchestrator.match(request)


def test_latest_results_follow_newest_request_for_demand(runtime):
    older = _request("R1", submitted_at=datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc))
    newer = _request("R2", submitted_at=datetime(2024, 6, 1, 11, 0, tzinfo=timezone.utc))
    runtime.orchestrator.fulfill(older)
    runtime.orchestrator.fulfill(newer)

    results = runtime.orchestrator.latest_results("buyer-1:solar")
    assert {result.request_id for result in results} == {"R2"}
    assert [result.rank for result in results] == [1, 2]
    assert runtime.orchestrator.latest_results("unknown") == []


def test_queued_attempt_retries_until_a_source_answers(runtime):
    runtime.orchestrator.fulfill(_request())
    job_id = fulfillment_job_id("R1", "C1")

    with pytest.raises(TransientSourceError):
        runtime.orchestrator.attempt_dispatched_job(job_id)
    assert runtime.jobs.get(job_id).status is JobStatus.IN_PROGRESS

    runtime.price_source.upsert(PriceRecord("C1", "Mono Panel 400W", 91.0))
    assert runtime.orchestrator.attempt_dispatched_job(job_id) == "fulfilled"
    assert runtime.orchestrator.attempt_dispatched_job(job_id) == "skipped"
    assert runtime.jobs.get(job_id).offer.unit_price == 91.0


def test_queued_attempt_hands_task_to_agent_that_came_online(runtime):
    runtime.orchestrator.fulfill(_request())
    runtime.ingress.register_agent("agent-1", "C1", [])
    runtime.ingress.heartbeat("agent-1")

    assert runtime.orchestrator.attempt_dispatched_job(fulfillment_job_id("R1", "C1")) == "dispatched"
    assert runtime.ingress.heartbeat("agent-1")["new_tasks"][0]["task_id"] == "fulfil-R1-C1"


def test_callback_during_queued_attempt_keeps_delivered_quote(runtime, clock):
    runtime.orchestrator.fulfill(_request())
    job_id = fulfillment_job_id("R1", "C1")
    runtime.ingress.register_agent("agent-1", "C1", [])
    runtime.ingress.heartbeat("agent-1")
    failing = AdapterResult.failed("erp timeout", "erp_api")
    runtime.orchestrator.registry_factory = lambda _cid: CallbackDuringSources(runtime, job_id, failing)

    assert runtime.orchestrator.attempt_dispatched_job(job_id) == "skipped"

    stored = runtime.jobs.get(job_id)
    assert stored.status is JobStatus.FULFILLED
    assert stored.offer.unit_price == 88.5
    assert runtime.ingress.heartbeat("agent-1")["new_tasks"] == []

    clock.advance(minutes=45)
    report = runtime.monitor.sweep()
    assert job_id not in report.retried + report.failed + report.escalated
    assert runtime.jobs.get(job_id).status is JobStatus.FULFILLED


def test_source_answer_after_callback_does_not_replace_offer(runtime):
    runtime.orchestrator.fulfill(_request())
    job_id = fulfillment_job_id("R1", "C1")
    runtime.ingress.register_agent("agent-1", "C1", [])
    runtime.ingress.heartbeat("agent-1")
    runtime.price_source.upsert(PriceRecord("C1", "Mono Panel 400W", 91.0))
    table = runtime.orchestrator.registry_factory("C1").fetch_with_fallback(
        runtime.orchestrator._params(_request(), "C1")
    )
    runtime.orchestrator.registry_factory = lambda _cid: CallbackDuringSources(runtime, job_id, table)

    assert runtime.orchestrator.attempt_dispatched_job(job_id) == "skipped"
    assert runtime.jobs.get(job_id).offer.unit_price == 88.5


def test_submitted_request_flows_through_matching_worker(runtime):
    result = runtime.ingress.submit_request(_request())
    assert result.status == "queued"
    assert runtime.ingress.submit_request(_request()).already_queued

    matching = runtime.queues.queue(MATCHING_QUEUE)
    assert WorkerPool(matching, runtime.handlers.handle_matching).process_next() is True

    completed = matching.history("completed")[0]
    assert completed.result["matches"] == 2
    assert runtime.queues.queue(FULFILLMENT_QUEUE).counts()["waiting"] == 2


def test_submit_falls_back_to_inline_processing_when_queue_is_down(runtime):
    runtime.ingress.matching_queue = UnavailableQueue()

    result = runtime.ingress.submit_request(_request())

    assert result.status == "processed_inline"
    assert len(runtime.jobs.list_for_request("R1")) == 2


def test_fulfillment_worker_retries_job_with_no_source(runtime):
    runtime.orchestrator.fulfill(_request())
    queue = runtime.queues.queue(FULFILLMENT_QUEUE)

    WorkerPool(queue, runtime.handlers.handle_fulfillment).process_next()

    assert queue.counts()["delayed"] == 1


def test_deadline_job_applies_timeout_policy(runtime, clock):
    runtime.orchestrator.fulfill(_request())
    clock.advance(minutes=31)

    expiry = runtime.queues.queue(EXPIRY_QUEUE)
    assert WorkerPool(expiry, runtime.handlers.handle_deadline).process_next() is True

    handled = expiry.history("completed")[0].result["handled"]
    assert sorted(handled) == ["fulfil-R1-C1", "fulfil-R1-C2"]
    job = runtime.jobs.get("fulfil-R1-C1")
    assert job.status is JobStatus.QUEUED
    assert job.attempt_count == 2
    assert AlertKind.TIMEOUT in [event.kind for event in runtime.alerts.sent]


def test_agent_going_offline_raises_alert_and_recovery(runtime, clock):
    runtime.ingress.register_agent("agent-1", "C1", [])
    runtime.ingress.heartbeat("agent-1")
    clock.advance(minutes=4)

    runtime.agent_registry.sweep()
    runtime.ingress.heartbeat("agent-1")

    kinds = [event.kind for event in runtime.alerts.sent]
    assert kinds == [AlertKind.TIMEOUT, AlertKind.RECOVERED]


def test_embedding_refresh_updates_candidate_vector(clock):
    class DummyEncoder:
        def encode(self, texts):
            return [[0.6, 0.8] for _ in texts]

    rt = build_runtime(
        Settings(), use_database=False, event_bus=EventBus(), encoder=DummyEncoder(), clock=clock
    )
    rt.directory.upsert(Candidate("C9", None, category="textile", profile_text="Organic cotton fabric"))

    onboarding = rt.ingress.refresh_candidate_embedding("C9", onboarding=True)
    assert onboarding.status == "queued"

    embedding_queue = rt.queues.queue("embedding")
    WorkerPool(embedding_queue, rt.handlers.handle_embedding).process_next()

    candidate = rt.directory.get("C9")
    assert candidate.embedding == [0.6, 0.8]
    assert candidate.embedding_updated_at == clock.now

    with pytest.raises(InputError):
        rt.embeddings.refresh_candidate("missing")
