import os
import sys

import pytest
import requests

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from models.domain import AlertEvent, AlertKind, ProgressStage
from services.alert_service import (
    AlertService,
    EventBusPushChannel,
    WebhookMessageChannel,
    format_alert_text,
)
from services.event_bus import ALERT_TOPIC, EventBus, progress_topic
from services.progress_service import ProgressEmitter


class DummyResponse:
    def __init__(self, status=200):
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"status {self.status}")


class DummySession:
    def __init__(self, response=None, exc=None):
        self.response = response or DummyResponse()
        self.exc = exc
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        return self.response


def _alert(kind=AlertKind.TIMEOUT):
    return AlertEvent(
        kind=kind,
        job_id="fulfil-R1-C1",
        candidate_id="C1",
        agent_id="agent-1",
        retry_count=1,
        auto_retried=True,
        message="Timed out in mode agent_dispatch",
    )


def test_alert_text_names_job_candidate_and_agent():
    text = format_alert_text(_alert())
    assert text.startswith("[Fulfillment timeout]")
    assert "job: fulfil-R1-C1" in text
    assert "candidate: C1" in text
    assert "agent: agent-1" in text
    assert "retries: 1" in text


def test_webhook_channel_posts_text_and_structured_alert():
    session = DummySession()
    channel = WebhookMessageChannel("https://hooks.example.com/alert", session=session)

    assert channel.send(_alert()) is True
    body = session.posts[0]["json"]
    assert body["msg_type"] == "text"
    assert body["alert"]["kind"] == "timeout"
    assert body["alert"]["autoRetried"] is True


def test_webhook_channel_without_url_is_skipped():
    session = DummySession()
    assert WebhookMessageChannel(None, session=session).send(_alert()) is False
    assert session.posts == []


def test_failed_channel_does_not_block_other_channel():
    bus = EventBus()
    received = []
    bus.subscribe(ALERT_TOPIC, received.append)
    service = AlertService(
        [
            WebhookMessageChannel(
                "https://hooks.example.com/alert",
                session=DummySession(exc=requests.ConnectionError("unreachable")),
            ),
            EventBusPushChannel(bus),
        ]
    )

    outcome = service.send(_alert(AlertKind.FAILED))

    assert outcome == {"message": False, "push": True}
    assert received[0]["kind"] == "failed"
    assert service.sent[-1].kind is AlertKind.FAILED


def test_alert_history_is_bounded():
    service = AlertService([])
    for _ in range(105):
        service.send(_alert())
    assert len(service.sent) == 100


def test_progress_events_are_published_per_requester():
    bus = EventBus()
    stream = bus.open_stream(progress_topic("buyer-1"))
    other = bus.open_stream(progress_topic("buyer-2"))
    emitter = ProgressEmitter(bus)

    emitter.emit(ProgressStage.QUEUED, "R1", requester_id="buyer-1", candidate_id="C1", message="waiting")

    payload = stream.get(timeout=0.1)
    assert payload["stage"] == "queued"
    assert payload["requestId"] == "R1"
    assert payload["candidateId"] == "C1"
    assert other.get(timeout=0.01) is None


def test_closed_stream_stops_receiving():
    bus = EventBus()
    stream = bus.open_stream(ALERT_TOPIC)
    stream.close()
    assert bus.publish(ALERT_TOPIC, {"kind": "failed"}) == 0


def test_event_bus_isolates_failing_listener():
    bus = EventBus()
    seen = []

    def broken(_payload):
        raise RuntimeError("listener down")

    bus.subscribe("topic", broken)
    bus.subscribe("topic", seen.append, once=True)

    assert bus.publish("topic", {"n": 1}) == 1
    assert bus.publish("topic", {"n": 2}) == 0
    assert seen == [{"n": 1}]
    with pytest.raises(ValueError):
        bus.subscribe(" ", seen.append)
