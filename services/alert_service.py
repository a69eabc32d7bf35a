"""Alert fan-out to an outbound message webhook and the live push event bus.

Each channel is attempted independently; a failure in one is logged and
never prevents delivery on the other.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

import requests

from models.domain import AlertEvent, AlertKind
from services.event_bus import ALERT_TOPIC, EventBus

logger = logging.getLogger(__name__)

_TITLES = {
    AlertKind.TIMEOUT: "Fulfillment timeout",
    AlertKind.FAILED: "Fulfillment failed",
    AlertKind.DEGRADED: "Supplier degraded: manual handling recommended",
    AlertKind.RECOVERED: "Supplier agent recovered",
}


def format_alert_text(event: AlertEvent) -> str:
    lines = [f"[{_TITLES.get(event.kind, event.kind.value)}]", event.message]
    if event.job_id:
        lines.append(f"job: {event.job_id}")
    if event.candidate_id:
        lines.append(f"candidate: {event.candidate_id}")
    if event.agent_id:
        lines.append(f"agent: {event.agent_id}")
    if event.retry_count:
        lines.append(f"retries: {event.retry_count}")
    return "\n".join(lines)


class WebhookMessageChannel:
    name = "message"

    def __init__(
        self,
        url: Optional[str],
        *,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, event: AlertEvent) -> bool:
        if not self.url:
            logger.debug("Alert webhook not configured; skipping %s alert", event.kind.value)
            return False
        response = self.session.post(
            self.url,
            json={
                "msg_type": "text",
                "content": {"text": format_alert_text(event)},
                "alert": event.to_payload(),
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        return True


class EventBusPushChannel:
    name = "push"

    def __init__(self, event_bus: EventBus, *, topic: str = ALERT_TOPIC) -> None:
        self.event_bus = event_bus
        self.topic = topic

    def send(self, event: AlertEvent) -> bool:
        self.event_bus.publish(self.topic, event.to_payload())
        return True


class AlertService:
    def __init__(self, channels: Sequence) -> None:
        self.channels = list(channels)
        self.sent: List[AlertEvent] = []

    def send(self, event: AlertEvent) -> Dict[str, bool]:
        log = logger.info if event.kind is AlertKind.RECOVERED else logger.warning
        log("Alert %s job=%s candidate=%s: %s", event.kind.value, event.job_id, event.candidate_id, event.message)
        outcome: Dict[str, bool] = {}
        for channel in self.channels:
            name = getattr(channel, "name", channel.__class__.__name__)
            try:
                outcome[name] = bool(channel.send(event))
            except Exception:
                logger.exception("Alert channel %s failed for %s alert", name, event.kind.value)
                outcome[name] = False
        self.sent = (self.sent + [event])[-100:]
        return outcome
