from __future__ import annotations

import logging
from typing import Callable, Optional

from models.domain import ProgressEvent, ProgressStage, utcnow
from services.event_bus import EventBus, progress_topic

logger = logging.getLogger(__name__)


class ProgressEmitter:
    """Publishes request progress on the requester's event bus topic."""

    def __init__(self, event_bus: EventBus, *, clock: Optional[Callable] = None) -> None:
        self.event_bus = event_bus
        self._clock = clock or utcnow

    def emit(
        self,
        stage: ProgressStage,
        request_id: str,
        *,
        requester_id: Optional[str] = None,
        candidate_id: Optional[str] = None,
        message: str = "",
    ) -> ProgressEvent:
        event = ProgressEvent(
            stage=stage,
            request_id=request_id,
            candidate_id=candidate_id,
            message=message,
            requester_id=requester_id,
            timestamp=self._clock(),
        )
        try:
            self.event_bus.publish(progress_topic(requester_id), event.to_payload())
        except Exception:
            logger.exception(
                "Failed to publish %s progress for request %s", stage.value, request_id
            )
        logger.info(
            "Progress %s request=%s candidate=%s %s",
            stage.value,
            request_id,
            candidate_id,
            message,
        )
        return event
