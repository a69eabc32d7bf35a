"""Lightweight in-process event bus used for progress and alert push events."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

PROGRESS_TOPIC_PREFIX = "progress:"
ALERT_TOPIC = "alerts"


def progress_topic(requester_id: Optional[str]) -> str:
    return f"{PROGRESS_TOPIC_PREFIX}{requester_id or 'anonymous'}"


class EventBus:
    """Minimal synchronous publish/subscribe event bus."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Tuple[Callable[[Dict[str, Any]], None], bool]]] = {}
        self._lock = threading.RLock()

    def subscribe(
        self,
        event_name: str,
        callback: Callable[[Dict[str, Any]], None],
        *,
        once: bool = False,
    ) -> Callable[[Dict[str, Any]], None]:
        """Register ``callback`` to be invoked when ``event_name`` is published."""

        if not callable(callback):
            raise TypeError("callback must be callable")
        key = str(event_name).strip()
        if not key:
            raise ValueError("event_name must be a non-empty string")
        with self._lock:
            self._listeners.setdefault(key, []).append((callback, bool(once)))
        return callback

    def unsubscribe(
        self, event_name: str, callback: Callable[[Dict[str, Any]], None]
    ) -> None:
        key = str(event_name).strip()
        if not key:
            return
        with self._lock:
            listeners = self._listeners.get(key, [])
            # Bound methods compare equal but are not identical.
            self._listeners[key] = [entry for entry in listeners if entry[0] != callback]
            if not self._listeners[key]:
                self._listeners.pop(key, None)

    def publish(self, event_name: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """Invoke subscribers for ``event_name`` synchronously; returns listeners reached."""

        key = str(event_name).strip()
        if not key:
            return 0
        with self._lock:
            listeners = list(self._listeners.get(key, []))
        if not listeners:
            return 0
        payload = dict(payload or {})
        delivered = 0
        to_remove: List[Callable[[Dict[str, Any]], None]] = []
        for callback, once in listeners:
            try:
                callback(payload)
                delivered += 1
            except Exception:
                logger.exception("Event handler for %s failed", key)
            if once:
                to_remove.append(callback)
        if to_remove:
            with self._lock:
                current = self._listeners.get(key, [])
                self._listeners[key] = [entry for entry in current if entry[0] not in to_remove]
                if not self._listeners[key]:
                    self._listeners.pop(key, None)
        return delivered

    def open_stream(self, event_name: str, *, maxsize: int = 256) -> "EventStream":
        return EventStream(self, event_name, maxsize=maxsize)


class EventStream:
    """Buffers events for one topic so a consumer can poll them."""

    def __init__(self, bus: EventBus, event_name: str, *, maxsize: int = 256) -> None:
        self.bus = bus
        self.event_name = event_name
        self._queue: "queue.Queue[Dict[str, Any]]" = queue.Queue(maxsize=maxsize)
        bus.subscribe(event_name, self._push)

    def _push(self, payload: Dict[str, Any]) -> None:
        try:
            self._queue.put_nowait(payload)
        except queue.Full:
            logger.warning("Dropping event on %s: consumer is not keeping up", self.event_name)

    def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self.bus.unsubscribe(self.event_name, self._push)


_GLOBAL_EVENT_BUS: Optional[EventBus] = None
_EVENT_BUS_LOCK = threading.Lock()


def get_event_bus() -> EventBus:
    """Return the singleton :class:`EventBus` instance."""

    global _GLOBAL_EVENT_BUS
    with _EVENT_BUS_LOCK:
        if _GLOBAL_EVENT_BUS is None:
            _GLOBAL_EVENT_BUS = EventBus()
    return _GLOBAL_EVENT_BUS
