"""Single owner of supplier agent liveness state.

Status reads are derived from the last heartbeat on every call; the periodic
:meth:`AgentRegistry.sweep` only records the ``online -> offline`` transition
so the offline notification fires once per outage.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from models.domain import (
    AgentCapability,
    AgentRecord,
    AgentState,
    AgentTask,
    utcnow,
)
from services.errors import InputError, UnknownAgentError

logger = logging.getLogger(__name__)

TransitionListener = Callable[[AgentRecord, AgentState, AgentState], None]


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


class AgentRegistry:
    def __init__(
        self,
        *,
        liveness_window: timedelta = timedelta(minutes=3),
        pending_task_limit: int = 50,
        clock: Optional[Callable[[], datetime]] = None,
        on_transition: Optional[TransitionListener] = None,
    ) -> None:
        self.liveness_window = liveness_window
        self.pending_task_limit = pending_task_limit
        self._clock = clock or utcnow
        self._agents: Dict[str, AgentRecord] = {}
        self._lock = threading.RLock()
        self._listeners: List[TransitionListener] = []
        if on_transition is not None:
            self._listeners.append(on_transition)

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "AgentRegistry":
        return cls(
            liveness_window=timedelta(seconds=settings.agent_liveness_window_seconds),
            pending_task_limit=settings.agent_pending_task_limit,
            **kwargs,
        )

    def add_transition_listener(self, listener: TransitionListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def _notify(self, record: AgentRecord, previous: AgentState, current: AgentState) -> None:
        for listener in list(self._listeners):
            try:
                listener(replace(record), previous, current)
            except Exception:
                logger.exception(
                    "Agent transition listener failed for %s (%s -> %s)",
                    record.agent_id,
                    previous.value,
                    current.value,
                )

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------
    def _derive(self, record: AgentRecord, now: datetime) -> AgentState:
        if record.last_heartbeat_at is None:
            return AgentState.REGISTERED
        if now - record.last_heartbeat_at <= self.liveness_window:
            return AgentState.ONLINE
        return AgentState.OFFLINE

    def status(self, agent_id: str) -> AgentState:
        with self._lock:
            record = self._agents.get(agent_id)
            if record is None:
                raise UnknownAgentError(agent_id)
            return self._derive(record, self._clock())

    def online_agent_for(self, candidate_id: str) -> Optional[str]:
        """Return the id of an online agent for ``candidate_id``, checked now."""

        with self._lock:
            now = self._clock()
            online = [
                record
                for record in self._agents.values()
                if record.candidate_id == candidate_id
                and self._derive(record, now) is AgentState.ONLINE
            ]
            if not online:
                return None
            online.sort(key=lambda record: record.last_heartbeat_at, reverse=True)
            return online[0].agent_id

    def is_online(self, candidate_id: str) -> bool:
        return self.online_agent_for(candidate_id) is not None

    def has_registered_agent(self, candidate_id: Optional[str]) -> bool:
        if not candidate_id:
            return False
        with self._lock:
            return any(record.candidate_id == candidate_id for record in self._agents.values())

    def capabilities_for(self, candidate_id: str) -> List[AgentCapability]:
        with self._lock:
            records = [
                record for record in self._agents.values() if record.candidate_id == candidate_id
            ]
            if not records:
                return []
            latest = max(records, key=lambda record: record.registered_at)
            return [replace(capability) for capability in latest.capabilities]

    def list_status(self) -> List[Dict[str, Any]]:
        with self._lock:
            now = self._clock()
            return [
                {
                    "agent_id": record.agent_id,
                    "candidate_id": record.candidate_id,
                    "status": self._derive(record, now).value,
                    "last_heartbeat_at": record.last_heartbeat_at.isoformat()
                    if record.last_heartbeat_at
                    else None,
                    "pending_tasks": len(record.pending_tasks),
                    "capabilities": [capability.type for capability in record.capabilities],
                    "version": record.version,
                }
                for record in sorted(self._agents.values(), key=lambda item: item.agent_id)
            ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def register_agent(
        self,
        agent_id: str,
        candidate_id: str,
        capabilities: Sequence[AgentCapability],
        *,
        version: Optional[str] = None,
    ) -> AgentRecord:
        agent_key = (agent_id or "").strip()
        candidate_key = (candidate_id or "").strip()
        if not agent_key or not candidate_key:
            raise InputError("agent_id and candidate_id are required")
        with self._lock:
            now = self._clock()
            existing = self._agents.get(agent_key)
            record = AgentRecord(
                agent_id=agent_key,
                candidate_id=candidate_key,
                capabilities=list(capabilities),
                registered_at=now,
                version=version,
                pending_tasks=list(existing.pending_tasks) if existing else [],
            )
            self._agents[agent_key] = record
        logger.info(
            "Registered agent %s for candidate %s with capabilities %s",
            agent_key,
            candidate_key,
            [capability.type for capability in capabilities],
        )
        return replace(record)

    def heartbeat(
        self,
        agent_id: str,
        stats: Optional[Dict[str, Any]] = None,
        completed_task_ids: Optional[Iterable[str]] = None,
    ) -> Dict[str, List[Dict[str, Any]]]:
        """Record a heartbeat and hand back tasks the agent has not seen yet."""

        recovered: Optional[AgentRecord] = None
        with self._lock:
            record = self._agents.get(agent_id)
            if record is None:
                raise UnknownAgentError(agent_id)
            now = self._clock()
            record.last_heartbeat_at = now
            if stats:
                record.stats = dict(stats)
            self._prune(record, completed_task_ids)
            if record.stored_state is AgentState.OFFLINE:
                recovered = record
            record.stored_state = AgentState.ONLINE
            new_tasks: List[Dict[str, Any]] = []
            for task in record.pending_tasks:
                if task.delivered_at is None:
                    task.delivered_at = now
                    new_tasks.append(task.to_dict())
            snapshot = replace(record)
        if recovered is not None:
            logger.info("Agent %s is back online", agent_id)
            self._notify(snapshot, AgentState.OFFLINE, AgentState.ONLINE)
        return {"new_tasks": new_tasks}

    def acknowledge_task(self, agent_id: str, task_id: str) -> bool:
        with self._lock:
            record = self._agents.get(agent_id)
            if record is None:
                raise UnknownAgentError(agent_id)
            before = len(record.pending_tasks)
            self._prune(record, [task_id])
            return len(record.pending_tasks) < before

    def acknowledge_candidate_task(self, candidate_id: str, task_id: str) -> bool:
        """Prune ``task_id`` from every agent serving ``candidate_id``."""

        pruned = False
        with self._lock:
            for record in self._agents.values():
                if record.candidate_id != candidate_id:
                    continue
                before = len(record.pending_tasks)
                self._prune(record, [task_id])
                pruned = pruned or len(record.pending_tasks) < before
        return pruned

    def _prune(self, record: AgentRecord, completed: Optional[Iterable[str]]) -> None:
        done = {str(task_id) for task_id in completed or []}
        if done:
            record.pending_tasks = [task for task in record.pending_tasks if task.task_id not in done]

    def push_task(self, candidate_id: str, task: AgentTask) -> bool:
        """Fast-path dispatch: ``True`` only if an online agent accepted the task.

        Liveness is re-checked at call time.  Callers must still enqueue the
        task durably; a ``False`` return is not an error.
        """

        with self._lock:
            agent_id = self.online_agent_for(candidate_id)
            if agent_id is None:
                return False
            record = self._agents[agent_id]
            for existing in record.pending_tasks:
                if existing.task_id == task.task_id:
                    # Re-pushing an unacknowledged task makes the next heartbeat hand it out again.
                    existing.delivered_at = None
                    logger.info("Re-offering task %s to agent %s", task.task_id, agent_id)
                    return True
            if len(record.pending_tasks) >= self.pending_task_limit:
                logger.warning(
                    "Agent %s pending task list is full (%d); not pushing %s",
                    agent_id,
                    self.pending_task_limit,
                    task.task_id,
                )
                return False
            record.pending_tasks.append(replace(task, delivered_at=None))
        logger.info("Pushed task %s to agent %s", task.task_id, agent_id)
        return True

    def sweep(self) -> List[str]:
        """Record ``online -> offline`` transitions; returns the agents that went offline."""

        transitioned: List[AgentRecord] = []
        with self._lock:
            now = self._clock()
            for record in self._agents.values():
                if record.stored_state is not AgentState.ONLINE:
                    continue
                if self._derive(record, now) is AgentState.OFFLINE:
                    record.stored_state = AgentState.OFFLINE
                    transitioned.append(replace(record))
        for record in transitioned:
            logger.warning(
                "Agent %s for candidate %s went offline (last heartbeat %s)",
                record.agent_id,
                record.candidate_id,
                record.last_heartbeat_at,
            )
            self._notify(record, AgentState.ONLINE, AgentState.OFFLINE)
        return [record.agent_id for record in transitioned]

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------
    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "agents": [
                    {
                        "agent_id": record.agent_id,
                        "candidate_id": record.candidate_id,
                        "capabilities": [
                            {
                                "type": capability.type,
                                "configured": capability.configured,
                                "priority": capability.priority,
                                "config": dict(capability.config),
                            }
                            for capability in record.capabilities
                        ],
                        "registered_at": record.registered_at.isoformat(),
                        "last_heartbeat_at": record.last_heartbeat_at.isoformat()
                        if record.last_heartbeat_at
                        else None,
                        "stored_state": record.stored_state.value,
                        "version": record.version,
                        "pending_tasks": [task.to_dict() for task in record.pending_tasks],
                    }
                    for record in self._agents.values()
                ]
            }

    def restore(self, snapshot: Optional[Dict[str, Any]]) -> int:
        """Load agents from ``snapshot`` without overwriting live registrations."""

        restored = 0
        for entry in (snapshot or {}).get("agents", []):
            try:
                record = AgentRecord(
                    agent_id=entry["agent_id"],
                    candidate_id=entry["candidate_id"],
                    capabilities=[
                        AgentCapability.from_payload(item) for item in entry.get("capabilities", [])
                    ],
                    registered_at=_parse_timestamp(entry.get("registered_at")) or self._clock(),
                    last_heartbeat_at=_parse_timestamp(entry.get("last_heartbeat_at")),
                    stored_state=AgentState(entry.get("stored_state", AgentState.REGISTERED.value)),
                    version=entry.get("version"),
                    pending_tasks=[
                        AgentTask(
                            task_id=item["task_id"],
                            kind=item.get("kind", "quote_request"),
                            payload=dict(item.get("payload") or {}),
                            created_at=_parse_timestamp(item.get("created_at")) or self._clock(),
                        )
                        for item in entry.get("pending_tasks", [])
                    ],
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed agent snapshot entry: %r", entry)
                continue
            with self._lock:
                if record.agent_id in self._agents:
                    continue
                self._agents[record.agent_id] = record
            restored += 1
        if restored:
            logger.info("Restored %d agents from snapshot", restored)
        return restored
