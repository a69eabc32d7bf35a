"""Domain records shared by the matching and fulfillment pipeline.

Requests, candidates and their scored matches flow from the candidate scorer
into the orchestrator, which turns each selected match into a
:class:`FulfillmentJob`.  Quotes arrive as :class:`QuoteOffer` objects from a
data source adapter or from an agent callback, and every state change is
reported through :class:`ProgressEvent` and :class:`AlertEvent` records.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FulfillmentMode(str, Enum):
    """How a quote is being obtained for a request/candidate pair."""

    DIRECT_SOURCE = "direct_source"
    AGENT_DISPATCH = "agent_dispatch"
    MANUAL = "manual"


class JobStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    TIMEOUT = "timeout"
    FULFILLED = "fulfilled"
    FAILED = "failed"
    ESCALATED = "escalated"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.FULFILLED, JobStatus.FAILED, JobStatus.ESCALATED)


OPEN_JOB_STATUSES = (JobStatus.QUEUED, JobStatus.IN_PROGRESS)


class AgentState(str, Enum):
    REGISTERED = "registered"
    ONLINE = "online"
    OFFLINE = "offline"


class AlertKind(str, Enum):
    TIMEOUT = "timeout"
    FAILED = "failed"
    DEGRADED = "degraded"
    RECOVERED = "recovered"


class ProgressStage(str, Enum):
    STARTED = "started"
    SOURCE_FOUND = "source_found"
    QUEUED = "queued"
    QUOTE_GENERATED = "quote_generated"
    DELIVERED = "delivered"
    ESCALATED = "escalated"


@dataclass(frozen=True)
class SourcingRequest:
    """A buyer's sourcing demand; superseded by a newer request, never mutated."""

    request_id: str
    demand_key: str
    embedding: List[float]
    category: Optional[str] = None
    requester_id: Optional[str] = None
    product_name: Optional[str] = None
    quantity: Optional[int] = None
    target_price: Optional[float] = None
    submitted_at: datetime = field(default_factory=utcnow)


@dataclass
class Candidate:
    candidate_id: str
    embedding: Optional[List[float]]
    category: Optional[str] = None
    is_live: bool = False
    response_rate: float = 0.0
    certification_verified: float = 0.0
    quality_rating: float = 0.0
    trust_override: Optional[float] = None
    embedding_updated_at: Optional[datetime] = None
    profile_updated_at: Optional[datetime] = None
    profile_text: Optional[str] = None
    is_active: bool = True

    @property
    def embedding_is_stale(self) -> bool:
        if self.profile_updated_at is None or self.embedding_updated_at is None:
            return False
        return self.profile_updated_at > self.embedding_updated_at


@dataclass
class MatchResult:
    request_id: str
    candidate_id: str
    semantic_score: float
    responsiveness_score: float
    trust_score: float
    composite_score: float
    rank: int = 0
    category_fallback: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return payload


@dataclass
class AgentCapability:
    type: str
    configured: bool = True
    priority: Optional[int] = None
    config: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AgentCapability":
        kind = str(payload.get("type") or "").strip()
        if not kind:
            raise ValueError("capability type is required")
        priority = payload.get("priority")
        return cls(
            type=kind,
            configured=bool(payload.get("configured", True)),
            priority=int(priority) if priority is not None else None,
            config=dict(payload.get("config") or {}),
        )


@dataclass
class AgentTask:
    task_id: str
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "kind": self.kind,
            "payload": dict(self.payload),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class AgentRecord:
    agent_id: str
    candidate_id: str
    capabilities: List[AgentCapability] = field(default_factory=list)
    registered_at: datetime = field(default_factory=utcnow)
    last_heartbeat_at: Optional[datetime] = None
    stored_state: AgentState = AgentState.REGISTERED
    pending_tasks: List[AgentTask] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)
    version: Optional[str] = None


@dataclass
class TierPrice:
    quantity: int
    unit_price: float


@dataclass
class QuoteOffer:
    """A priced quotation; ``confidence`` reflects source authority and freshness."""

    unit_price: float
    currency: str = "USD"
    moq: Optional[int] = None
    lead_time_days: Optional[int] = None
    tier_pricing: List[TierPrice] = field(default_factory=list)
    payment_terms: Optional[str] = None
    shipping_terms: Optional[str] = None
    product_name: Optional[str] = None
    is_verified: bool = False
    provenance: str = ""
    confidence: float = 0.0
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload.pop("raw", None)
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], *, provenance: str, confidence: float) -> "QuoteOffer":
        if "unit_price" not in payload:
            raise ValueError("unit_price is required")
        tiers = [
            TierPrice(quantity=int(item["quantity"]), unit_price=float(item["unit_price"]))
            for item in payload.get("tier_pricing") or []
        ]
        moq = payload.get("moq")
        lead_time = payload.get("lead_time_days")
        return cls(
            unit_price=float(payload["unit_price"]),
            currency=str(payload.get("currency") or "USD"),
            moq=int(moq) if moq is not None else None,
            lead_time_days=int(lead_time) if lead_time is not None else None,
            tier_pricing=tiers,
            payment_terms=payload.get("payment_terms"),
            shipping_terms=payload.get("shipping_terms"),
            product_name=payload.get("product_name"),
            is_verified=bool(payload.get("is_verified", False)),
            provenance=provenance,
            confidence=confidence,
            raw=dict(payload),
        )


@dataclass
class FulfillmentJob:
    job_id: str
    request_id: str
    candidate_id: Optional[str]
    mode: FulfillmentMode
    status: JobStatus = JobStatus.QUEUED
    requester_id: Optional[str] = None
    attempt_count: int = 1
    max_attempts: int = 3
    deadline: Optional[datetime] = None
    enqueued_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_error: Optional[str] = None
    agent_id: Optional[str] = None
    offer: Optional[QuoteOffer] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "request_id": self.request_id,
            "candidate_id": self.candidate_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "requester_id": self.requester_id,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "enqueued_at": self.enqueued_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_error": self.last_error,
            "agent_id": self.agent_id,
            "offer": self.offer.to_dict() if self.offer else None,
        }


@dataclass
class ProgressEvent:
    stage: ProgressStage
    request_id: str
    candidate_id: Optional[str] = None
    message: str = ""
    requester_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "requestId": self.request_id,
            "candidateId": self.candidate_id,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class AlertEvent:
    kind: AlertKind
    job_id: Optional[str]
    candidate_id: Optional[str]
    message: str
    agent_id: Optional[str] = None
    retry_count: int = 0
    auto_retried: bool = False
    timestamp: datetime = field(default_factory=utcnow)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "jobId": self.job_id,
            "candidateId": self.candidate_id,
            "message": self.message,
            "agentId": self.agent_id,
            "retryCount": self.retry_count,
            "autoRetried": self.auto_retried,
            "timestamp": self.timestamp.isoformat(),
        }
