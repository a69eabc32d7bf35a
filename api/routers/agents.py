from fastapi import APIRouter, Depends
from typing import List, Dict, Any, Optional
import logging
from pydantic import BaseModel, Field

from api.dependencies import get_ingress, get_runtime, http_error
from services.errors import QuoteBridgeError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agents", tags=["Agents"])


class CapabilityModel(BaseModel):
    type: str
    configured: bool = True
    priority: Optional[int] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class RegisterRequest(BaseModel):
    agent_id: str
    candidate_id: str
    capabilities: List[CapabilityModel] = Field(default_factory=list)
    version: Optional[str] = None


class HeartbeatRequest(BaseModel):
    agent_id: str
    stats: Dict[str, Any] = Field(default_factory=dict)
    completed_task_ids: List[str] = Field(default_factory=list)


class AckRequest(BaseModel):
    agent_id: str
    task_id: str


@router.post("/register")
def register_agent(req: RegisterRequest, ingress=Depends(get_ingress)):
    try:
        return ingress.register_agent(
            req.agent_id,
            req.candidate_id,
            [capability.model_dump() for capability in req.capabilities],
            version=req.version,
        )
    except QuoteBridgeError as exc:
        raise http_error(exc)


@router.post("/heartbeat")
def heartbeat(req: HeartbeatRequest, ingress=Depends(get_ingress)):
    """Record liveness; unknown agents get 404 and must re-register."""
    try:
        return ingress.heartbeat(req.agent_id, req.stats, req.completed_task_ids)
    except QuoteBridgeError as exc:
        raise http_error(exc)


@router.post("/ack")
def acknowledge(req: AckRequest, ingress=Depends(get_ingress)):
    try:
        return {"acknowledged": ingress.acknowledge_task(req.agent_id, req.task_id)}
    except QuoteBridgeError as exc:
        raise http_error(exc)


@router.get("/status")
def list_status(runtime=Depends(get_runtime)):
    agents = runtime.agent_registry.list_status()
    return {"agents": agents, "total": len(agents)}

