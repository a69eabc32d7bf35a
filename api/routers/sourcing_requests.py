import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.dependencies import get_ingress, get_runtime, http_error
from models.domain import SourcingRequest, utcnow
from services.errors import QuoteBridgeError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/requests", tags=["Sourcing Requests"])


class SubmitRequest(BaseModel):
    request_id: str
    demand_key: str
    embedding: List[float] = Field(..., min_length=1)
    category: Optional[str] = None
    requester_id: Optional[str] = None
    product_name: Optional[str] = None
    quantity: Optional[int] = None
    target_price: Optional[float] = None
    submitted_at: Optional[datetime] = None


class EmbeddingRefreshRequest(BaseModel):
    candidate_id: str
    onboarding: bool = False


@router.post("/submit")
def submit_request(req: SubmitRequest, ingress=Depends(get_ingress)):
    request = SourcingRequest(
        request_id=req.request_id,
        demand_key=req.demand_key,
        embedding=list(req.embedding),
        category=req.category,
        requester_id=req.requester_id,
        product_name=req.product_name,
        quantity=req.quantity,
        target_price=req.target_price,
        submitted_at=req.submitted_at or utcnow(),
    )
    try:
        result = ingress.submit_request(request)
    except QuoteBridgeError as exc:
        raise http_error(exc)
    return {"job_id": result.job_id, "status": result.status}


@router.get("/{demand_key}/results")
def latest_results(demand_key: str, runtime=Depends(get_runtime)):
    """Match results of the newest request submitted for ``demand_key``."""
    results = runtime.orchestrator.latest_results(demand_key)
    return {"demand_key": demand_key, "results": [result.to_dict() for result in results]}


@router.get("/{request_id}/jobs")
def request_jobs(request_id: str, runtime=Depends(get_runtime)):
    jobs = runtime.jobs.list_for_request(request_id)
    return {"request_id": request_id, "jobs": [job.to_dict() for job in jobs]}


@router.post("/embeddings/refresh")
def refresh_embedding(req: EmbeddingRefreshRequest, ingress=Depends(get_ingress)):
    try:
        result = ingress.refresh_candidate_embedding(req.candidate_id, onboarding=req.onboarding)
    except QuoteBridgeError as exc:
        raise http_error(exc)
    return {"job_id": result.job_id, "status": result.status}
