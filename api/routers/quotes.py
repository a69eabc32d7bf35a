import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel

from api.dependencies import get_ingress, http_error
from services.errors import CallbackAuthError, QuoteBridgeError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/quotes", tags=["Quotes"])


class CallbackRequest(BaseModel):
    task_id: str
    agent_id: Optional[str] = None
    offer: Dict[str, Any]


@router.post("/callback")
def quote_callback(
    req: CallbackRequest,
    ingress=Depends(get_ingress),
    x_agent_secret: Optional[str] = Header(default=None),
    x_agent_signature: Optional[str] = Header(default=None),
):
    """Supplier agent pushes a completed quote, signed with HMAC-SHA256 over ``offer``."""
    try:
        job = ingress.callback(
            req.task_id,
            req.offer,
            x_agent_signature,
            x_agent_secret,
            agent_id=req.agent_id,
        )
    except CallbackAuthError as exc:
        logger.warning("Rejected callback for task %s: %s", req.task_id, exc)
        raise http_error(exc)
    except QuoteBridgeError as exc:
        raise http_error(exc)
    return {"status": job.status.value, "job_id": job.job_id}
