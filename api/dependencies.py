from fastapi import HTTPException, Request

from services.errors import (
    CallbackAuthError,
    InputError,
    QueueUnavailableError,
    UnknownAgentError,
)


def get_runtime(request: Request):
    runtime = getattr(request.app.state, "runtime", None)
    if not runtime:
        raise HTTPException(status_code=503, detail="QuoteBridge runtime is not available.")
    return runtime


def get_ingress(request: Request):
    return get_runtime(request).ingress


def http_error(exc: Exception) -> HTTPException:
    """Map the pipeline error taxonomy onto HTTP status codes."""

    if isinstance(exc, UnknownAgentError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InputError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, CallbackAuthError):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, QueueUnavailableError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail="Internal error")
