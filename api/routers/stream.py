"""Server-sent event stream of request progress and alerts."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from api.dependencies import get_runtime
from services.event_bus import ALERT_TOPIC, EventStream, progress_topic

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/progress", tags=["Streaming"])


def _format_sse(event: str, payload: Dict[str, Any]) -> str:
    """Convert an event payload into Server-Sent Events wire format."""

    message = json.dumps(payload, ensure_ascii=False)
    return f"event: {event}\ndata: {message}\n\n"


async def _stream_events(
    stream: EventStream,
    event: str,
    *,
    limit: Optional[int] = None,
    poll_seconds: float = 1.0,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncGenerator[str, None]:
    sent = 0
    try:
        while limit is None or sent < limit:
            if is_disconnected is not None and await is_disconnected():
                break
            payload = await asyncio.to_thread(stream.get, poll_seconds)
            if payload is None:
                yield ": keep-alive\n\n"
                continue
            yield _format_sse(event, payload)
            sent += 1
    finally:
        stream.close()


@router.get("/alerts/stream")
async def alert_stream(
    request: Request,
    limit: Optional[int] = Query(default=None, ge=1),
    runtime=Depends(get_runtime),
):
    stream = runtime.event_bus.open_stream(ALERT_TOPIC)
    return StreamingResponse(
        _stream_events(stream, "alert", limit=limit, is_disconnected=request.is_disconnected),
        media_type="text/event-stream",
    )


@router.get("/{requester_id}/stream")
async def progress_stream(
    requester_id: str,
    request: Request,
    limit: Optional[int] = Query(default=None, ge=1),
    runtime=Depends(get_runtime),
):
    stream = runtime.event_bus.open_stream(progress_topic(requester_id))
    return StreamingResponse(
        _stream_events(stream, "progress", limit=limit, is_disconnected=request.is_disconnected),
        media_type="text/event-stream",
    )
