"""API routes for reading, streaming and clearing the operator log."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

from fastapi import APIRouter, Query, Request
from sse_starlette.sse import EventSourceResponse

from appdeploy.models import LogTextResponse
from appdeploy.storage.log_buffer import LogBuffer

router = APIRouter(prefix="/api/v1/logs", tags=["logs"])

HEARTBEAT_INTERVAL = 15.0


def _get_buffer(request: Request) -> LogBuffer:
    return request.app.state.log_buffer


@router.get("", response_model=LogTextResponse)
async def get_log(
    request: Request,
    tail: int | None = Query(default=None, ge=1, description="Only the last N characters"),
) -> LogTextResponse:
    buffer = _get_buffer(request)
    text = buffer.text
    if tail is not None:
        text = text[-tail:]
    return LogTextResponse(text=text, length=buffer.length, max_length=buffer.max_length)


@router.delete("")
async def clear_log(request: Request) -> dict:
    orchestrator = request.app.state.orchestrator
    if orchestrator is not None:
        orchestrator.clear_log()
    else:
        _get_buffer(request).clear()
    return {"status": "cleared"}


@router.get("/stream")
async def stream_log(request: Request) -> EventSourceResponse:
    """Stream log updates via Server-Sent Events.

    The first event is a ``snapshot`` of the retained text. After that each
    flush arrives as an ``append`` event and each clear as a ``clear`` event.
    """
    buffer = _get_buffer(request)

    async def event_generator():
        queue = buffer.subscribe()
        try:
            yield {"event": "snapshot", "data": json.dumps({"text": buffer.text})}
            while True:
                if await request.is_disconnected():
                    break
                try:
                    kind, chunk = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_INTERVAL)
                    yield {"event": kind, "data": json.dumps({"text": chunk})}
                except asyncio.TimeoutError:
                    yield {
                        "event": "heartbeat",
                        "data": json.dumps({
                            "time": datetime.now(timezone.utc).isoformat(),
                            "length": buffer.length,
                        }),
                    }
        finally:
            buffer.unsubscribe(queue)

    return EventSourceResponse(event_generator())
