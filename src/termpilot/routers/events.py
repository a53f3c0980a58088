"""SSE stream of agent state changes and cross-session notifications."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from sse_starlette.sse import EventSourceResponse

from ..services.event_bus import GLOBAL_CHANNEL, session_channel

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")


@router.get("/events")
async def event_stream(request: Request, session_id: str | None = None):
    """Long-lived SSE connection.

    Subscribes to:
    - ``global`` always (run completion notices from every session)
    - ``session:{session_id}`` when following one session's agent state
    """
    if session_id is not None and not _SESSION_ID_RE.match(session_id):
        raise HTTPException(status_code=400, detail="Invalid session ID format")

    runtime = request.app.state.runtime
    event_bus = runtime.bus
    global_queue = event_bus.subscribe(GLOBAL_CHANNEL)

    channel: str | None = None
    session_queue: asyncio.Queue[dict[str, Any]] | None = None
    if session_id:
        channel = session_channel(session_id)
        session_queue = event_bus.subscribe(channel)

    async def generate():
        try:
            if session_id:
                initial = runtime.state_event(session_id)
                yield {"event": initial["type"], "data": json.dumps(initial["data"])}
            while True:
                if await request.is_disconnected():
                    break

                event = None
                try:
                    event = global_queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass

                if event is None and session_queue is not None:
                    try:
                        event = session_queue.get_nowait()
                    except asyncio.QueueEmpty:
                        pass

                if event is None:
                    await asyncio.sleep(0.05)
                    continue

                yield {"event": event.get("type", "message"), "data": json.dumps(event.get("data", {}))}
        finally:
            event_bus.unsubscribe(GLOBAL_CHANNEL, global_queue)
            if channel and session_queue is not None:
                event_bus.unsubscribe(channel, session_queue)

    return EventSourceResponse(generate())
