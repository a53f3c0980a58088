"""Session, agent run, permission, queue and context endpoints."""

from __future__ import annotations

import logging
import re

from fastapi import APIRouter, HTTPException, Request, Response

from ..models import (
    AgentSettingsUpdate,
    CommandRequest,
    ContextUsageResponse,
    KeysRequest,
    PermissionDecision,
    PermissionResponse,
    RunRequest,
    RunResponse,
    SessionCreate,
)
from ..services.runtime import AgentRuntime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["agent"])

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")


def _runtime(request: Request) -> AgentRuntime:
    return request.app.state.runtime


def _session(request: Request, session_id: str) -> AgentRuntime:
    if not _SESSION_ID_RE.match(session_id):
        logger.warning("Invalid session ID format: %r", session_id[:80])
        raise HTTPException(status_code=400, detail="Invalid session ID format")
    runtime = _runtime(request)
    if not runtime.sessions.exists(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return runtime


@router.post("/sessions", status_code=201)
async def open_session(body: SessionCreate, request: Request):
    runtime = _runtime(request)
    model = runtime.sessions.default_model()
    if body.provider:
        model.provider = body.provider
    if body.model:
        model.model = body.model
    if body.context_window:
        model.context_window = body.context_window
    if body.max_steps:
        model.max_steps = body.max_steps
    session = runtime.open_session(body.id, cwd=body.cwd, model=model)
    return session.to_dict()


@router.get("/sessions")
async def list_sessions(request: Request):
    return [s.to_dict() for s in _runtime(request).sessions.list()]


@router.delete("/sessions/{session_id}", status_code=204)
async def close_session(session_id: str, request: Request):
    runtime = _session(request, session_id)
    runtime.close_session(session_id)
    return Response(status_code=204)


@router.get("/sessions/{session_id}/agent")
async def get_agent_state(session_id: str, request: Request):
    runtime = _session(request, session_id)
    return runtime.state_event(session_id)["data"]


@router.patch("/sessions/{session_id}/agent")
async def update_agent_settings(session_id: str, body: AgentSettingsUpdate, request: Request):
    runtime = _session(request, session_id)
    changes = body.model_dump(exclude_none=True)
    if changes:
        runtime.store.update(session_id, **changes)
    return runtime.state_event(session_id)["data"]


@router.post("/sessions/{session_id}/agent/runs", status_code=202, response_model=RunResponse)
async def start_run(session_id: str, body: RunRequest, request: Request):
    runtime = _session(request, session_id)
    prompt = body.prompt.strip()
    if not prompt:
        raise HTTPException(status_code=400, detail="Prompt must not be empty")
    task = runtime.controller.start_run(session_id, prompt)
    if task is None:
        items = runtime.queue.items(session_id)
        return RunResponse(status="queued", queue_item_id=items[-1].id if items else None)
    return RunResponse(status="started")


@router.post("/sessions/{session_id}/agent/stop")
async def stop_run(session_id: str, request: Request):
    runtime = _session(request, session_id)
    stopped = runtime.controller.stop_run(session_id)
    return {"stopped": stopped}


@router.post("/sessions/{session_id}/agent/permission", response_model=PermissionResponse)
async def respond_permission(session_id: str, body: PermissionDecision, request: Request):
    runtime = _session(request, session_id)
    pending = runtime.store.get(session_id).pending_command
    outcome = runtime.permissions.respond(session_id, body.choice)
    if outcome == "none":
        raise HTTPException(status_code=409, detail="No command is waiting for permission")
    logger.info("Permission %s for session %s", outcome, session_id)
    return PermissionResponse(outcome=outcome, pending_command=pending)


@router.post("/sessions/{session_id}/agent/reset", status_code=204)
async def reset_agent(session_id: str, request: Request):
    runtime = _session(request, session_id)
    runtime.controller.reset_session(session_id)
    return Response(status_code=204)


@router.post("/sessions/{session_id}/commands", status_code=202)
async def send_command(session_id: str, body: CommandRequest, request: Request):
    runtime = _session(request, session_id)
    item = await runtime.controller.send_command(session_id, body.command)
    if item is not None:
        return {"status": "queued", "queue_item_id": item.id}
    return {"status": "sent"}


@router.post("/sessions/{session_id}/keys")
async def send_keys(session_id: str, body: KeysRequest, request: Request):
    runtime = _session(request, session_id)
    description = await runtime.controller.send_keys(session_id, body.keys)
    return {"description": description}


@router.get("/sessions/{session_id}/queue")
async def list_queue(session_id: str, request: Request):
    runtime = _session(request, session_id)
    return [item.to_dict() for item in runtime.queue.items(session_id)]


@router.delete("/sessions/{session_id}/queue/{item_id}", status_code=204)
async def withdraw_queue_item(session_id: str, item_id: str, request: Request):
    runtime = _session(request, session_id)
    if not runtime.queue.withdraw(session_id, item_id):
        raise HTTPException(status_code=404, detail="Queue item not found")
    return Response(status_code=204)


@router.get("/sessions/{session_id}/context")
async def get_context(session_id: str, request: Request):
    runtime = _session(request, session_id)
    return {
        "context": await runtime.context.get_context(session_id),
        "summarized": runtime.context.is_summarized(session_id),
    }


@router.get("/sessions/{session_id}/context/usage", response_model=ContextUsageResponse)
async def get_context_usage(session_id: str, request: Request):
    runtime = _session(request, session_id)
    usage = await runtime.context.usage(session_id)
    return ContextUsageResponse(
        used=usage.used, limit=usage.limit, percent=usage.percent, summarized=usage.summarized
    )


@router.post("/sessions/{session_id}/context/summarize")
async def summarize_context(session_id: str, request: Request):
    runtime = _session(request, session_id)
    summarized = await runtime.context.check_and_maybe_summarize(session_id)
    return {"summarized": summarized}


@router.post("/sessions/{session_id}/context/reset", status_code=204)
async def reset_context(session_id: str, request: Request):
    runtime = _session(request, session_id)
    runtime.context.reset(session_id)
    return Response(status_code=204)


@router.post("/sessions/{session_id}/context/clear", status_code=204)
async def clear_context(session_id: str, request: Request):
    runtime = _session(request, session_id)
    await runtime.context.clear(session_id)
    return Response(status_code=204)


@router.get("/sessions/{session_id}/terminal/status")
async def terminal_status(session_id: str, request: Request):
    runtime = _session(request, session_id)
    return await runtime.controller.terminal_status(session_id)


@router.get("/sessions/{session_id}/history")
async def command_history(session_id: str, request: Request):
    runtime = _session(request, session_id)
    return {"commands": runtime.store.command_history(session_id)}
