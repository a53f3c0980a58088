"""Request and response bodies for the HTTP API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class SessionCreate(BaseModel):
    id: str | None = Field(default=None, pattern=r"^[a-zA-Z0-9_-]{1,64}$")
    cwd: str = ""
    provider: str | None = None
    model: str | None = None
    context_window: int | None = Field(default=None, ge=1)
    max_steps: int | None = Field(default=None, ge=1, le=1000)


class RunRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=20_000)


class RunResponse(BaseModel):
    status: Literal["started", "queued"]
    queue_item_id: str | None = None


class PermissionDecision(BaseModel):
    choice: Literal["allow", "always", "deny"]


class PermissionResponse(BaseModel):
    outcome: str
    pending_command: str | None = None


class AgentSettingsUpdate(BaseModel):
    always_allow: bool | None = None
    overlay_visible: bool | None = None
    thinking_enabled: bool | None = None


class CommandRequest(BaseModel):
    command: str = Field(min_length=1, max_length=20_000)


class KeysRequest(BaseModel):
    keys: str = Field(min_length=1, max_length=1000)


class ContextUsageResponse(BaseModel):
    used: int
    limit: int
    percent: float
    summarized: bool
