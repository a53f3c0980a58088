"""Session records: working directory and per-session model settings."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable

from ..config import AIConfig

logger = logging.getLogger(__name__)


@dataclass
class ModelConfig:
    provider: str = "ollama"
    model: str = "llama3"
    context_window: int = 4000
    max_steps: int = 100

    @classmethod
    def from_ai_config(cls, ai: AIConfig) -> ModelConfig:
        return cls(
            provider=ai.provider,
            model=ai.model,
            context_window=ai.context_window,
            max_steps=ai.max_agent_steps,
        )


@dataclass
class Session:
    id: str
    cwd: str = ""
    model: ModelConfig = field(default_factory=ModelConfig)
    dirty: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cwd": self.cwd,
            "dirty": self.dirty,
            "model": {
                "provider": self.model.provider,
                "model": self.model.model,
                "context_window": self.model.context_window,
                "max_steps": self.model.max_steps,
            },
        }


class SessionRegistry:
    """Read-mostly session records keyed by id."""

    def __init__(self, ai_config: AIConfig | None = None) -> None:
        self._ai_config = ai_config or AIConfig()
        self._sessions: dict[str, Session] = {}
        self._close_hooks: list[Callable[[str], None]] = []

    def default_model(self) -> ModelConfig:
        return ModelConfig.from_ai_config(self._ai_config)

    def open(
        self,
        session_id: str | None = None,
        cwd: str = "",
        model: ModelConfig | None = None,
    ) -> Session:
        sid = session_id or uuid.uuid4().hex[:12]
        session = Session(id=sid, cwd=cwd, model=model or self.default_model())
        self._sessions[sid] = session
        logger.info("Opened session %s (cwd=%s)", sid, cwd or ".")
        return session

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            session = Session(id=session_id, model=self.default_model())
            self._sessions[session_id] = session
        return session

    def exists(self, session_id: str) -> bool:
        return session_id in self._sessions

    def list(self) -> list[Session]:
        return list(self._sessions.values())

    def mark_dirty(self, session_id: str, dirty: bool = True) -> None:
        self.get(session_id).dirty = dirty

    def on_close(self, hook: Callable[[str], None]) -> None:
        self._close_hooks.append(hook)

    def close(self, session_id: str) -> bool:
        if self._sessions.pop(session_id, None) is None:
            return False
        for hook in self._close_hooks:
            try:
                hook(session_id)
            except Exception:
                logger.exception("Session close hook failed for %s", session_id)
        logger.info("Closed session %s", session_id)
        return True
