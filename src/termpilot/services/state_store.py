"""Per-session agent state: thread, run flags, pending permission, tokens."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field, fields
from typing import Any, Callable

from .cancellation import CancellationToken

logger = logging.getLogger(__name__)

STEP_KINDS = frozenset(
    [
        "thinking",
        "streaming",
        "thought",
        "executing",
        "executed",
        "question",
        "done",
        "failed",
        "error",
        "separator",
    ]
)
TERMINAL_KINDS = frozenset(["done", "failed", "error", "question"])
TRANSIENT_KINDS = frozenset(["thinking", "streaming"])

_HISTORY_LIMIT = 500


@dataclass
class AgentStep:
    kind: str
    output: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "output": self.output}


@dataclass
class AgentState:
    thread: list[AgentStep] = field(default_factory=list)
    running: bool = False
    thinking: bool = False
    pending_command: str | None = None
    permission_resolver: Callable[[bool], Any] | None = None
    always_allow: bool = False
    overlay_visible: bool = False
    thinking_enabled: bool = True
    pending_dangerous: bool = False
    awaiting_confirmation: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "thread": [s.to_dict() for s in self.thread],
            "running": self.running,
            "thinking": self.thinking,
            "pending_command": self.pending_command,
            "always_allow": self.always_allow,
            "overlay_visible": self.overlay_visible,
            "thinking_enabled": self.thinking_enabled,
            "pending_dangerous": self.pending_dangerous,
            "awaiting_confirmation": self.awaiting_confirmation,
        }


_STATE_FIELDS = frozenset(f.name for f in fields(AgentState))

RunningListener = Callable[[str, bool], None]
ChangeListener = Callable[[str], None]


class AgentStateStore:
    """Arena of agent states keyed by session id.

    All mutation goes through this class so listeners see every change.
    States are created lazily with defaults on first access.
    """

    def __init__(self) -> None:
        self._states: dict[str, AgentState] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._history: dict[str, deque[str]] = {}
        self._running_listeners: list[RunningListener] = []
        self._change_listeners: list[ChangeListener] = []

    # -- listeners --

    def add_running_listener(self, listener: RunningListener) -> None:
        self._running_listeners.append(listener)

    def add_change_listener(self, listener: ChangeListener) -> None:
        self._change_listeners.append(listener)

    def _notify_change(self, session_id: str) -> None:
        for listener in list(self._change_listeners):
            try:
                listener(session_id)
            except Exception:
                logger.exception("State change listener failed for %s", session_id)

    def _notify_running(self, session_id: str, running: bool) -> None:
        for listener in list(self._running_listeners):
            try:
                listener(session_id, running)
            except Exception:
                logger.exception("Running listener failed for %s", session_id)

    # -- state access --

    def get(self, session_id: str) -> AgentState:
        state = self._states.get(session_id)
        if state is None:
            state = AgentState()
            self._states[session_id] = state
        return state

    def peek(self, session_id: str) -> AgentState | None:
        return self._states.get(session_id)

    def session_ids(self) -> list[str]:
        return list(self._states)

    def update(self, session_id: str, **changes: Any) -> AgentState:
        """Merge ``changes`` into the session state.

        ``pending_command`` and ``permission_resolver`` must end up both set
        or both cleared.
        """
        unknown = set(changes) - _STATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown agent state field(s): {', '.join(sorted(unknown))}")

        state = self.get(session_id)
        pending = changes.get("pending_command", state.pending_command)
        resolver = changes.get("permission_resolver", state.permission_resolver)
        if (pending is None) != (resolver is None):
            raise ValueError("pending_command and permission_resolver must be set or cleared together")

        was_running = state.running
        for name, value in changes.items():
            setattr(state, name, value)

        self._notify_change(session_id)
        if state.running != was_running:
            self._notify_running(session_id, state.running)
        return state

    def append_step(self, session_id: str, kind: str, output: str) -> AgentStep:
        if kind not in STEP_KINDS:
            logger.warning("Unknown step kind %r for session %s", kind, session_id)
        step = AgentStep(kind=kind, output=output)
        self.get(session_id).thread.append(step)
        self._notify_change(session_id)
        return step

    def replace_last_step(self, session_id: str, kind: str, output: str) -> AgentStep:
        thread = self.get(session_id).thread
        step = AgentStep(kind=kind, output=output)
        if thread:
            thread[-1] = step
        else:
            thread.append(step)
        self._notify_change(session_id)
        return step

    def set_thread(self, session_id: str, thread: list[AgentStep]) -> None:
        self.get(session_id).thread = list(thread)
        self._notify_change(session_id)

    def clear_thread(self, session_id: str) -> None:
        self.set_thread(session_id, [])

    def delete(self, session_id: str) -> None:
        """Drop the session's state entirely, cancelling any live run token."""
        self.cancel_token(session_id)
        self._history.pop(session_id, None)
        if self._states.pop(session_id, None) is not None:
            self._notify_change(session_id)

    # -- cancellation tokens --

    def register_token(self, session_id: str, token: CancellationToken) -> None:
        previous = self._tokens.get(session_id)
        if previous is not None and previous is not token:
            previous.cancel()
        self._tokens[session_id] = token

    def current_token(self, session_id: str) -> CancellationToken | None:
        return self._tokens.get(session_id)

    def unregister_token(self, session_id: str, token: CancellationToken) -> None:
        if self._tokens.get(session_id) is token:
            del self._tokens[session_id]

    def cancel_token(self, session_id: str) -> bool:
        token = self._tokens.pop(session_id, None)
        if token is None:
            return False
        token.cancel()
        return True

    # -- command history --

    def record_command(self, session_id: str, command: str) -> None:
        command = command.strip()
        if not command:
            return
        history = self._history.setdefault(session_id, deque(maxlen=_HISTORY_LIMIT))
        if history and history[-1] == command:
            return
        history.append(command)

    def command_history(self, session_id: str) -> list[str]:
        return list(self._history.get(session_id, ()))

    # -- persistence --

    def snapshot(self) -> dict[str, list[dict[str, str]]]:
        """Serializable {session_id: thread} view, transient steps removed."""
        return {
            sid: [s.to_dict() for s in state.thread if s.kind not in TRANSIENT_KINDS]
            for sid, state in self._states.items()
            if state.thread
        }

    def load_snapshot(self, snapshot: dict[str, list[dict[str, str]]]) -> None:
        for sid, raw_thread in snapshot.items():
            thread = [
                AgentStep(kind=str(item.get("kind", "")), output=str(item.get("output", "")))
                for item in raw_thread
                if isinstance(item, dict)
            ]
            state = self.get(sid)
            state.thread = thread
            state.overlay_visible = bool(thread)
