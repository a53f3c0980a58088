"""Capabilities the orchestrator consumes but does not implement."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .cancellation import CancellationToken
    from .sessions import ModelConfig


@dataclass
class ExecResult:
    stdout: str
    stderr: str = ""
    exit_code: int = 0


@dataclass
class AgentResult:
    success: bool
    message: str
    type: str = "success"


ToolExecute = Callable[[str], Awaitable[str]]
ToolWriteOnly = Callable[[str], None]
StepCallback = Callable[[str, str], None]


@runtime_checkable
class TerminalCapability(Protocol):
    """A live terminal session per session id.

    ``read_screen`` and ``clear_history`` are optional; callers check for
    them with ``getattr``.
    """

    async def write(self, session_id: str, data: str) -> None: ...

    async def exec(self, session_id: str, command: str) -> ExecResult: ...

    async def get_history(self, session_id: str) -> str: ...


class ModelDriver(Protocol):
    async def run_agent(
        self,
        prompt: str,
        tool_execute: ToolExecute,
        tool_write_only: ToolWriteOnly,
        on_step: StepCallback,
        model_config: ModelConfig | None = None,
        cancel_token: CancellationToken | None = None,
        thinking_enabled: bool = True,
    ) -> AgentResult: ...

    async def summarize_context(self, text: str) -> str: ...


class SnapshotStore(Protocol):
    def read(self) -> dict[str, Any]: ...

    def write(self, snapshot: dict[str, Any]) -> None: ...
