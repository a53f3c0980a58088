"""In-memory terminal and model driver used across the unit tests."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from termpilot.errors import DriverError
from termpilot.services.protocols import AgentResult, ExecResult


class FakeTerminal:
    """Records writes and answers ``exec`` from a per-command script."""

    exec_echoes = False

    def __init__(self, history: str = "user@host:~$ ") -> None:
        self.history: dict[str, str] = {}
        self.default_history = history
        self.writes: list[tuple[str, str]] = []
        self.execs: list[tuple[str, str]] = []
        self.finished: list[tuple[str, str]] = []
        self.results: dict[str, ExecResult] = {}
        self.exec_delay = 0.0
        self.opened: list[str] = []
        self.closed: list[str] = []

    def open_session(self, session_id: str, cwd: str | None = None) -> None:
        self.opened.append(session_id)
        self.history.setdefault(session_id, self.default_history)

    def close_session(self, session_id: str) -> None:
        self.closed.append(session_id)

    async def write(self, session_id: str, data: str) -> None:
        self.writes.append((session_id, data))

    async def exec(self, session_id: str, command: str) -> ExecResult:
        self.execs.append((session_id, command))
        if self.exec_delay:
            await asyncio.sleep(self.exec_delay)
        self.finished.append((session_id, command))
        return self.results.get(command, ExecResult(stdout=f"ran {command}\n"))

    async def get_history(self, session_id: str) -> str:
        return self.history.get(session_id, self.default_history)

    def clear_history(self, session_id: str) -> None:
        self.history[session_id] = ""

    def written(self, session_id: str | None = None) -> str:
        return "".join(data for sid, data in self.writes if session_id is None or sid == session_id)


class FullScreenTerminal(FakeTerminal):
    """Shows ``screen`` until ``exit_keys`` are written, then a shell prompt."""

    def __init__(self, screen: str, exit_keys: str, prompt: str = "user@host:~$ ") -> None:
        super().__init__(history=prompt)
        self.screen = screen
        self.exit_keys = exit_keys
        self.prompt = prompt

    def read_screen(self, session_id: str, lines: int = 30) -> str:
        return self.screen

    async def write(self, session_id: str, data: str) -> None:
        await super().write(session_id, data)
        if data == self.exit_keys:
            self.screen = self.prompt


AgentScript = Callable[..., Awaitable[AgentResult]]


async def _answer_immediately(prompt: str, tool_execute, tool_write_only, on_step, cancel_token) -> AgentResult:
    on_step("thinking", "")
    return AgentResult(success=True, message="All done.")


class FakeDriver:
    """Runs ``script(prompt, tool_execute, tool_write_only, on_step, cancel_token)``."""

    def __init__(self, script: AgentScript | None = None, summary: str | Exception = "SUMMARY") -> None:
        self.script = script or _answer_immediately
        self.summary = summary
        self.prompts: list[str] = []
        self.summarized: list[str] = []
        self.thinking_flags: list[bool] = []

    async def run_agent(
        self,
        prompt: str,
        tool_execute,
        tool_write_only,
        on_step,
        model_config: Any = None,
        cancel_token: Any = None,
        thinking_enabled: bool = True,
    ) -> AgentResult:
        self.prompts.append(prompt)
        self.thinking_flags.append(thinking_enabled)
        return await self.script(prompt, tool_execute, tool_write_only, on_step, cancel_token)

    async def summarize_context(self, text: str) -> str:
        self.summarized.append(text)
        if isinstance(self.summary, Exception):
            raise self.summary
        return self.summary


def failing_summary(message: str = "model offline") -> DriverError:
    return DriverError(message)


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
