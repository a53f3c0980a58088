"""Tests for the CLI permission prompt and thread rendering."""

from __future__ import annotations

import asyncio
import io
from unittest.mock import AsyncMock, MagicMock

import pytest
from fakes import FakeDriver, FakeTerminal
from rich.console import Console

from termpilot.cli import renderer
from termpilot.cli.runner import ask_permission
from termpilot.config import AppConfig
from termpilot.services.runtime import build_runtime
from termpilot.services.state_store import AgentState, AgentStep


@pytest.fixture
def output(monkeypatch: pytest.MonkeyPatch) -> io.StringIO:
    buf = io.StringIO()
    monkeypatch.setattr(renderer, "console", Console(file=buf, width=120, color_system=None))
    return buf


def _prompt(*answers) -> MagicMock:
    session = MagicMock()
    session.prompt_async = AsyncMock(side_effect=list(answers))
    return session


async def _request(command: str):
    runtime = build_runtime(AppConfig(), FakeTerminal(), FakeDriver(), persist=False)
    runtime.open_session("s1")
    task = asyncio.create_task(runtime.permissions.request("s1", command))
    await asyncio.sleep(0)
    return runtime, task


class TestAskPermission:
    @pytest.mark.asyncio
    async def test_allow_once(self, output: io.StringIO) -> None:
        runtime, task = await _request("ls -la")
        await ask_permission(runtime, "s1", _prompt("y"))
        assert await task is True
        assert runtime.store.get("s1").always_allow is False
        assert "Allowed (once)" in output.getvalue()

    @pytest.mark.asyncio
    async def test_allow_always(self, output: io.StringIO) -> None:
        runtime, task = await _request("ls -la")
        await ask_permission(runtime, "s1", _prompt("a"))
        assert await task is True
        assert runtime.store.get("s1").always_allow is True

    @pytest.mark.asyncio
    async def test_anything_else_denies(self, output: io.StringIO) -> None:
        runtime, task = await _request("ls -la")
        await ask_permission(runtime, "s1", _prompt("maybe"))
        assert await task is False
        assert "Denied" in output.getvalue()

    @pytest.mark.asyncio
    async def test_eof_denies(self, output: io.StringIO) -> None:
        runtime, task = await _request("ls -la")
        await ask_permission(runtime, "s1", _prompt(EOFError()))
        assert await task is False

    @pytest.mark.asyncio
    async def test_dangerous_needs_two_confirmations(self, output: io.StringIO) -> None:
        runtime, task = await _request("rm -rf build")
        prompt = _prompt("a", "y", "y")
        await ask_permission(runtime, "s1", prompt)
        assert await task is True
        assert prompt.prompt_async.await_count == 3
        assert "Confirm again" in prompt.prompt_async.await_args_list[2].args[0]
        text = output.getvalue()
        assert "Warning:" in text
        assert "not available for dangerous commands" in text
        assert runtime.store.get("s1").always_allow is False

    @pytest.mark.asyncio
    async def test_dangerous_second_answer_can_deny(self, output: io.StringIO) -> None:
        runtime, task = await _request("rm -rf build")
        await ask_permission(runtime, "s1", _prompt("y", "n"))
        assert await task is False

    @pytest.mark.asyncio
    async def test_nothing_pending(self, output: io.StringIO) -> None:
        runtime = build_runtime(AppConfig(), FakeTerminal(), FakeDriver(), persist=False)
        prompt = _prompt()
        await ask_permission(runtime, "s1", prompt)
        prompt.prompt_async.assert_not_awaited()


class TestThreadPrinter:
    def test_prints_final_steps_once(self, output: io.StringIO) -> None:
        printer = renderer.ThreadPrinter()
        state = AgentState(thread=[AgentStep("executing", "ls"), AgentStep("executed", "a.txt")])
        printer.update(state)
        printer.update(state)
        text = output.getvalue()
        assert text.count("$ ls") == 1
        assert text.count("a.txt") == 1

    def test_streaming_holds_the_cursor(self, output: io.StringIO) -> None:
        printer = renderer.ThreadPrinter()
        state = AgentState(thread=[AgentStep("streaming", "Let me")])
        printer.update(state)
        assert output.getvalue() == ""

        state.thread[0] = AgentStep("thought", "Let me look.")
        state.thread.append(AgentStep("done", "Finished."))
        printer.update(state)
        text = output.getvalue()
        assert "Thought: Let me look." in text
        assert "Done: Finished." in text

    def test_thinking_indicator_on_transition(self, output: io.StringIO) -> None:
        printer = renderer.ThreadPrinter()
        printer.update(AgentState(thinking=True))
        printer.update(AgentState(thinking=True))
        printer.update(AgentState(thinking=False))
        printer.update(AgentState(thinking=True))
        assert output.getvalue().count("Thinking...") == 2

    def test_long_output_is_previewed(self, output: io.StringIO) -> None:
        renderer.render_step(AgentStep("executed", "\n".join(str(i) for i in range(20))))
        assert "... (8 more lines)" in output.getvalue()
