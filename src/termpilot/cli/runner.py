"""One-shot agent runs against a local shell session."""

from __future__ import annotations

import asyncio
import logging

from prompt_toolkit import PromptSession

from ..config import AppConfig
from ..services.ai_service import AIService
from ..services.runtime import AgentRuntime, build_runtime
from ..tools.shell import LocalShellTerminal
from . import renderer

logger = logging.getLogger(__name__)

_ANSWERS = {
    "y": "allow",
    "yes": "allow",
    "a": "always",
    "always": "always",
}


async def ask_permission(runtime: AgentRuntime, session_id: str, prompt_session: PromptSession | None = None) -> None:
    """Prompt until the pending request for ``session_id`` is settled."""
    pending = runtime.permissions.get(session_id)
    if pending is None:
        return
    renderer.render_permission_request(pending.command, pending.dangerous, pending.reason)
    prompt_session = prompt_session or PromptSession()

    while runtime.permissions.get(session_id) is pending:
        if not pending.dangerous:
            question = "  [y] Allow once  [a] Allow always  [n] Deny: "
        elif not pending.confirmed_once:
            question = "  [y] Allow  [n] Deny: "
        else:
            question = "  Confirm again, this cannot be undone [y/N]: "
        try:
            answer = (await prompt_session.prompt_async(question)).strip().lower()
        except (EOFError, KeyboardInterrupt):
            answer = "n"

        outcome = runtime.permissions.respond(session_id, _ANSWERS.get(answer, "deny"))
        renderer.render_permission_outcome(outcome)
        if outcome not in ("confirm", "unavailable"):
            return


async def run_once(
    config: AppConfig,
    prompt: str,
    cwd: str | None = None,
    auto_approve: bool = False,
) -> bool:
    """Run a single agent task and return True when it finished with ``done``."""
    terminal = LocalShellTerminal(default_cwd=cwd)
    driver = AIService(config.ai, settle_delay=config.agent.terminal_settle)
    runtime = build_runtime(config, terminal, driver, persist=False)
    session = runtime.open_session(cwd=cwd or "")
    sid = session.id
    if auto_approve:
        runtime.store.update(sid, always_allow=True)

    printer = renderer.ThreadPrinter()
    prompting: set[asyncio.Task[None]] = set()

    def on_change(session_id: str) -> None:
        if session_id != sid:
            return
        state = runtime.store.get(sid)
        printer.update(state)
        if state.pending_command is not None and not prompting:
            task = asyncio.get_running_loop().create_task(ask_permission(runtime, sid))
            prompting.add(task)
            task.add_done_callback(prompting.discard)

    runtime.store.add_change_listener(on_change)

    try:
        await runtime.controller.run(sid, prompt)
    except (KeyboardInterrupt, asyncio.CancelledError):
        runtime.controller.stop_run(sid)
        raise
    finally:
        await runtime.shutdown()
        await driver.close()

    thread = runtime.store.get(sid).thread
    return bool(thread) and thread[-1].kind == "done"
