"""Agent run lifecycle: one cancellable run per terminal session."""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from typing import Any, Coroutine

from ..config import AgentConfig
from ..errors import ABORT_MESSAGE, CommandFailed, CommandTimeout, PermissionDenied, UserAborted
from ..tools.terminal_state import attempt_tui_exit, classify_terminal_output, describe_keys, detect_tui_program
from .approvals import PermissionBroker
from .cancellation import CancellationToken
from .context_window import ContextWindowManager, render_visual
from .event_bus import GLOBAL_CHANNEL, EventBus
from .input_queue import InputQueue, QueueItem
from .protocols import ExecResult, ModelDriver, TerminalCapability
from .sessions import SessionRegistry
from .state_store import AgentStateStore, AgentStep

logger = logging.getLogger(__name__)

INTERRUPT = "\x03"
CLEAR_LINE = "\x15"
NO_OUTPUT = "(Command executed successfully with no output)"
_NOTICE_LIMIT = 80


def build_augmented_prompt(prompt: str, context: str, max_context_chars: int = 2000) -> str:
    recent = context[-max_context_chars:] if max_context_chars > 0 else ""
    return f"\nContext (Recent Terminal Output):\n{recent}\n\nTask: {prompt}\n"


class StepRecorder:
    """Turns driver step events into thread entries for one run.

    ``thinking`` and ``thinking_done`` only flip the flag. ``streaming``
    rewrites the evolving entry for as long as it is still the last one in
    the thread, and ``thought`` finalizes it. Everything else appends.
    Events arriving after the run was cancelled are dropped.
    """

    def __init__(self, store: AgentStateStore, session_id: str, token: CancellationToken) -> None:
        self._store = store
        self._session_id = session_id
        self._token = token
        self._evolving: AgentStep | None = None

    def _evolving_is_last(self) -> bool:
        thread = self._store.get(self._session_id).thread
        return self._evolving is not None and bool(thread) and thread[-1] is self._evolving

    def __call__(self, kind: str, output: str = "") -> None:
        if self._token.cancelled:
            return
        sid = self._session_id

        if kind == "thinking":
            self._store.update(sid, thinking=True)
            return
        if kind == "thinking_done":
            self._store.update(sid, thinking=False)
            return

        if kind == "streaming":
            if self._evolving_is_last():
                self._evolving = self._store.replace_last_step(sid, "streaming", output)
            else:
                self._evolving = self._store.append_step(sid, "streaming", output)
            self._store.update(sid, thinking=True)
            return

        if kind == "thought" and self._evolving_is_last():
            self._store.replace_last_step(sid, "thought", output)
        else:
            self._store.append_step(sid, kind, output)
        self._evolving = None
        self._store.update(sid, thinking=False)


class AgentRunController:
    def __init__(
        self,
        store: AgentStateStore,
        terminal: TerminalCapability,
        driver: ModelDriver,
        context: ContextWindowManager,
        permissions: PermissionBroker,
        queue: InputQueue,
        sessions: SessionRegistry,
        config: AgentConfig | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._terminal = terminal
        self._driver = driver
        self._context = context
        self._permissions = permissions
        self._queue = queue
        self._sessions = sessions
        self._config = config or AgentConfig()
        self._bus = bus
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        # exec calls still running after a timeout or stop; never awaited on shutdown
        self._detached: set[asyncio.Future[ExecResult]] = set()
        self._write_locks: dict[str, asyncio.Lock] = {}
        queue.set_dispatcher(self._dispatch_queued)

    # -- run lifecycle --

    def is_running(self, session_id: str) -> bool:
        state = self._store.peek(session_id)
        return bool(state and state.running)

    def start_run(self, session_id: str, prompt: str) -> asyncio.Task[None] | None:
        """Start an agent run, or queue the prompt if one is active.

        The running check and the flag flip happen without yielding to the
        event loop, so two callers can never both start a run.
        """
        prompt = prompt.strip()
        if not prompt:
            raise ValueError("Prompt must not be empty")

        state = self._store.get(session_id)
        if state.running:
            item = self._queue.enqueue(session_id, "agent", prompt)
            logger.info("Session %s busy, queued agent prompt %s", session_id, item.id)
            return None

        token = CancellationToken()
        self._store.register_token(session_id, token)
        if state.thread:
            self._store.append_step(session_id, "separator", prompt)
        self._store.update(session_id, running=True, thinking=True, overlay_visible=True)
        self._sessions.mark_dirty(session_id)

        task = asyncio.get_running_loop().create_task(self._run(session_id, prompt, token))
        self._tasks[session_id] = task
        task.add_done_callback(functools.partial(self._forget_task, session_id))
        return task

    def _forget_task(self, session_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(session_id) is task:
            del self._tasks[session_id]

    async def run(self, session_id: str, prompt: str) -> None:
        task = self.start_run(session_id, prompt)
        if task is not None:
            await task

    async def _run(self, session_id: str, prompt: str, token: CancellationToken) -> None:
        logger.info("Agent run started for session %s", session_id)
        state = self._store.get(session_id)
        try:
            await self._context.check_and_maybe_summarize(session_id)
            context = await self._context.get_context(session_id)
            token.raise_if_cancelled()

            result = await self._driver.run_agent(
                build_augmented_prompt(prompt, context, self._config.prompt_context_chars),
                tool_execute=functools.partial(self._execute_command, session_id, token),
                tool_write_only=functools.partial(self._write_only, session_id),
                on_step=StepRecorder(self._store, session_id, token),
                model_config=self._sessions.get(session_id).model,
                cancel_token=token,
                thinking_enabled=state.thinking_enabled,
            )
            if token.cancelled:
                return
            if result.type == "question":
                kind = "question"
            else:
                kind = "done" if result.success else "failed"
            self._store.append_step(session_id, kind, result.message)
            self._notify_finished(session_id, kind, result.message)
            logger.info("Agent run for session %s finished (%s)", session_id, kind)
        except UserAborted:
            logger.info("Agent run for session %s aborted", session_id)
        except Exception as e:
            if token.cancelled:
                logger.debug("Agent run for session %s unwound after stop: %s", session_id, e)
            else:
                message = str(e) or e.__class__.__name__
                logger.warning("Agent run for session %s failed: %s", session_id, message)
                self._store.append_step(session_id, "error", message)
                self._notify_finished(session_id, "error", message)
        finally:
            # A stopped or reset run no longer owns the session flags.
            if self._store.current_token(session_id) is token:
                self._store.unregister_token(session_id, token)
                self._store.update(session_id, running=False, thinking=False)

    def stop_run(self, session_id: str) -> bool:
        state = self._store.peek(session_id)
        had_token = self._store.cancel_token(session_id)
        if state is None or not (state.running or had_token):
            return False

        self._permissions.cancel(session_id)
        self._store.append_step(session_id, "error", ABORT_MESSAGE)
        self._store.update(
            session_id,
            running=False,
            thinking=False,
            pending_command=None,
            permission_resolver=None,
        )
        self._notify_finished(session_id, "stopped", "")
        logger.info("Agent run for session %s stopped by user", session_id)
        return True

    def stop_all(self) -> int:
        stopped = 0
        for session_id in self._store.session_ids():
            if self.is_running(session_id) and self.stop_run(session_id):
                stopped += 1
        return stopped

    async def shutdown(self, timeout: float = 5.0) -> None:
        self.stop_all()
        tasks = [t for t in (*self._tasks.values(), *self._background) if not t.done()]
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()

    def reset_session(self, session_id: str) -> None:
        self._permissions.cancel(session_id)
        self._store.delete(session_id)
        self._queue.clear(session_id)
        self._context.reset(session_id)
        logger.info("Reset agent state for session %s", session_id)

    def _notify_finished(self, session_id: str, status: str, message: str) -> None:
        if self._bus is None:
            return
        if status == "stopped":
            notice = "Agent stopped"
        elif status in ("done", "question"):
            notice = f"Agent completed: {message}"
        else:
            notice = f"Agent error: {message}"
        if len(notice) > _NOTICE_LIMIT:
            notice = notice[: _NOTICE_LIMIT - 3] + "..."
        self._bus.publish_nowait(
            GLOBAL_CHANNEL,
            {"type": "run_finished", "data": {"session_id": session_id, "status": status, "message": notice}},
        )

    # -- tool callbacks --

    async def _execute_command(self, session_id: str, token: CancellationToken, command: str) -> str:
        token.raise_if_cancelled()
        if not await self._permissions.request(session_id, command):
            raise PermissionDenied()
        token.raise_if_cancelled()

        if not getattr(self._terminal, "exec_echoes", False):
            await self._submit(session_id, command)
        self._store.record_command(session_id, command)

        result = await self._exec_with_timeout(session_id, command, token)
        if result.exit_code != 0 and result.stderr:
            raise CommandFailed(result.exit_code, result.stderr.strip())
        return result.stdout if result.stdout.strip() else NO_OUTPUT

    async def _exec_with_timeout(self, session_id: str, command: str, token: CancellationToken) -> ExecResult:
        """Race ``exec`` against the timeout and the run's token.

        Losing the race only stops waiting: the process keeps running and
        belongs to whoever owns the terminal.
        """
        exec_task = asyncio.ensure_future(self._terminal.exec(session_id, command))
        aborted: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def on_abort() -> None:
            if not aborted.done():
                aborted.set_result(None)

        token.on_cancel(on_abort)
        try:
            done, _ = await asyncio.wait(
                {exec_task, aborted},
                timeout=self._config.command_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            exec_task.cancel()
            raise
        finally:
            aborted.cancel()
        if exec_task in done:
            return exec_task.result()

        self._detach(session_id, command, exec_task)
        if token.cancelled:
            raise UserAborted()
        raise CommandTimeout(self._config.command_timeout)

    def _detach(self, session_id: str, command: str, task: asyncio.Future[ExecResult]) -> None:
        self._detached.add(task)
        task.add_done_callback(functools.partial(self._detached_done, session_id, command))

    def _detached_done(self, session_id: str, command: str, task: asyncio.Future[ExecResult]) -> None:
        self._detached.discard(task)
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.warning(
                "Session %s: %r failed after the agent stopped waiting: %s", session_id, command, task.exception()
            )
        else:
            logger.info(
                "Session %s: %r finished after the agent stopped waiting (exit code %d)",
                session_id,
                command,
                task.result().exit_code,
            )

    def _write_only(self, session_id: str, command: str) -> None:
        if command.endswith("\n"):
            command = command[:-1]
        self._store.record_command(session_id, command)
        self._spawn(self._submit(session_id, command))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Terminal write failed: %s", task.exception())

    # -- terminal access --

    async def _submit(self, session_id: str, command: str) -> None:
        """Abort whatever is on the input line, then type and submit ``command``."""
        lock = self._write_locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            await self._leave_fullscreen_program(session_id)
            await self._terminal.write(session_id, INTERRUPT)
            await asyncio.sleep(self._config.interrupt_delay)
            await self._terminal.write(session_id, CLEAR_LINE + command + "\r")

    async def _leave_fullscreen_program(self, session_id: str) -> None:
        if getattr(self._terminal, "read_screen", None) is None:
            return
        screen = await self._read_screen(session_id, 30)
        program = detect_tui_program(screen)
        if program is None:
            return
        logger.info("Session %s is inside %s, attempting to exit", session_id, program)
        await attempt_tui_exit(
            program,
            write=functools.partial(self._terminal.write, session_id),
            read=functools.partial(self._read_screen, session_id),
        )

    async def _read_screen(self, session_id: str, lines: int = 30) -> str:
        read_screen = getattr(self._terminal, "read_screen", None)
        if read_screen is not None:
            screen = read_screen(session_id, lines)
            if inspect.isawaitable(screen):
                screen = await screen
            return screen or ""
        history = await self._terminal.get_history(session_id)
        return "\n".join(render_visual(history or "").split("\n")[-lines:])

    async def terminal_status(self, session_id: str) -> dict[str, str | None]:
        screen = await self._read_screen(session_id)
        return {"state": classify_terminal_output(screen), "tui": detect_tui_program(screen)}

    async def send_command(self, session_id: str, command: str) -> QueueItem | None:
        """Run a user-typed command now, or queue it behind the active run."""
        self._sessions.mark_dirty(session_id)
        if self.is_running(session_id):
            return self._queue.enqueue(session_id, "command", command)
        await self._submit(session_id, command)
        self._store.record_command(session_id, command)
        return None

    async def send_keys(self, session_id: str, keys: str) -> str:
        description = describe_keys(keys)
        self._sessions.mark_dirty(session_id)
        await self._terminal.write(session_id, keys)
        logger.info("Session %s: %s", session_id, description)
        return description

    def _dispatch_queued(self, session_id: str, item: QueueItem) -> bool:
        if item.kind == "agent":
            return self.start_run(session_id, item.content) is not None
        self._store.record_command(session_id, item.content)
        self._spawn(self._submit(session_id, item.content))
        return False
