"""Subprocess-backed terminal sessions.

Stands in for a real PTY host when termpilot runs on its own (CLI and
local server). Keystrokes are line-buffered: Enter runs the line through
the shell in the session's working directory and appends prompt, command
and output to the session history.
"""

from __future__ import annotations

import asyncio
import getpass
import logging
import os
import shlex
import socket
from dataclasses import dataclass, field

from ..services.protocols import ExecResult

logger = logging.getLogger(__name__)

_MAX_OUTPUT = 100_000
_MAX_HISTORY = 200_000
_DEFAULT_TIMEOUT = 600


async def run_shell(command: str, cwd: str, timeout: float = _DEFAULT_TIMEOUT) -> ExecResult:
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        proc.kill()
        await proc.wait()
        raise

    stdout_str = stdout.decode("utf-8", errors="replace")
    stderr_str = stderr.decode("utf-8", errors="replace")
    if len(stdout_str) > _MAX_OUTPUT:
        stdout_str = stdout_str[:_MAX_OUTPUT] + "\n... (truncated)"
    if len(stderr_str) > _MAX_OUTPUT:
        stderr_str = stderr_str[:_MAX_OUTPUT] + "\n... (truncated)"
    return ExecResult(stdout=stdout_str, stderr=stderr_str, exit_code=proc.returncode or 0)


@dataclass
class ShellSession:
    id: str
    cwd: str
    history: str = ""
    line: list[str] = field(default_factory=list)
    tasks: set[asyncio.Task[None]] = field(default_factory=set)


class LocalShellTerminal:
    # exec() already shows the command and its output in the session history
    exec_echoes = True

    def __init__(self, default_cwd: str | None = None, timeout: float = _DEFAULT_TIMEOUT) -> None:
        self._default_cwd = default_cwd or os.getcwd()
        self._timeout = timeout
        self._sessions: dict[str, ShellSession] = {}
        try:
            self._user = getpass.getuser()
        except (KeyError, OSError):
            self._user = "user"
        self._host = socket.gethostname().split(".")[0] or "localhost"

    def open_session(self, session_id: str, cwd: str | None = None) -> ShellSession:
        session = ShellSession(id=session_id, cwd=os.path.abspath(os.path.expanduser(cwd or self._default_cwd)))
        session.history = self._prompt(session)
        self._sessions[session_id] = session
        return session

    def close_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        for task in session.tasks:
            task.cancel()

    def _session(self, session_id: str) -> ShellSession:
        session = self._sessions.get(session_id)
        if session is None:
            session = self.open_session(session_id)
        return session

    def _prompt(self, session: ShellSession) -> str:
        home = os.path.expanduser("~")
        cwd = session.cwd
        if cwd == home or cwd.startswith(home + os.sep):
            cwd = "~" + cwd[len(home) :]
        return f"{self._user}@{self._host}:{cwd}$ "

    def _append(self, session: ShellSession, text: str) -> None:
        session.history += text
        if len(session.history) > _MAX_HISTORY:
            session.history = session.history[-_MAX_HISTORY:]

    async def exec(self, session_id: str, command: str) -> ExecResult:
        session = self._session(session_id)
        self._append(session, command + "\n")
        try:
            result = await run_shell(command, session.cwd, self._timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError, OSError):
            self._append(session, "^C\n" + self._prompt(session))
            raise
        self._append_output(session, result.stdout + result.stderr)
        self._append(session, self._prompt(session))
        return result

    def _append_output(self, session: ShellSession, output: str) -> None:
        if output:
            self._append(session, output if output.endswith("\n") else output + "\n")

    async def write(self, session_id: str, data: str) -> None:
        session = self._session(session_id)
        for ch in data:
            if ch == "\x03":
                self._interrupt(session)
            elif ch == "\x15":
                session.line.clear()
            elif ch in ("\r", "\n"):
                self._submit_line(session)
            elif ch in ("\x7f", "\b"):
                if session.line:
                    session.line.pop()
            elif ch >= " ":
                session.line.append(ch)

    def _interrupt(self, session: ShellSession) -> None:
        if not session.tasks and not session.line:
            return
        for task in session.tasks:
            task.cancel()
        session.line.clear()
        self._append(session, "^C\n" + self._prompt(session))

    def _submit_line(self, session: ShellSession) -> None:
        command = "".join(session.line)
        session.line.clear()
        self._append(session, command + "\n")
        if not command.strip():
            self._append(session, self._prompt(session))
            return
        task = asyncio.get_running_loop().create_task(self._run_line(session, command))
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)

    async def _run_line(self, session: ShellSession, command: str) -> None:
        if self._change_directory(session, command):
            self._append(session, self._prompt(session))
            return
        try:
            result = await run_shell(command, session.cwd, self._timeout)
        except asyncio.TimeoutError:
            self._append(session, f"termpilot: command timed out after {self._timeout:g}s\n")
        except OSError as e:
            self._append(session, f"termpilot: {e}\n")
        else:
            self._append_output(session, result.stdout + result.stderr)
        self._append(session, self._prompt(session))

    def _change_directory(self, session: ShellSession, command: str) -> bool:
        try:
            parts = shlex.split(command)
        except ValueError:
            return False
        if not parts or parts[0] != "cd" or len(parts) > 2:
            return False
        target = os.path.expanduser(parts[1] if len(parts) == 2 else "~")
        path = os.path.normpath(os.path.join(session.cwd, target))
        if os.path.isdir(path):
            session.cwd = path
        else:
            self._append(session, f"cd: no such file or directory: {target}\n")
        return True

    async def get_history(self, session_id: str) -> str:
        return self._session(session_id).history

    def read_screen(self, session_id: str, lines: int = 30) -> str:
        session = self._session(session_id)
        screen = session.history + "".join(session.line)
        return "\n".join(screen.split("\n")[-lines:])

    def clear_history(self, session_id: str) -> None:
        session = self._session(session_id)
        session.history = self._prompt(session)

    async def wait_idle(self, session_id: str) -> None:
        session = self._session(session_id)
        while session.tasks:
            await asyncio.gather(*list(session.tasks), return_exceptions=True)
