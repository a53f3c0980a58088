"""Terminal output classification and full-screen program exit helpers.

Everything here except ``attempt_tui_exit`` is a pure function of the
text on screen.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal

logger = logging.getLogger(__name__)

TerminalState = Literal["idle", "server", "busy", "input_needed"]

_PROMPT_END = re.compile(r"[$%#>]\s*$")
_USER_HOST_PROMPT = re.compile(r"^\S+@\S+.*[%$#>]\s*$", re.MULTILINE)
_POWERSHELL_PROMPT = re.compile(r"^PS\s+[A-Z]:\\[^>]*>\s*$", re.MULTILINE)
_CMD_PROMPT = re.compile(r"^[A-Z]:\\[^>]*>\s*$", re.MULTILINE)

_SERVER_SIGNATURE = re.compile(
    r"localhost:\d+|127\.0\.0\.1:\d+|ready in|listening on|VITE.*ready|press h.*enter"
    r"|Registered tunnel connection|tunnel.*running|Starting.*server",
    re.IGNORECASE,
)

_INPUT_PROMPT_PATTERNS: list[re.Pattern[str]] = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"password\s*:",
        r"passphrase\s*:",
        r"username\s*:",
        r"user\s*name\s*:",
        r"login\s*:",
        r"email\s*:",
        r"token\s*:",
        r"api.?key\s*:",
        r"secret\s*:",
        r"enter\s+(your\s+)?(password|passphrase|username|name|email|token|key|value|input)",
        r"\(y/n\)\s*\??$",
        r"\[y/n\]\s*\??$",
        r"\[yes/no\]\s*\??$",
        r"continue\?\s*\(y/n\)",
        r"are you sure\?",
        r"confirm\s*:",
        r"press enter to continue",
        r"waiting for input",
        r"type .+ to continue",
    )
]

# Interactive menus drawn by prompt libraries (radio, active prompt, checkbox, cursor)
_TUI_MENU_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"[●○]\s"),
    re.compile(r"◆\s+\S"),
    re.compile(r"[■□]\s+\S"),
    re.compile(r"[❯►]\s+\S"),
]


def classify_terminal_output(text: str) -> TerminalState:
    """Classify what the terminal is doing from its recent output.

    Precedence is fixed: idle, server, input_needed, busy. Anything that
    matches none of the signatures is ``busy``, the safe default: never
    assume it is fine to type into the terminal.
    """
    lines = text.strip().split("\n")
    last_lines = "\n".join(lines[-3:])
    last_line = ""
    for line in reversed(lines):
        if line.strip():
            last_line = line.strip()
            break

    if (
        _PROMPT_END.search(last_lines)
        or _USER_HOST_PROMPT.search(last_lines)
        or _POWERSHELL_PROMPT.search(last_lines)
        or _CMD_PROMPT.search(last_lines)
    ):
        return "idle"

    if _SERVER_SIGNATURE.search(last_lines):
        return "server"

    if last_line and any(p.search(last_line) for p in _INPUT_PROMPT_PATTERNS):
        return "input_needed"

    menu_window = "\n".join(lines[-5:])
    if any(p.search(menu_window) for p in _TUI_MENU_PATTERNS):
        return "input_needed"

    return "busy"


@dataclass(frozen=True)
class TuiProgram:
    name: str
    patterns: tuple[re.Pattern[str], ...]


_TUI_PROGRAMS: tuple[TuiProgram, ...] = (
    TuiProgram(
        "vim",
        (
            re.compile(r"-- INSERT --"),
            re.compile(r"-- VISUAL --"),
            re.compile(r"-- REPLACE --"),
            re.compile(r"-- NORMAL --"),
            re.compile(r"^~\s*\n~\s*\n~\s*$", re.MULTILINE),
            re.compile(r"^:[^/].*\s*$", re.MULTILINE),
        ),
    ),
    TuiProgram("nano", (re.compile(r"GNU nano", re.IGNORECASE), re.compile(r"\^[GOXRWK]\s+\w"))),
    TuiProgram(
        "htop",
        (re.compile(r"PID\s+USER\s+PR"), re.compile(r"Tasks:\s+\d+"), re.compile(r"%Cpu", re.IGNORECASE)),
    ),
    TuiProgram(
        "less",
        (
            re.compile(r"^\(END\)\s*$", re.MULTILINE),
            re.compile(r"Manual page\s+\S+"),
            re.compile(r"^lines \d+-\d+", re.MULTILINE),
        ),
    ),
    TuiProgram(
        "lazygit",
        (re.compile(r"Branches\s.*Local Branches", re.IGNORECASE), re.compile(r"lazygit", re.IGNORECASE)),
    ),
    TuiProgram("file-manager", (re.compile(r"ranger\s+\d+\.\d+", re.IGNORECASE),)),
    TuiProgram(
        "ai-cli",
        (
            re.compile(r"claude", re.IGNORECASE),
            re.compile(r"[╭╰].*─{3,}"),
            re.compile(r"\b(sonnet|opus|haiku)\b", re.IGNORECASE),
            re.compile(r"aider", re.IGNORECASE),
        ),
    ),
)


def detect_tui_program(text: str) -> str | None:
    """Return the name of the full-screen program on screen, if any.

    Two signature matches are required, except for programs with at most
    two very distinctive signatures where one is enough.
    """
    for program in _TUI_PROGRAMS:
        matches = sum(1 for p in program.patterns if p.search(text))
        if matches >= 2 or (matches >= 1 and len(program.patterns) <= 2):
            return program.name
    return None


@dataclass(frozen=True)
class ExitStep:
    keys: str
    wait_ms: int
    description: str


_PAGER_EXIT = [ExitStep("q", 300, "q")]

_TUI_EXIT_SEQUENCES: dict[str, list[ExitStep]] = {
    "vim": [
        ExitStep("\x1b:q!\r", 500, "Esc + :q!"),
        ExitStep("\x1b\x1b:q!\r", 500, "Esc Esc + :q!"),
        ExitStep("\x03\x03", 500, "Ctrl+C x2"),
    ],
    "nano": [
        ExitStep("\x18", 500, "Ctrl+X"),
        ExitStep("n", 500, "n (discard save prompt)"),
    ],
    "less": _PAGER_EXIT,
    "man": _PAGER_EXIT,
    "htop": _PAGER_EXIT,
    "lazygit": [ExitStep("q", 300, "q"), ExitStep("q", 300, "q"), ExitStep("q", 300, "q")],
}

_GENERIC_EXIT_SEQUENCE: list[ExitStep] = [
    ExitStep("\x03", 1000, "Ctrl+C"),
    ExitStep("\x03\x03", 1500, "Ctrl+C x2"),
    ExitStep("\x04", 1000, "Ctrl+D (EOF)"),
    ExitStep("/exit\r", 1000, "/exit"),
    ExitStep("exit\r", 1000, "exit"),
    ExitStep("\x03\x03\x03\x04", 1500, "Ctrl+C x3 + Ctrl+D"),
    ExitStep("q", 500, "q"),
]


def get_tui_exit_sequence(name: str | None) -> list[ExitStep]:
    if name and name in _TUI_EXIT_SEQUENCES:
        return list(_TUI_EXIT_SEQUENCES[name])
    return list(_GENERIC_EXIT_SEQUENCE)


@dataclass
class TuiExitResult:
    exited: bool
    attempts: list[str] = field(default_factory=list)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def attempt_tui_exit(
    name: str | None,
    write: Callable[[str], Any],
    read: Callable[[int], Any],
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> TuiExitResult:
    """Walk the exit sequence for ``name`` until the program is gone.

    ``write`` sends raw keys, ``read`` returns the last N lines of the
    screen; either may be sync or async.
    """
    result = TuiExitResult(exited=False)
    for step in get_tui_exit_sequence(name):
        await _maybe_await(write(step.keys))
        result.attempts.append(step.description)
        await sleep(step.wait_ms / 1000)

        screen = await _maybe_await(read(30)) or ""
        if classify_terminal_output(screen) == "idle" or detect_tui_program(screen) is None:
            result.exited = True
            logger.info("Exited %s after %d step(s)", name or "program", len(result.attempts))
            return result

    logger.warning("Could not exit %s after: %s", name or "program", ", ".join(result.attempts))
    return result


_KEY_NAMES: dict[str, str] = {
    "\r": "Enter",
    "\n": "Enter",
    " ": "Space",
    "\x03": "Ctrl+C",
    "\x04": "Ctrl+D",
    "\x1a": "Ctrl+Z",
    "\x1b": "Esc",
    "\x1b[A": "Up",
    "\x1b[B": "Down",
    "\x1b[C": "Right",
    "\x1b[D": "Left",
    "\t": "Tab",
    "\x15": "Ctrl+U",
    "\x0c": "Ctrl+L",
    "\x7f": "Backspace",
}

_ARROW_RE = re.compile(r"\x1b\[[ABCD]")


def describe_keys(keys: str) -> str:
    """Render a keystroke string the way a person would describe it."""
    if keys in _KEY_NAMES:
        return f"Pressed {_KEY_NAMES[keys]}"

    body, enter = keys, False
    if body.endswith("\r"):
        body, enter = body[:-1], True
    suffix = " + Enter" if enter else ""

    arrows = _ARROW_RE.findall(body)
    if arrows and not _ARROW_RE.sub("", body):
        return ", ".join(_KEY_NAMES[a] for a in arrows) + suffix

    if body and body.isprintable():
        if len(body) <= 30:
            return f'Typed "{body}"{suffix}'
        return f"Typed {len(body)} characters{suffix}"

    return f"Sent {len(keys)} keystrokes"
