"""Terminal history cleaning and context-budget management.

Raw terminal history is replayed onto a line/column grid so that carriage
returns, backspaces and erase sequences produce what a person would have
seen, then compressed (repeats, binary noise, long outputs) before it is
handed to the model.
"""

from __future__ import annotations

import inspect
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator, NamedTuple

from ..config import AgentConfig
from ..errors import DriverError

if TYPE_CHECKING:
    from .protocols import ModelDriver, TerminalCapability
    from .sessions import SessionRegistry
    from .state_store import AgentStateStore

logger = logging.getLogger(__name__)

SUMMARY_NOTE = "[Earlier terminal output summarized above. Recent output follows.]"

_TAB_WIDTH = 8
_ANCHOR_CHARS = 200

_TOKEN_RE = re.compile(
    r"(?P<csi>\x1b\[(?P<params>[0-9;?<=>]*)[ -/]*(?P<final>[@-~]))"
    r"|(?P<osc>\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)?)"
    r"|(?P<esc>\x1b[()*+][A-Za-z0-9]|\x1b[=>78cDEHMNOZ\\])"
    r"|(?P<ctrl>[\x00-\x1f\x7f])"
    r"|(?P<text>[^\x00-\x1f\x7f]+)"
)


class Token(NamedTuple):
    kind: str  # text, ctrl, csi, ignore
    value: str
    params: str = ""


def tokenize_terminal_output(raw: str) -> Iterator[Token]:
    for m in _TOKEN_RE.finditer(raw):
        if m.group("text") is not None:
            yield Token("text", m.group("text"))
        elif m.group("ctrl") is not None:
            yield Token("ctrl", m.group("ctrl"))
        elif m.group("csi") is not None:
            yield Token("csi", m.group("final"), m.group("params"))
        else:
            yield Token("ignore", m.group(0))


def _csi_int(params: str, default: int, index: int = 0) -> int:
    parts = params.lstrip("?").split(";")
    try:
        value = int(parts[index]) if index < len(parts) and parts[index] else default
    except ValueError:
        return default
    return value


class VisualBuffer:
    """Line/column grid that terminal tokens are replayed onto.

    Rows are unbounded (history, not a screen). Absolute row positioning is
    ignored because scrollback has no fixed screen origin.
    """

    def __init__(self) -> None:
        self.lines: list[list[str]] = [[]]
        self.row = 0
        self.col = 0

    def _line(self) -> list[str]:
        while len(self.lines) <= self.row:
            self.lines.append([])
        return self.lines[self.row]

    def write_text(self, text: str) -> None:
        line = self._line()
        for ch in text:
            if self.col < len(line):
                line[self.col] = ch
            else:
                line.extend(" " * (self.col - len(line)))
                line.append(ch)
            self.col += 1

    def control(self, ch: str) -> None:
        if ch == "\n":
            self.row += 1
            self.col = 0
            self._line()
        elif ch == "\r":
            self.col = 0
        elif ch in ("\b", "\x7f"):
            self.col = max(0, self.col - 1)
        elif ch == "\t":
            self.col = (self.col // _TAB_WIDTH + 1) * _TAB_WIDTH

    def csi(self, final: str, params: str) -> None:
        n = max(1, _csi_int(params, 1))
        if final == "K":
            self._erase_line(_csi_int(params, 0))
        elif final == "J":
            self._erase_display(_csi_int(params, 0))
        elif final == "A":
            self.row = max(0, self.row - n)
        elif final == "B":
            self.row += n
            self._line()
        elif final == "C":
            self.col += n
        elif final == "D":
            self.col = max(0, self.col - n)
        elif final == "E":
            self.row += n
            self.col = 0
            self._line()
        elif final == "F":
            self.row = max(0, self.row - n)
            self.col = 0
        elif final == "G":
            self.col = n - 1
        elif final in ("H", "f"):
            self.col = max(1, _csi_int(params, 1, index=1)) - 1
        # SGR, mode switches and the rest do not move visible text

    def _erase_line(self, mode: int) -> None:
        line = self._line()
        if mode == 0:
            del line[self.col :]
        elif mode == 1:
            for i in range(min(self.col + 1, len(line))):
                line[i] = " "
        elif mode == 2:
            line.clear()

    def _erase_display(self, mode: int) -> None:
        if mode in (2, 3):
            self.lines = [[]]
            self.row = 0
            self.col = 0
        elif mode == 0:
            self._erase_line(0)
            del self.lines[self.row + 1 :]

    def feed(self, raw: str) -> None:
        for token in tokenize_terminal_output(raw):
            if token.kind == "text":
                self.write_text(token.value)
            elif token.kind == "ctrl":
                self.control(token.value)
            elif token.kind == "csi":
                self.csi(token.value, token.params)

    def render(self) -> str:
        return "\n".join("".join(line).rstrip() for line in self.lines)


def render_visual(raw: str) -> str:
    buffer = VisualBuffer()
    buffer.feed(raw)
    return buffer.render()


def collapse_repeated_lines(text: str) -> str:
    out: list[str] = []
    previous: str | None = None
    repeats = 0

    def flush() -> None:
        if repeats > 1:
            out.append(f"  ... ({repeats - 1} identical lines omitted)")

    for line in text.split("\n"):
        if line == previous and line.strip():
            repeats += 1
            if repeats == 1:
                out.append(line)
            continue
        flush()
        out.append(line)
        previous = line
        repeats = 0
    flush()
    return "\n".join(out)


_GARBLE_CHARS = re.compile(r"[<>{}\\|\[\]]")


def _is_garbled(line: str) -> bool:
    if len(line) >= 10 and len(_GARBLE_CHARS.findall(line)) / len(line) > 0.3:
        return True
    return "heredoc>" in line and len(line) > 100


def collapse_garbled_runs(text: str, min_run: int = 4) -> str:
    out: list[str] = []
    run: list[str] = []

    def flush() -> None:
        if len(run) >= min_run:
            out.append(f"  ... ({len(run)} lines of garbled/binary output omitted)")
        else:
            out.extend(run)
        run.clear()

    for line in text.split("\n"):
        if _is_garbled(line):
            run.append(line)
            continue
        flush()
        out.append(line)
    flush()
    return "\n".join(out)


_PROMPT_LINE = re.compile(r"^[^\s]*[@$%#>]\s|^\s*\$\s")


def truncate_long_outputs(text: str, max_lines: int = 30) -> str:
    """Keep head and tail of each command's output block."""
    out: list[str] = []
    block: list[str] = []
    keep = max(1, max_lines // 2)

    def flush() -> None:
        if len(block) > max_lines:
            out.extend(block[:keep])
            out.append(f"  ... ({len(block) - 2 * keep} lines truncated)")
            out.extend(block[-keep:])
        else:
            out.extend(block)
        block.clear()

    for line in text.split("\n"):
        if _PROMPT_LINE.search(line):
            flush()
            out.append(line)
        else:
            block.append(line)
    flush()
    return "\n".join(out)


def clean_context_for_ai(raw: str, max_block_lines: int = 30) -> str:
    if not raw:
        return ""
    text = render_visual(raw)
    text = collapse_repeated_lines(text)
    text = collapse_garbled_runs(text)
    text = truncate_long_outputs(text, max_block_lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


@dataclass
class SummaryState:
    summary: str | None = None
    source_length: int = 0
    anchor: str = ""
    summarizing: bool = False


def _recent_since_summary(cleaned: str, state: SummaryState) -> str:
    """Return what was added to ``cleaned`` after the summarized view.

    The cleaned view is not append-only (screen clears, history caps and
    re-truncated blocks shrink or shift it), so the end of the summarized
    text is located by its tail. When that tail is gone, everything is new.
    """
    anchor, end = state.anchor, state.source_length
    if not anchor:
        return cleaned.strip()
    if cleaned[end - len(anchor) : end] == anchor:
        return cleaned[end:].strip()
    idx = cleaned.rfind(anchor)
    if idx == -1:
        return cleaned.strip()
    return cleaned[idx + len(anchor) :].strip()


@dataclass
class ContextUsage:
    used: int
    limit: int
    percent: float
    summarized: bool


class ContextWindowManager:
    """Keeps the model-facing view of each session's terminal within budget.

    Sizes are measured in characters of cleaned output.
    """

    def __init__(
        self,
        terminal: TerminalCapability,
        sessions: SessionRegistry,
        driver: ModelDriver,
        store: AgentStateStore,
        config: AgentConfig | None = None,
    ) -> None:
        self._terminal = terminal
        self._sessions = sessions
        self._driver = driver
        self._store = store
        self._config = config or AgentConfig()
        self._summaries: dict[str, SummaryState] = {}

    def _state(self, session_id: str) -> SummaryState:
        return self._summaries.setdefault(session_id, SummaryState())

    def _limit(self, session_id: str) -> int:
        return max(1, self._sessions.get(session_id).model.context_window)

    def is_summarized(self, session_id: str) -> bool:
        state = self._summaries.get(session_id)
        return bool(state and state.summary)

    async def get_clean_context(self, session_id: str) -> str:
        raw = await self._terminal.get_history(session_id)
        return clean_context_for_ai(raw or "", self._config.max_block_lines)

    async def get_context(self, session_id: str) -> str:
        cleaned = await self.get_clean_context(session_id)
        state = self._summaries.get(session_id)
        if not state or not state.summary:
            return cleaned
        recent = _recent_since_summary(cleaned, state)
        parts = [state.summary, SUMMARY_NOTE]
        if recent:
            parts.append(recent)
        return "\n\n".join(parts)

    async def usage(self, session_id: str) -> ContextUsage:
        context = await self.get_context(session_id)
        limit = self._limit(session_id)
        return ContextUsage(
            used=len(context),
            limit=limit,
            percent=round(min(100.0, len(context) * 100 / limit), 1),
            summarized=self.is_summarized(session_id),
        )

    async def check_and_maybe_summarize(self, session_id: str) -> bool:
        state = self._state(session_id)
        if state.summary or state.summarizing:
            return False

        state.summarizing = True
        try:
            cleaned = await self.get_clean_context(session_id)
            limit = self._limit(session_id)
            if len(cleaned) <= limit * self._config.summarize_threshold:
                return False
            source = cleaned[-self._config.summarize_max_chars :]
            logger.info(
                "Summarizing context for session %s (%d chars, limit %d)", session_id, len(cleaned), limit
            )
            summary = await self._driver.summarize_context(source)
        except DriverError as e:
            logger.warning("Context summarization failed for session %s: %s", session_id, e)
            return False
        finally:
            state.summarizing = False

        if not summary or not summary.strip():
            return False
        state.summary = summary.strip()
        state.source_length = len(cleaned)
        state.anchor = cleaned[-_ANCHOR_CHARS:]
        return True

    def reset(self, session_id: str) -> None:
        self._summaries.pop(session_id, None)

    async def clear(self, session_id: str) -> None:
        self.reset(session_id)
        clear_history = getattr(self._terminal, "clear_history", None)
        if clear_history is not None:
            result = clear_history(session_id)
            if inspect.isawaitable(result):
                await result
        self._store.clear_thread(session_id)
