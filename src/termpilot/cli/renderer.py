"""Rich-based terminal output for one-shot agent runs."""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape

from ..services.state_store import AgentState, AgentStep

console = Console(stderr=True)

# Explicit colors; Rich's [dim] is nearly invisible on dark backgrounds.
GOLD = "#C5A059"  # accents, thinking
SLATE = "#94A3B8"  # labels
MUTED = "#8b8b8b"  # command output, permission feedback
CHROME = "#6b7280"  # status lines, hints
ERROR_RED = "#CD6B6B"

_OUTPUT_PREVIEW_LINES = 12
_THOUGHT_PREVIEW_CHARS = 300


def _preview(text: str, max_lines: int = _OUTPUT_PREVIEW_LINES) -> str:
    lines = text.rstrip().split("\n")
    if len(lines) <= max_lines:
        return "\n".join(lines)
    hidden = len(lines) - max_lines
    return "\n".join(lines[:max_lines]) + f"\n... ({hidden} more lines)"


def render_step(step: AgentStep) -> None:
    kind, output = step.kind, step.output
    if kind == "separator":
        console.rule(f"[{SLATE}]{escape(output)}[/{SLATE}]", style=CHROME)
    elif kind == "thought":
        text = output.strip()
        if len(text) > _THOUGHT_PREVIEW_CHARS:
            text = text[:_THOUGHT_PREVIEW_CHARS] + "..."
        console.print(f"[{GOLD}]Thought:[/{GOLD}] [{MUTED}]{escape(text)}[/{MUTED}]")
    elif kind == "executing":
        console.print(f"[{SLATE}]$[/{SLATE}] {escape(output)}")
    elif kind == "executed":
        console.print(f"[{MUTED}]{escape(_preview(output))}[/{MUTED}]")
    elif kind == "failed":
        console.print(f"[{ERROR_RED}]Failed:[/{ERROR_RED}] {escape(_preview(output))}")
    elif kind == "question":
        console.print(f"\n[{GOLD} bold]Question:[/{GOLD} bold] {escape(output)}")
    elif kind == "done":
        console.print(f"\n[green bold]Done:[/green bold] {escape(output)}")
    elif kind == "error":
        console.print(f"\n[{ERROR_RED} bold]Error:[/{ERROR_RED} bold] {escape(output)}")
    elif kind != "streaming":
        console.print(escape(output))


class ThreadPrinter:
    """Prints thread entries as they become final.

    An evolving ``streaming`` entry holds the cursor until it is replaced
    by its finalized form.
    """

    def __init__(self) -> None:
        self._printed = 0
        self._thinking_shown = False

    def update(self, state: AgentState) -> None:
        thread = state.thread
        if self._printed > len(thread):
            self._printed = 0
        while self._printed < len(thread):
            step = thread[self._printed]
            if step.kind == "streaming":
                break
            render_step(step)
            self._printed += 1

        if state.thinking and not self._thinking_shown:
            console.print(f"[{GOLD}]Thinking...[/{GOLD}]")
        self._thinking_shown = state.thinking


def render_permission_request(command: str, dangerous: bool, reason: str = "") -> None:
    if dangerous:
        console.print(f"\n[yellow bold]Warning:[/yellow bold] {escape(reason or 'Dangerous command')}")
    else:
        console.print(f"\n[{SLATE}]Run command?[/{SLATE}]")
    console.print(f"  Command: [{MUTED}]{escape(command)}[/{MUTED}]")


def render_permission_outcome(outcome: str) -> None:
    messages = {
        "allowed": "✓ Allowed (once)",
        "always": "✓ Allowed (always for this session)",
        "denied": "✗ Denied",
        "confirm": "Dangerous command: confirm a second time to run it",
        "unavailable": "'Always' is not available for dangerous commands",
    }
    text = messages.get(outcome)
    if text:
        console.print(f"  [{MUTED}]{escape(text)}[/{MUTED}]")
