"""Model driver on the OpenAI-compatible chat completions API.

The model talks to the terminal through a small JSON tool protocol rather
than native function calling, so any chat endpoint (Ollama, LM Studio,
OpenAI, vLLM) can drive a run.
"""

from __future__ import annotations

import asyncio
import json
import logging
import platform
import re
from typing import Any

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from ..config import AIConfig
from ..errors import DriverError, ToolCommandError, UserAborted
from .cancellation import CancellationToken
from .protocols import AgentResult, StepCallback, ToolExecute, ToolWriteOnly
from .sessions import ModelConfig

logger = logging.getLogger(__name__)

MAX_PARSE_FAILURES = 3

_SYSTEM_PROMPT = """Terminal agent. OS: {os_name}. Respond ONLY with valid JSON.

TOOLS:
1. {{"tool":"execute_command","command":"..."}}: run a command and get its output. Use for ALL file reads and writes.
2. {{"tool":"run_in_terminal","command":"..."}}: fire-and-forget in the user's terminal. ONLY for cd, servers, interactive apps, open.
3. {{"tool":"ask_question","question":"..."}}: ask the user for clarification or confirmation.
4. {{"tool":"final_answer","content":"..."}}: the task is done or cannot be done.

RULES:
1. Find answers yourself with execute_command before asking the user anything.
2. After each command, check the output. If it failed, fix it or try an alternative.
3. Do not give a final_answer until command output shows the task is complete.
4. Keep final_answer under 3 lines where possible.
5. For file operations use execute_command with a heredoc or printf.
6. Output ONLY valid JSON.
"""

_INVALID_JSON_REPLY = (
    'Error: Invalid JSON format. You MUST respond with valid JSON containing a "tool" field. '
    'Example: {"tool": "final_answer", "content": "Done."}'
)

_SUMMARIZE_PROMPT = (
    "Summarize the following terminal session history. Retain key actions, file changes, "
    "errors, and state changes. Be concise.\n\n{history}"
)

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")


def _loads_tool(text: str) -> dict[str, Any] | None:
    try:
        obj = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    if isinstance(obj, dict) and obj.get("tool"):
        return obj
    return None


def _first_balanced_object(text: str) -> str | None:
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def parse_tool_call(text: str | None) -> dict[str, Any] | None:
    """Extract a ``{"tool": ...}`` object from free-form model output."""
    if not text or not text.strip():
        return None
    text = text.strip()

    action = _loads_tool(text)
    if action:
        return action

    fenced = _FENCED_JSON.search(text)
    if fenced:
        action = _loads_tool(fenced.group(1).strip())
        if action:
            return action

    candidate = _first_balanced_object(text)
    if candidate is None:
        return None
    return _loads_tool(candidate) or _loads_tool(_TRAILING_COMMA.sub(r"\1", candidate))


class AIService:
    def __init__(self, config: AIConfig, settle_delay: float = 0.5) -> None:
        self.config = config
        self._settle_delay = settle_delay
        self._build_client()

    def _build_client(self) -> None:
        timeout = httpx.Timeout(float(self.config.request_timeout), connect=10.0)
        http_client = httpx.AsyncClient(verify=self.config.verify_ssl, timeout=timeout)
        self.client = AsyncOpenAI(
            base_url=self.config.base_url,
            api_key=self.config.api_key or "not-needed",
            http_client=http_client,
        )

    async def close(self) -> None:
        await self.client.close()

    def _system_prompt(self) -> str:
        return _SYSTEM_PROMPT.format(os_name=platform.system() or "unknown")

    async def _complete(
        self,
        messages: list[dict[str, Any]],
        model: str,
        on_step: StepCallback,
        cancel_token: CancellationToken | None,
        thinking_enabled: bool,
    ) -> tuple[str, str]:
        """Stream one completion; returns (content, reasoning).

        Reasoning deltas (``reasoning_content`` or ``reasoning``, depending
        on the server) are surfaced as ``streaming`` steps and finalized as
        a ``thought``.
        """
        kwargs: dict[str, Any] = {"model": model, "messages": messages, "stream": True}
        if self.config.json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        stream = await self.client.chat.completions.create(**kwargs)
        stream_iter = stream.__aiter__()
        content: list[str] = []
        reasoning: list[str] = []

        while True:
            next_chunk = asyncio.ensure_future(stream_iter.__anext__())
            waits: set[asyncio.Future[Any]] = {next_chunk}
            cancel_wait = asyncio.ensure_future(cancel_token.wait()) if cancel_token else None
            if cancel_wait is not None:
                waits.add(cancel_wait)
            try:
                done, _ = await asyncio.wait(waits, return_when=asyncio.FIRST_COMPLETED)
            finally:
                if cancel_wait is not None and not cancel_wait.done():
                    cancel_wait.cancel()

            if cancel_wait is not None and cancel_wait in done:
                next_chunk.cancel()
                await stream.close()
                raise UserAborted()

            try:
                chunk = next_chunk.result()
            except StopAsyncIteration:
                break

            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            think = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
            if think:
                reasoning.append(think)
                if thinking_enabled:
                    on_step("streaming", "".join(reasoning))
            if delta.content:
                content.append(delta.content)

        thought = "".join(reasoning)
        if thought and thinking_enabled:
            on_step("thought", thought)
        else:
            on_step("thinking_done", "")
        return "".join(content), thought

    async def run_agent(
        self,
        prompt: str,
        tool_execute: ToolExecute,
        tool_write_only: ToolWriteOnly,
        on_step: StepCallback,
        model_config: ModelConfig | None = None,
        cancel_token: CancellationToken | None = None,
        thinking_enabled: bool = True,
    ) -> AgentResult:
        model_config = model_config or ModelConfig.from_ai_config(self.config)
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": self._system_prompt()},
            {"role": "user", "content": prompt},
        ]
        executed: set[str] = set()
        parse_failures = 0

        for _ in range(model_config.max_steps):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            on_step("thinking", "")
            try:
                content, reasoning = await self._complete(
                    messages, model_config.model, on_step, cancel_token, thinking_enabled
                )
            except (APITimeoutError, APIConnectionError, APIStatusError) as e:
                logger.warning("Model request failed (%s): %s", model_config.model, e)
                raise DriverError(f"Model request failed: {e}") from e

            action = parse_tool_call(content) or parse_tool_call(reasoning)
            if action is None:
                parse_failures += 1
                if parse_failures >= MAX_PARSE_FAILURES:
                    fallback = (content or reasoning).strip()
                    if fallback:
                        return AgentResult(success=True, message=fallback)
                    return AgentResult(success=False, message="Agent could not complete the task.", type="failure")
                messages.append({"role": "assistant", "content": content or "(empty)"})
                messages.append({"role": "user", "content": _INVALID_JSON_REPLY})
                continue
            parse_failures = 0
            messages.append({"role": "assistant", "content": json.dumps(action)})

            tool = action.get("tool")
            if tool == "final_answer":
                return AgentResult(success=True, message=str(action.get("content", "")))
            if tool == "ask_question":
                return AgentResult(success=True, message=str(action.get("question", "")), type="question")

            command = str(action.get("command", "")).strip()
            if tool == "run_in_terminal" and command:
                tool_write_only(command + "\n")
                on_step("executed", command)
                messages.append({"role": "user", "content": "(Command sent to terminal. Assume success.)"})
                await asyncio.sleep(self._settle_delay)
                continue

            if tool == "execute_command" and command:
                if command in executed:
                    messages.append(
                        {
                            "role": "user",
                            "content": (
                                f'Error: You have already executed this command: "{command}". '
                                "Do not repeat commands. Check previous output or try a different approach."
                            ),
                        }
                    )
                    continue
                executed.add(command)
                on_step("executing", command)
                try:
                    output = await tool_execute(command)
                except ToolCommandError as e:
                    on_step("failed", f"{command}\n{e}")
                    messages.append({"role": "user", "content": f"Command Failed:\n{e}"})
                    continue
                on_step("executed", output)
                messages.append({"role": "user", "content": f"Command Output:\n{output}"})
                continue

            messages.append({"role": "user", "content": f"Error: Unknown or incomplete tool call: {json.dumps(action)}"})

        return AgentResult(success=False, message="Agent reached maximum steps without completion.", type="failure")

    async def summarize_context(self, text: str) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.config.model,
                messages=[{"role": "user", "content": _SUMMARIZE_PROMPT.format(history=text)}],
                max_completion_tokens=500,
            )
        except (APITimeoutError, APIConnectionError, APIStatusError) as e:
            raise DriverError(f"Summarization failed: {e}") from e
        summary = response.choices[0].message.content or ""
        if not summary.strip():
            raise DriverError("Summarization returned no text")
        return summary.strip()
