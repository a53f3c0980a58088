"""CLI entry point for termpilot."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

import uvicorn

from . import __version__
from .config import _get_config_path, load_config


def _load_config_or_exit(config_path: Path | None):
    try:
        return load_config(config_path)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


async def _test_connection(config) -> None:
    from .services.ai_service import AIService, parse_tool_call

    ai_service = AIService(config.ai)

    print("Config:")
    print(f"  Provider: {config.ai.provider}")
    print(f"  Endpoint: {config.ai.base_url}")
    print(f"  Model:    {config.ai.model}")
    print(f"  Context:  {config.ai.context_window} chars")
    print(f"  SSL:      {'enabled' if config.ai.verify_ssl else 'disabled'}")

    print(f"\nAsking {config.ai.model} for a tool call...")
    ping_prompt = 'Reply with exactly this JSON and nothing else: {"tool": "final_answer", "content": "hello"}'
    try:
        response = await ai_service.client.chat.completions.create(
            model=config.ai.model,
            messages=[{"role": "user", "content": ping_prompt}],
            max_completion_tokens=60,
        )
        reply = (response.choices[0].message.content or "").strip()
    except Exception as e:
        print(f"   FAILED - {e}")
        sys.exit(1)
    finally:
        await ai_service.close()

    call = parse_tool_call(reply)
    if call is None:
        print(f"   WARNING - reachable, but the reply was not a tool call: {reply[:200] or '(empty response)'}")
    else:
        print(f"   OK - {call.get('tool')}: {call.get('content', '')}")

    print("\nAll checks passed.")


def _run_serve(config) -> None:
    from .app import create_app

    app = create_app(config)
    url = f"http://{config.app.host}:{config.app.port}"
    print(f"Starting termpilot at {url}")
    print(f"  AI endpoint: {config.ai.base_url}")
    print(f"  Model: {config.ai.model}")
    print(f"  Data dir: {config.app.data_dir}")
    if config.app.host in ("0.0.0.0", "::"):
        print("  WARNING: Binding to all interfaces. Anyone on the network can drive your shell.", file=sys.stderr)

    uvicorn.run(app, host=config.app.host, port=config.app.port, log_level="info")


def _run_agent(config, prompt: str, project_path: str | None, model: str | None, auto_approve: bool) -> None:
    cwd = None
    if project_path:
        cwd = os.path.abspath(project_path)
        if not os.path.isdir(cwd):
            print(f"Error: {project_path} is not a directory", file=sys.stderr)
            sys.exit(1)
    if model:
        config.ai.model = model

    from .cli.runner import run_once

    try:
        ok = asyncio.run(run_once(config, prompt, cwd=cwd, auto_approve=auto_approve))
    except (KeyboardInterrupt, asyncio.CancelledError):
        sys.exit(130)
    sys.exit(0 if ok else 1)


def _run_classify() -> None:
    from .tools.terminal_state import classify_terminal_output, detect_tui_program

    text = sys.stdin.read()
    print(classify_terminal_output(text))
    program = detect_tui_program(text)
    if program:
        print(f"tui: {program}")


def main() -> None:
    parser = argparse.ArgumentParser(prog="termpilot", description="termpilot - an AI agent for your terminal")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("serve", help="Run the HTTP API (default)")

    run_parser = subparsers.add_parser("run", help="Run one agent task in a local shell")
    run_parser.add_argument("prompt", help="What the agent should do")
    run_parser.add_argument("-p", "--path", dest="project_path", default=None, help="Working directory")
    run_parser.add_argument("-m", "--model", dest="model", default=None, help="Override AI model")
    run_parser.add_argument(
        "-y",
        "--yes",
        dest="auto_approve",
        action="store_true",
        help="Allow non-dangerous commands without asking (dangerous ones still ask twice)",
    )

    subparsers.add_parser("classify", help="Classify terminal output read from stdin")

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, default=None, help=f"Config file (default: {_get_config_path()})")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level for termpilot output",
    )
    parser.add_argument("--test", action="store_true", help="Test connection settings and exit")

    args = parser.parse_args()
    logging.basicConfig(level=args.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command == "classify":
        _run_classify()
        return

    config = _load_config_or_exit(args.config)

    if args.test:
        asyncio.run(_test_connection(config))
        return

    if args.command == "run":
        _run_agent(config, args.prompt, args.project_path, args.model, args.auto_approve)
    else:
        _run_serve(config)


if __name__ == "__main__":
    main()
