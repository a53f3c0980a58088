"""Configuration loader: YAML file with environment variable fallbacks."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class AIConfig:
    provider: str = "ollama"
    base_url: str = "http://localhost:11434/v1"
    api_key: str = "ollama"
    model: str = "llama3"
    context_window: int = 4000  # characters of cleaned terminal output
    max_agent_steps: int = 100
    request_timeout: int = 120
    verify_ssl: bool = True
    json_mode: bool = True
    thinking_enabled: bool = True


@dataclass
class AgentConfig:
    command_timeout: float = 30.0
    interrupt_delay: float = 0.08
    summarize_threshold: float = 0.9
    summarize_max_chars: int = 10_000
    prompt_context_chars: int = 2000
    max_block_lines: int = 30
    persist_debounce: float = 0.5
    terminal_settle: float = 0.5


@dataclass
class SafetyConfig:
    enabled: bool = True
    custom_patterns: list[str] = field(default_factory=list)


@dataclass
class AppSettings:
    host: str = "127.0.0.1"
    port: int = 8765
    data_dir: Path = field(default_factory=lambda: Path.home() / ".termpilot")


@dataclass
class AppConfig:
    ai: AIConfig = field(default_factory=AIConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    app: AppSettings = field(default_factory=AppSettings)


def _get_config_path(data_dir: Path | None = None) -> Path:
    return (data_dir or Path.home() / ".termpilot") / "config.yaml"


def _as_bool(value: Any) -> bool:
    return str(value).lower() not in ("false", "0", "no", "off")


def _clamped_int(value: Any, default: int, low: int, high: int) -> int:
    try:
        return max(low, min(high, int(value)))
    except (ValueError, TypeError):
        return default


def _clamped_float(value: Any, default: float, low: float, high: float) -> float:
    try:
        return max(low, min(high, float(value)))
    except (ValueError, TypeError):
        return default


def load_config(config_path: Path | None = None) -> AppConfig:
    raw: dict[str, Any] = {}
    path = config_path or _get_config_path()

    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

    defaults = AIConfig()
    ai_raw = raw.get("ai", {}) or {}
    if "base_url" in ai_raw and not ai_raw["base_url"]:
        raise ValueError(f"'ai.base_url' in config.yaml ({path}) is empty. Remove it or set a URL.")

    base_url = ai_raw.get("base_url") or os.environ.get("TERMPILOT_BASE_URL", defaults.base_url)
    api_key = ai_raw.get("api_key") or os.environ.get("TERMPILOT_API_KEY", defaults.api_key)
    model = ai_raw.get("model") or os.environ.get("TERMPILOT_MODEL", defaults.model)
    provider = ai_raw.get("provider") or os.environ.get("TERMPILOT_PROVIDER", defaults.provider)

    context_window = _clamped_int(
        ai_raw.get("context_window", os.environ.get("TERMPILOT_CONTEXT_WINDOW", defaults.context_window)),
        defaults.context_window,
        1,
        1_000_000,
    )
    max_agent_steps = _clamped_int(
        ai_raw.get("max_agent_steps", os.environ.get("TERMPILOT_MAX_STEPS", defaults.max_agent_steps)),
        defaults.max_agent_steps,
        1,
        1000,
    )
    request_timeout = _clamped_int(
        ai_raw.get("request_timeout", os.environ.get("TERMPILOT_REQUEST_TIMEOUT", defaults.request_timeout)),
        defaults.request_timeout,
        10,
        600,
    )
    verify_ssl = _as_bool(ai_raw.get("verify_ssl", os.environ.get("TERMPILOT_VERIFY_SSL", "true")))

    ai = AIConfig(
        provider=provider,
        base_url=base_url,
        api_key=api_key,
        model=model,
        context_window=context_window,
        max_agent_steps=max_agent_steps,
        request_timeout=request_timeout,
        verify_ssl=verify_ssl,
        json_mode=_as_bool(ai_raw.get("json_mode", True)),
        thinking_enabled=_as_bool(ai_raw.get("thinking_enabled", True)),
    )

    agent_defaults = AgentConfig()
    agent_raw = raw.get("agent", {}) or {}
    agent = AgentConfig(
        command_timeout=_clamped_float(
            agent_raw.get("command_timeout", agent_defaults.command_timeout), agent_defaults.command_timeout, 1, 3600
        ),
        interrupt_delay=_clamped_float(
            agent_raw.get("interrupt_delay", agent_defaults.interrupt_delay), agent_defaults.interrupt_delay, 0, 5
        ),
        summarize_threshold=_clamped_float(
            agent_raw.get("summarize_threshold", agent_defaults.summarize_threshold),
            agent_defaults.summarize_threshold,
            0.1,
            1.0,
        ),
        summarize_max_chars=_clamped_int(
            agent_raw.get("summarize_max_chars", agent_defaults.summarize_max_chars),
            agent_defaults.summarize_max_chars,
            500,
            1_000_000,
        ),
        prompt_context_chars=_clamped_int(
            agent_raw.get("prompt_context_chars", agent_defaults.prompt_context_chars),
            agent_defaults.prompt_context_chars,
            0,
            1_000_000,
        ),
        max_block_lines=_clamped_int(
            agent_raw.get("max_block_lines", agent_defaults.max_block_lines), agent_defaults.max_block_lines, 4, 10_000
        ),
        persist_debounce=_clamped_float(
            agent_raw.get("persist_debounce", agent_defaults.persist_debounce), agent_defaults.persist_debounce, 0, 60
        ),
        terminal_settle=_clamped_float(
            agent_raw.get("terminal_settle", agent_defaults.terminal_settle), agent_defaults.terminal_settle, 0, 30
        ),
    )

    safety_raw = raw.get("safety", {}) or {}
    custom_patterns = safety_raw.get("custom_patterns") or []
    safety = SafetyConfig(
        enabled=_as_bool(safety_raw.get("enabled", os.environ.get("TERMPILOT_SAFETY_ENABLED", "true"))),
        custom_patterns=[str(p) for p in custom_patterns],
    )

    app_raw = raw.get("app", {}) or {}
    app_settings = AppSettings(
        host=app_raw.get("host", "127.0.0.1"),
        port=_clamped_int(app_raw.get("port", 8765), 8765, 1, 65535),
        data_dir=Path(os.path.expanduser(str(app_raw.get("data_dir", Path.home() / ".termpilot")))),
    )

    return AppConfig(ai=ai, agent=agent, safety=safety, app=app_settings)
