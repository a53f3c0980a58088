"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from termpilot.config import AppConfig, load_config

_ENV_VARS = (
    "TERMPILOT_BASE_URL",
    "TERMPILOT_API_KEY",
    "TERMPILOT_MODEL",
    "TERMPILOT_PROVIDER",
    "TERMPILOT_CONTEXT_WINDOW",
    "TERMPILOT_MAX_STEPS",
    "TERMPILOT_REQUEST_TIMEOUT",
    "TERMPILOT_VERIFY_SSL",
    "TERMPILOT_SAFETY_ENABLED",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _write_config(path: Path, data: dict) -> Path:
    config_file = path / "config.yaml"
    config_file.write_text(yaml.dump(data))
    return config_file


class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path: Path) -> None:
        config = load_config(tmp_path / "missing.yaml")
        assert isinstance(config, AppConfig)
        assert config.ai.base_url == "http://localhost:11434/v1"
        assert config.ai.model == "llama3"
        assert config.ai.context_window == 4000
        assert config.agent.command_timeout == 30.0
        assert config.agent.interrupt_delay == 0.08
        assert config.safety.enabled is True
        assert config.app.port == 8765

    def test_small_context_window_is_kept(self, tmp_path: Path) -> None:
        config = load_config(_write_config(tmp_path, {"ai": {"context_window": 100}}))
        assert config.ai.context_window == 100

    def test_load_valid_config(self, tmp_path: Path) -> None:
        cfg_file = _write_config(
            tmp_path,
            {
                "ai": {
                    "base_url": "https://api.example.com/v1",
                    "api_key": "sk-test-key",
                    "model": "gpt-4o-mini",
                    "context_window": 16000,
                    "verify_ssl": False,
                },
                "agent": {"command_timeout": 12, "summarize_threshold": 0.75},
                "safety": {"custom_patterns": ["terraform destroy"]},
                "app": {"host": "0.0.0.0", "port": 9090, "data_dir": str(tmp_path / "data")},
            },
        )
        config = load_config(cfg_file)
        assert config.ai.base_url == "https://api.example.com/v1"
        assert config.ai.api_key == "sk-test-key"
        assert config.ai.model == "gpt-4o-mini"
        assert config.ai.context_window == 16000
        assert config.ai.verify_ssl is False
        assert config.agent.command_timeout == 12.0
        assert config.agent.summarize_threshold == 0.75
        assert config.safety.custom_patterns == ["terraform destroy"]
        assert config.app.host == "0.0.0.0"
        assert config.app.port == 9090
        assert config.app.data_dir == tmp_path / "data"

    def test_env_fallbacks(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TERMPILOT_BASE_URL", "http://env-host:1234/v1")
        monkeypatch.setenv("TERMPILOT_MODEL", "qwen2.5")
        monkeypatch.setenv("TERMPILOT_MAX_STEPS", "25")
        monkeypatch.setenv("TERMPILOT_VERIFY_SSL", "false")
        config = load_config(tmp_path / "missing.yaml")
        assert config.ai.base_url == "http://env-host:1234/v1"
        assert config.ai.model == "qwen2.5"
        assert config.ai.max_agent_steps == 25
        assert config.ai.verify_ssl is False

    def test_file_wins_over_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TERMPILOT_MODEL", "from-env")
        cfg_file = _write_config(tmp_path, {"ai": {"model": "from-file"}})
        assert load_config(cfg_file).ai.model == "from-file"

    def test_empty_base_url_raises(self, tmp_path: Path) -> None:
        cfg_file = _write_config(tmp_path, {"ai": {"base_url": ""}})
        with pytest.raises(ValueError, match="base_url"):
            load_config(cfg_file)

    def test_invalid_numbers_fall_back(self, tmp_path: Path) -> None:
        cfg_file = _write_config(
            tmp_path,
            {"ai": {"context_window": "lots", "request_timeout": 5000}, "agent": {"command_timeout": "soon"}},
        )
        config = load_config(cfg_file)
        assert config.ai.context_window == 4000
        assert config.ai.request_timeout == 600
        assert config.agent.command_timeout == 30.0

    def test_safety_can_be_disabled_by_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TERMPILOT_SAFETY_ENABLED", "0")
        assert load_config(tmp_path / "missing.yaml").safety.enabled is False

    def test_empty_file(self, tmp_path: Path) -> None:
        cfg_file = tmp_path / "config.yaml"
        cfg_file.write_text("")
        assert load_config(cfg_file).ai.model == "llama3"
