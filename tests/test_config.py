"""Tests for kanban_agents.lib.config."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

import kanban_agents.lib.config as config_module
from kanban_agents.lib.config import Config

_REAL_LOAD_ENV_FILES = config_module._load_env_files


class TestConfigDefaults:
    def test_defaults(self) -> None:
        config = Config()
        assert config.model == "claude-sonnet-4-20250514"
        assert config.max_iterations == 20
        assert config.max_tokens == 4096
        assert config.temperature == 0.7
        assert config.store_url == "memory://"
        assert config.log_ttl_seconds == 86400
        assert config.heartbeat_window_seconds == 30.0
        assert config.poll_interval_seconds == 1.0
        assert config.verbose is False

    def test_from_env_picks_up_env_vars(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KANBAN_AGENTS_MODEL", "claude-test")
        monkeypatch.setenv("KANBAN_AGENTS_MAX_ITERATIONS", "5")
        monkeypatch.setenv("KANBAN_AGENTS_TEMPERATURE", "0.2")
        monkeypatch.setenv("KANBAN_AGENTS_VERBOSE", "yes")

        config = Config.from_env()

        assert config.model == "claude-test"
        assert config.max_iterations == 5
        assert config.temperature == 0.2
        assert config.verbose is True

    def test_overrides_beat_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KANBAN_AGENTS_MODEL", "from-env")
        config = Config.from_env(overrides={"model": "from-cli", "max_iterations": 3})
        assert config.model == "from-cli"
        assert config.max_iterations == 3

    def test_none_overrides_are_ignored(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KANBAN_AGENTS_MODEL", "from-env")
        config = Config.from_env(overrides={"model": None, "verbose": None})
        assert config.model == "from-env"
        assert config.verbose is False

    def test_store_url_falls_back_to_redis_url(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
        assert Config.from_env().store_url == "redis://cache:6379/0"

        monkeypatch.setenv("KANBAN_AGENTS_STORE_URL", "redis://primary:6379/2")
        assert Config.from_env().store_url == "redis://primary:6379/2"

    def test_non_numeric_env_is_ignored(
        self, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
    ) -> None:
        monkeypatch.setenv("KANBAN_AGENTS_MAX_TOKENS", "lots")
        with caplog.at_level(logging.WARNING, logger="kanban_agents.lib.config"):
            config = Config.from_env()
        assert config.max_tokens == 4096
        assert "KANBAN_AGENTS_MAX_TOKENS" in caplog.text

    def test_from_env_loads_dotenv(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        loaded: list[Path] = []

        def fake_load_dotenv(path: Path, override: bool = False) -> None:
            loaded.append(path)

        # Undo the autouse stub so the real loader runs with a fake dotenv.
        monkeypatch.setattr(config_module, "_load_env_files", _REAL_LOAD_ENV_FILES)
        monkeypatch.setattr(config_module, "load_dotenv", fake_load_dotenv)
        monkeypatch.chdir(tmp_path)

        Config.from_env()

        assert loaded == [tmp_path / ".env"]


class TestConfigValidation:
    def test_rejects_unknown_store_scheme(self) -> None:
        with pytest.raises(ValueError, match="Invalid store URL"):
            Config(store_url="postgres://db")

    @pytest.mark.parametrize("field", ["max_iterations", "max_tokens", "log_ttl_seconds"])
    def test_rejects_non_positive_ints(self, field: str) -> None:
        with pytest.raises(ValueError, match=f"{field} must be > 0"):
            Config(**{field: 0})

    def test_rejects_zero_poll_interval(self) -> None:
        with pytest.raises(ValueError, match="poll_interval_seconds"):
            Config(poll_interval_seconds=0)

    def test_odd_model_only_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="kanban_agents.lib.config"):
            config = Config(model="claude sonnet!")
        assert config.model == "claude sonnet!"
        assert "unexpected characters" in caplog.text

    def test_is_frozen(self) -> None:
        config = Config()
        with pytest.raises(AttributeError):
            config.model = "other"  # type: ignore[misc]
