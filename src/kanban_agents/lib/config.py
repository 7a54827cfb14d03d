"""Configuration loading: CLI flags → env vars → defaults (+ ``.env`` files)."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_MODEL_PATTERN = re.compile(r"^[a-zA-Z0-9._:/-]+$")
_STORE_SCHEMES = ("memory://", "redis://", "rediss://", "unix://")

try:
    from dotenv import load_dotenv
except ImportError:  # pragma: no cover - optional dependency safety
    load_dotenv = None  # type: ignore[assignment]

ConfigValue = str | bool | int | float | None

DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_MAX_ITERATIONS = 20


def _validate_model(model: str) -> None:
    """Warn if model string doesn't match expected patterns."""
    if not _MODEL_PATTERN.match(model):
        logger.warning(
            "Model '%s' contains unexpected characters; "
            "expected a bare model id (e.g. 'claude-sonnet-4-20250514')",
            model,
        )


def _validate_store_url(store_url: str) -> None:
    """Reject store URLs that no store backend understands."""
    if store_url.startswith(_STORE_SCHEMES):
        return
    msg = (
        f"Invalid store URL '{store_url}': expected one of "
        f"{', '.join(_STORE_SCHEMES)}"
    )
    raise ValueError(msg)


def _load_env_files() -> None:
    """Load a ``.env`` file from the working directory, if present."""
    if load_dotenv is None:
        return
    load_dotenv(Path.cwd() / ".env", override=False)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


def _env_number(name: str, cast: type[int] | type[float]) -> int | float | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return None


@dataclass(frozen=True)
class Config:
    """Immutable engine configuration."""

    model: str = DEFAULT_MODEL
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_tokens: int = 4096
    temperature: float = 0.7
    store_url: str = "memory://"
    log_ttl_seconds: int = 86400
    heartbeat_window_seconds: float = 30.0
    poll_interval_seconds: float = 1.0
    verbose: bool = False

    def __post_init__(self) -> None:
        """Validate config fields on creation.

        ``max_iterations``, ``max_tokens`` and ``log_ttl_seconds`` must be
        positive, and ``store_url`` must use a scheme handled by
        ``kanban_agents.lib.store.build_store``.  A ``model`` with unexpected
        characters only logs a warning.
        """
        _validate_model(self.model)
        _validate_store_url(self.store_url)
        for name in ("max_iterations", "max_tokens", "log_ttl_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")

    @classmethod
    def from_env(cls, overrides: dict[str, ConfigValue] | None = None) -> Config:
        """Build config from environment variables, then apply overrides.

        Priority: overrides (CLI flags) > env vars > defaults.
        """
        _load_env_files()

        env_values: dict[str, ConfigValue] = {
            "model": os.environ.get("KANBAN_AGENTS_MODEL"),
            "max_iterations": _env_number("KANBAN_AGENTS_MAX_ITERATIONS", int),
            "max_tokens": _env_number("KANBAN_AGENTS_MAX_TOKENS", int),
            "temperature": _env_number("KANBAN_AGENTS_TEMPERATURE", float),
            "store_url": os.environ.get("KANBAN_AGENTS_STORE_URL")
            or os.environ.get("REDIS_URL"),
            "log_ttl_seconds": _env_number("KANBAN_AGENTS_LOG_TTL_SECONDS", int),
            "heartbeat_window_seconds": _env_number(
                "KANBAN_AGENTS_HEARTBEAT_WINDOW_SECONDS", float
            ),
            "poll_interval_seconds": _env_number(
                "KANBAN_AGENTS_POLL_INTERVAL_SECONDS", float
            ),
            "verbose": _env_flag("KANBAN_AGENTS_VERBOSE"),
        }

        merged = {k: v for k, v in env_values.items() if v is not None and v != ""}
        if not merged.get("verbose"):
            merged.pop("verbose", None)
        if overrides:
            merged.update({k: v for k, v in overrides.items() if v is not None})

        return cls(
            model=str(merged.get("model", cls.model)),
            max_iterations=int(merged.get("max_iterations", cls.max_iterations)),
            max_tokens=int(merged.get("max_tokens", cls.max_tokens)),
            temperature=float(merged.get("temperature", cls.temperature)),
            store_url=str(merged.get("store_url", cls.store_url)),
            log_ttl_seconds=int(merged.get("log_ttl_seconds", cls.log_ttl_seconds)),
            heartbeat_window_seconds=float(
                merged.get("heartbeat_window_seconds", cls.heartbeat_window_seconds)
            ),
            poll_interval_seconds=float(
                merged.get("poll_interval_seconds", cls.poll_interval_seconds)
            ),
            verbose=bool(merged.get("verbose", cls.verbose)),
        )
