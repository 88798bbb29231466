from __future__ import annotations

# Config.py
# Runtime configuration is read from the environment (optionally a .env file).
# Agents never read the environment themselves; callers build them from a
# RuntimeConfig or pass explicit arguments.

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union

from dotenv import load_dotenv

from .Exceptions import ConfigError

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "stepcraft"

DEFAULT_AUTHORIZED_IMPORTS: tuple[str, ...] = (
    "collections",
    "datetime",
    "decimal",
    "fractions",
    "functools",
    "itertools",
    "json",
    "math",
    "queue",
    "random",
    "re",
    "statistics",
    "time",
    "unicodedata",
)


def configure_logging(level: Union[int, str, None] = None) -> logging.Logger:
    """
    Set the level of the package logger and return it.

    ``level`` accepts a logging constant or its name ("DEBUG", "info", ...).
    ``None`` leaves the current level untouched.
    """
    pkg_logger = logging.getLogger(PACKAGE_LOGGER)
    if level is None:
        return pkg_logger
    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        if not isinstance(resolved, int):
            raise ConfigError(f"unknown logging level {level!r}")
        level = resolved
    pkg_logger.setLevel(level)
    return pkg_logger


def _read_int(env: Mapping[str, str], key: str, default: Optional[int]) -> Optional[int]:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"{key} must be >= 0, got {value}")
    return value


def _read_float(env: Mapping[str, str], key: str, default: Optional[float]) -> Optional[float]:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{key} must be > 0, got {value}")
    return value


@dataclass
class RuntimeConfig:
    """
    Environment-driven defaults for engines, budgets and the code sandbox.

    Environment variables
    ---------------------
    STEPCRAFT_MODEL              model identifier for the default engine
    OPENAI_API_KEY               API key for the OpenAI-compatible endpoint
    OPENAI_BASE_URL              optional base URL (Ollama, vLLM, OpenRouter, ...)
    STEPCRAFT_MAX_STEPS          max action steps per run (default 10)
    STEPCRAFT_MAX_SECONDS        optional wall-clock budget per run
    STEPCRAFT_MAX_TOKENS         optional token budget per run
    STEPCRAFT_CODE_TIMEOUT       seconds per sandboxed execution (default 30)
    STEPCRAFT_AUTHORIZED_IMPORTS comma-separated extra imports for code agents
    STEPCRAFT_LOG_LEVEL          level for the package logger
    """

    model: str = "gpt-4o-mini"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    max_steps: int = 10
    max_seconds: Optional[float] = None
    max_tokens: Optional[int] = None
    code_timeout: float = 30.0
    authorized_imports: tuple[str, ...] = field(default_factory=lambda: DEFAULT_AUTHORIZED_IMPORTS)
    log_level: Optional[str] = None

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        *,
        dotenv: bool = True,
    ) -> "RuntimeConfig":
        """Build a config from ``env`` (defaults to ``os.environ`` after loading .env)."""
        if env is None:
            if dotenv:
                load_dotenv()
            env = os.environ

        extra_imports = [
            item.strip()
            for item in (env.get("STEPCRAFT_AUTHORIZED_IMPORTS") or "").split(",")
            if item.strip()
        ]
        imports = tuple(dict.fromkeys([*DEFAULT_AUTHORIZED_IMPORTS, *extra_imports]))

        max_steps = _read_int(env, "STEPCRAFT_MAX_STEPS", 10)
        if not max_steps:
            raise ConfigError("STEPCRAFT_MAX_STEPS must be >= 1")

        config = cls(
            model=(env.get("STEPCRAFT_MODEL") or cls.model).strip(),
            api_key=env.get("OPENAI_API_KEY") or None,
            base_url=env.get("OPENAI_BASE_URL") or None,
            max_steps=max_steps,
            max_seconds=_read_float(env, "STEPCRAFT_MAX_SECONDS", None),
            max_tokens=_read_int(env, "STEPCRAFT_MAX_TOKENS", None),
            code_timeout=_read_float(env, "STEPCRAFT_CODE_TIMEOUT", 30.0),
            authorized_imports=imports,
            log_level=env.get("STEPCRAFT_LOG_LEVEL") or None,
        )
        logger.debug("RuntimeConfig loaded: %s", config.to_dict())
        return config

    # ------------------------------------------------------------------ #
    # Builders
    # ------------------------------------------------------------------ #
    def budget(self):
        from ..agents.state import Budget

        return Budget(
            max_steps=self.max_steps,
            max_seconds=self.max_seconds,
            max_tokens=self.max_tokens,
        )

    def sandbox_policy(self):
        from ..sandbox.policy import SandboxPolicy

        return SandboxPolicy(authorized_imports=self.authorized_imports, timeout=self.code_timeout)

    def engine(self, **kwargs: Any):
        from ..engines.LLMEngines import OpenAIEngine

        return OpenAIEngine(
            model=self.model,
            api_key=self.api_key,
            base_url=self.base_url,
            **kwargs,
        )

    def apply_logging(self) -> None:
        configure_logging(self.log_level)

    def to_dict(self) -> Dict[str, Any]:
        """Non-secret snapshot (the API key is reported only by presence)."""
        return {
            "model": self.model,
            "has_api_key": bool(self.api_key),
            "base_url": self.base_url,
            "max_steps": self.max_steps,
            "max_seconds": self.max_seconds,
            "max_tokens": self.max_tokens,
            "code_timeout": self.code_timeout,
            "authorized_imports": list(self.authorized_imports),
            "log_level": self.log_level,
        }


__all__ = ["DEFAULT_AUTHORIZED_IMPORTS", "RuntimeConfig", "configure_logging"]
