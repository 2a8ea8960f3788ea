"""
Engine settings.

Values come from keyword arguments, then RESGRAPH_* environment variables,
then defaults.
"""
from __future__ import annotations
from dataclasses import dataclass, fields
from typing import Any, Optional
import logging
import os
from .errors import ConfigError

STATE_BACKENDS = ("file", "memory", "mongodb")


def _env_bool(value: str) -> bool:
    s = value.strip().lower()
    if s in {"1", "true", "yes", "on"}:
        return True
    if s in {"0", "false", "no", "off", ""}:
        return False
    raise ConfigError(f"Expected a boolean, got {value!r}")


@dataclass
class EngineConfig:
    concurrency: int = 8
    state_backend: str = "file"
    state_path: str = ".resgraph/state.json"
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "resgraph"
    max_retries: int = 0
    retry_backoff: float = 1.0
    default_timeout: Optional[float] = None
    refresh: bool = False
    log_level: str = "INFO"

    _ENV = {
        "concurrency": "RESGRAPH_CONCURRENCY",
        "state_backend": "RESGRAPH_STATE_BACKEND",
        "state_path": "RESGRAPH_STATE_PATH",
        "mongo_uri": "RESGRAPH_MONGO_URI",
        "mongo_db": "RESGRAPH_MONGO_DB",
        "max_retries": "RESGRAPH_MAX_RETRIES",
        "retry_backoff": "RESGRAPH_RETRY_BACKOFF",
        "default_timeout": "RESGRAPH_TIMEOUT",
        "refresh": "RESGRAPH_REFRESH",
        "log_level": "RESGRAPH_LOG_LEVEL",
    }

    def __post_init__(self):
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.max_retries < 0:
            raise ConfigError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.default_timeout is not None and self.default_timeout <= 0:
            raise ConfigError(f"timeout must be > 0, got {self.default_timeout}")
        if self.state_backend not in STATE_BACKENDS:
            raise ConfigError(
                f"Unknown state backend {self.state_backend!r}; expected one of {STATE_BACKENDS}"
            )
        self.log_level = str(self.log_level).upper()
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ConfigError(f"Unknown log level {self.log_level!r}")

    @classmethod
    def from_env(cls, **overrides: Any) -> "EngineConfig":
        """Build a config from the environment; non-None overrides win."""
        values: dict = {}
        for f in fields(cls):
            if f.name.startswith("_"):
                continue
            raw = os.getenv(cls._ENV[f.name])
            if raw is None or raw == "":
                continue
            values[f.name] = _coerce(f.name, raw)
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _coerce(name: str, raw: str) -> Any:
    try:
        if name in ("concurrency", "max_retries"):
            return int(raw)
        if name in ("retry_backoff", "default_timeout"):
            return float(raw)
        if name == "refresh":
            return _env_bool(raw)
    except ValueError as e:
        raise ConfigError(f"Invalid value for {name}: {raw!r}") from e
    return raw


def configure_logging(level: str = "INFO") -> None:
    """Install a basic root handler; library code never calls this on import."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
