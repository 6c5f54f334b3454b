import os
from dataclasses import dataclass
from typing import Mapping

from .errors import ConfigError

DB_ENV_VAR = "JOBENGINE_DB"
DEFAULT_DB_FILE = "jobs.db"

DEFAULT_CONFIG = {
    "max_retries": "3",
    "dispatch_interval_ms": "60000",
    "retention_window_days": "30",
    "running_staleness_timeout_ms": "900000",   # 15 minutes
    "sweep_interval_ms": "86400000",            # daily
    "worker_count": "4",
    "job_timeout_seconds": "300",               # 0 = no timeout
    "backoff_base_seconds": "0",                # 0 = requeue immediately
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())


def default_db_path() -> str:
    return os.environ.get(DB_ENV_VAR, DEFAULT_DB_FILE)


def _as_int(cfg: Mapping[str, str], key: str, minimum: int) -> int:
    raw = cfg.get(key, DEFAULT_CONFIG[key])
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer (got {raw!r}).")
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum} (got {value}).")
    return value


def _as_float(cfg: Mapping[str, str], key: str) -> float:
    raw = cfg.get(key, DEFAULT_CONFIG[key])
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number (got {raw!r}).")
    if value < 0:
        raise ConfigError(f"{key} must be >= 0 (got {value}).")
    return value


@dataclass(frozen=True)
class EngineConfig:
    max_retries: int = 3
    dispatch_interval_ms: int = 60000
    retention_window_days: int = 30
    running_staleness_timeout_ms: int = 900000
    sweep_interval_ms: int = 86400000
    worker_count: int = 4
    job_timeout_seconds: float = 300
    backoff_base_seconds: float = 0

    def __post_init__(self):
        # a job still inside its timeout must not look orphaned
        if self.job_timeout_seconds and self.running_staleness_timeout_ms < self.job_timeout_seconds * 1000:
            raise ConfigError(
                "running_staleness_timeout_ms must not be shorter than job_timeout_seconds."
            )

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, str]) -> "EngineConfig":
        """Build a validated config from string values (e.g. the config table)."""
        return cls(
            max_retries=_as_int(cfg, "max_retries", 0),
            dispatch_interval_ms=_as_int(cfg, "dispatch_interval_ms", 1),
            retention_window_days=_as_int(cfg, "retention_window_days", 1),
            running_staleness_timeout_ms=_as_int(cfg, "running_staleness_timeout_ms", 1),
            sweep_interval_ms=_as_int(cfg, "sweep_interval_ms", 1),
            worker_count=_as_int(cfg, "worker_count", 1),
            job_timeout_seconds=_as_float(cfg, "job_timeout_seconds"),
            backoff_base_seconds=_as_float(cfg, "backoff_base_seconds"),
        )


def validate_config_value(key: str, value) -> str:
    if key not in ALLOWED_CONFIG_KEYS:
        raise ConfigError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    merged = dict(DEFAULT_CONFIG)
    merged[key] = str(value)
    EngineConfig.from_mapping(merged)
    return str(value)
