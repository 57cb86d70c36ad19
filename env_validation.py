"""Environment variable validation and management."""

import logging
import os
from dataclasses import dataclass
from typing import Dict

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


@dataclass(frozen=True)
class EngineSettings:
    db_path: str
    db_max_connections: int
    gap_recovery_score: int
    gap_auto_resolve: bool
    sweep_max_workers: int
    log_level: str


def validate_environment() -> None:
    """Validate engine environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": "data.db",
        "DB_MAX_CONNECTIONS": "10",
        "GAP_RECOVERY_SCORE": "75",
        "GAP_AUTO_RESOLVE": "true",
        "SWEEP_MAX_WORKERS": "4",
        "LOG_LEVEL": "INFO",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    ranges: Dict[str, tuple[int, int]] = {
        "DB_MAX_CONNECTIONS": (1, 100),
        "GAP_RECOVERY_SCORE": (0, 100),
        "SWEEP_MAX_WORKERS": (1, 64),
    }
    for var, (lower, upper) in ranges.items():
        value = get_env_int(var, int(defaults[var]))
        if not (lower <= value <= upper):
            raise EnvironmentError(f"{var} must be between {lower} and {upper}, got {value}")

    level = os.environ["LOG_LEVEL"].upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise EnvironmentError(f"Invalid LOG_LEVEL: {os.environ['LOG_LEVEL']}")


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int) -> int:
    """Get integer value from environment variable."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise EnvironmentError(f"Invalid integer for {name}: {value}")


def load_settings() -> EngineSettings:
    return EngineSettings(
        db_path=os.getenv("DB_PATH") or "data.db",
        db_max_connections=get_env_int("DB_MAX_CONNECTIONS", 10),
        gap_recovery_score=get_env_int("GAP_RECOVERY_SCORE", 75),
        gap_auto_resolve=get_env_bool("GAP_AUTO_RESOLVE", True),
        sweep_max_workers=get_env_int("SWEEP_MAX_WORKERS", 4),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )


def configure_logging(level: str | None = None) -> None:
    """Attach a stream handler to the root logger once."""
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel((level or os.getenv("LOG_LEVEL") or "INFO").upper())
