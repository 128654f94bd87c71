"""Service configuration from environment variables."""

import os
from dataclasses import dataclass

from game.rules import DEFAULT_DAY_SEC, DEFAULT_NIGHT_SEC, DEFAULT_VOTE_SEC
from game.scheduler import DEFAULT_POLL_INTERVAL_SEC
from game.state import RoomSettings

# Env var names
ENV_LOG_LEVEL = "MAFIA_LOG_LEVEL"
ENV_POLL_INTERVAL_SEC = "MAFIA_POLL_INTERVAL_SEC"
ENV_ENABLE_POLLER = "MAFIA_ENABLE_POLLER"
ENV_DEFAULT_NIGHT_SEC = "MAFIA_DEFAULT_NIGHT_SEC"
ENV_DEFAULT_DAY_SEC = "MAFIA_DEFAULT_DAY_SEC"
ENV_DEFAULT_VOTE_SEC = "MAFIA_DEFAULT_VOTE_SEC"

_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ServiceConfig:
    log_level: str
    poll_interval_sec: float
    enable_poller: bool
    default_settings: RoomSettings


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def load_config() -> ServiceConfig:
    """Read config from env. Phase durations are clamped like room settings."""
    return ServiceConfig(
        log_level=os.environ.get(ENV_LOG_LEVEL, "INFO").upper(),
        poll_interval_sec=_env_float(ENV_POLL_INTERVAL_SEC, DEFAULT_POLL_INTERVAL_SEC),
        enable_poller=os.environ.get(ENV_ENABLE_POLLER, "true").strip().lower() in _TRUE_VALUES,
        default_settings=RoomSettings.clamped(
            _env_int(ENV_DEFAULT_NIGHT_SEC, DEFAULT_NIGHT_SEC),
            _env_int(ENV_DEFAULT_DAY_SEC, DEFAULT_DAY_SEC),
            _env_int(ENV_DEFAULT_VOTE_SEC, DEFAULT_VOTE_SEC),
        ),
    )
