"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

_DOTENV_PATH: Final[Path] = Path(".env")

CORRELATION_MODES: Final[frozenset[str]] = frozenset({"window", "request_id"})


def _build_decouple_config() -> DecoupleConfig:
    # Gracefully handle missing .env (e.g., in containers/tests) by falling back to an empty repository.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        # Fall back to an empty repository (reads only os.environ; all .env lookups use defaults)
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class IpcSettings:
    """Shared-directory bridge settings.

    All durations are milliseconds except the sweep thresholds for temp files,
    which follow file mtimes and are expressed in seconds.
    """

    root: str
    response_timeout_ms: int
    poll_interval_ms: int
    clock_skew_ms: int
    correlation_mode: str  # "window" | "request_id"
    temp_max_age_seconds: int
    response_max_age_seconds: int


@dataclass(slots=True, frozen=True)
class AgentContextSettings:
    """Identity of the agent container, set by the agent runner."""

    chat_jid: str
    group_folder: str
    is_main: bool


@dataclass(slots=True, frozen=True)
class ControllerSettings:
    """Reference responder settings."""

    poll_interval_ms: int
    lock_timeout_seconds: float


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    ipc: IpcSettings
    agent: AgentContextSettings
    controller: ControllerSettings
    # Logging
    log_level: str
    log_json_enabled: bool
    log_rich_enabled: bool
    # Tools logging
    tools_log_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _positive_int(value: str, *, default: int) -> int:
    parsed = _int(value, default=default)
    return parsed if parsed > 0 else default


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _correlation_mode(value: str) -> str:
    v = (value or "").strip().lower()
    if v in CORRELATION_MODES:
        return v
    return "window"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    ipc_settings = IpcSettings(
        root=_decouple_config("IPC_ROOT", default="/workspace/ipc"),
        response_timeout_ms=_positive_int(_decouple_config("IPC_RESPONSE_TIMEOUT_MS", default="2000"), default=2000),
        poll_interval_ms=_positive_int(_decouple_config("IPC_POLL_INTERVAL_MS", default="100"), default=100),
        # Zero is a legitimate skew buffer (exact clocks), negative is not
        clock_skew_ms=max(_int(_decouple_config("IPC_CLOCK_SKEW_MS", default="100"), default=100), 0),
        correlation_mode=_correlation_mode(_decouple_config("IPC_CORRELATION_MODE", default="window")),
        temp_max_age_seconds=_positive_int(_decouple_config("IPC_TEMP_MAX_AGE_SECONDS", default="300"), default=300),
        response_max_age_seconds=_positive_int(
            _decouple_config("IPC_RESPONSE_MAX_AGE_SECONDS", default="3600"), default=3600
        ),
    )

    agent_settings = AgentContextSettings(
        chat_jid=_decouple_config("AGENT_CHAT_JID", default="").strip(),
        group_folder=_decouple_config("AGENT_GROUP_FOLDER", default="").strip(),
        is_main=_bool(_decouple_config("AGENT_IS_MAIN", default="false"), default=False),
    )

    controller_settings = ControllerSettings(
        poll_interval_ms=_positive_int(_decouple_config("CONTROLLER_POLL_INTERVAL_MS", default="500"), default=500),
        lock_timeout_seconds=_float(_decouple_config("CONTROLLER_LOCK_TIMEOUT_SECONDS", default="1.0"), default=1.0),
    )

    return Settings(
        environment=environment,
        ipc=ipc_settings,
        agent=agent_settings,
        controller=controller_settings,
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="true"), default=True),
        tools_log_enabled=_bool(_decouple_config("TOOLS_LOG_ENABLED", default="false"), default=False),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
