import contextlib
import json
from pathlib import Path
from typing import Any

import psutil
import pytest

from mcp_ipc_bridge.config import clear_settings_cache
from mcp_ipc_bridge.logging_config import reset_logging_state

# CPU overload threshold - skip timing tests if ALL cores are at this level
CPU_OVERLOAD_THRESHOLD = 95.0


def is_cpu_overloaded() -> bool:
    """Check if all CPU cores are at 95%+ utilization.

    Returns True only when the system is under extreme load (all cores saturated),
    which would make timing-based tests unreliable.
    """
    per_cpu = psutil.cpu_percent(interval=0.2, percpu=True)
    if not per_cpu:
        return False

    overloaded = sum(1 for usage in per_cpu if usage >= CPU_OVERLOAD_THRESHOLD)
    return overloaded == len(per_cpu)


def skip_if_cpu_overloaded() -> None:
    """Skip the current test if all CPU cores are at 95%+ utilization.

    Use this at the start of any test that asserts on wall-clock time.
    """
    if is_cpu_overloaded():
        cores = psutil.cpu_count()
        pytest.skip(
            f"Skipping timing test: system under extreme CPU load "
            f"(all {cores} cores at {CPU_OVERLOAD_THRESHOLD}%+ utilization)"
        )


def _write_response(responses_dir: Path, name: str, payload: Any) -> Path:
    responses_dir.mkdir(parents=True, exist_ok=True)
    path = responses_dir / name
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


@pytest.fixture
def write_response():
    """Drop a response file directly, the way a controller would after its rename."""
    return _write_response


@pytest.fixture
def cpu_guard():
    skip_if_cpu_overloaded()


@pytest.fixture
def ipc_root(tmp_path) -> Path:
    return tmp_path / "ipc"


@pytest.fixture
def isolated_env(ipc_root, monkeypatch):
    """Point the bridge at a temporary IPC tree as a non-main agent and reset caches."""
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("IPC_ROOT", str(ipc_root))
    monkeypatch.setenv("IPC_RESPONSE_TIMEOUT_MS", "2000")
    monkeypatch.setenv("IPC_POLL_INTERVAL_MS", "20")
    monkeypatch.setenv("IPC_CLOCK_SKEW_MS", "100")
    monkeypatch.setenv("IPC_CORRELATION_MODE", "window")
    monkeypatch.setenv("AGENT_CHAT_JID", "family@g.us")
    monkeypatch.setenv("AGENT_GROUP_FOLDER", "family-chat")
    monkeypatch.setenv("AGENT_IS_MAIN", "false")
    monkeypatch.setenv("CONTROLLER_POLL_INTERVAL_MS", "20")
    monkeypatch.setenv("TOOLS_LOG_ENABLED", "false")
    monkeypatch.setenv("LOG_RICH_ENABLED", "false")
    clear_settings_cache()
    try:
        yield
    finally:
        clear_settings_cache()


@pytest.fixture
def main_env(isolated_env, monkeypatch):
    """Same as ``isolated_env`` but running as the main group."""
    monkeypatch.setenv("AGENT_CHAT_JID", "main@g.us")
    monkeypatch.setenv("AGENT_GROUP_FOLDER", "main")
    monkeypatch.setenv("AGENT_IS_MAIN", "true")
    clear_settings_cache()
    return None


@pytest.fixture(autouse=True)
def _global_resource_cleanup():
    """Reset cached settings and logging configuration between tests."""
    yield

    with contextlib.suppress(Exception):
        clear_settings_cache()

    with contextlib.suppress(Exception):
        reset_logging_state()
