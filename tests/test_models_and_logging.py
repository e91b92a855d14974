from __future__ import annotations

import logging

import structlog
import structlog.testing

from mcp_ipc_bridge import rich_logger
from mcp_ipc_bridge.app import ToolExecutionError
from mcp_ipc_bridge.config import get_settings
from mcp_ipc_bridge.logging_config import configure_logging, reset_logging_state
from mcp_ipc_bridge.models import ResponseEnvelope, ScheduledTask, Yak


def test_envelope_success_and_failure():
    ok = ResponseEnvelope.from_payload({"success": True, "yak_id": "y-1"})
    assert ok.success is True
    assert ok.fields == {"yak_id": "y-1"}

    failed = ResponseEnvelope.from_payload({"success": False})
    assert failed.success is False
    assert failed.error == "unknown controller error"


def test_raw_payload_is_a_success():
    envelope = ResponseEnvelope.from_payload([{"id": "y-1"}])
    assert envelope.success is True
    assert envelope.result == [{"id": "y-1"}]
    assert envelope.fields == {}


def test_scheduled_task_summary_truncates_prompt():
    task = ScheduledTask.from_dict(
        {"id": "t1", "prompt": "x" * 80, "schedule_type": "interval", "schedule_value": "60000", "status": "active"}
    )
    assert task.summary() == f"[t1] {'x' * 50}... (interval: 60000) - active, next: N/A"
    assert task.to_dict()["group_folder"] == ""


def test_yak_tolerates_bad_priority():
    yak = Yak.from_dict({"id": "y", "title": "t", "type": "bug", "priority": "high", "status": "hairy"})
    assert yak.priority == 0


def test_tool_execution_error_payload():
    exc = ToolExecutionError("RESPONSE_TIMEOUT", "late", recoverable=False, data={"prefix": "yak"})
    assert exc.to_payload() == {
        "error": {"type": "RESPONSE_TIMEOUT", "message": "late", "recoverable": False, "data": {"prefix": "yak"}}
    }


def test_configure_logging_is_idempotent(isolated_env, monkeypatch, capsys):
    monkeypatch.setenv("LOG_JSON_ENABLED", "true")
    from mcp_ipc_bridge.config import clear_settings_cache

    clear_settings_cache()
    reset_logging_state()
    configure_logging(get_settings())
    handlers = list(logging.root.handlers)
    configure_logging(get_settings())
    assert logging.root.handlers == handlers

    structlog.get_logger("test").info("bridge_ready", root="/tmp/ipc")
    captured = capsys.readouterr()
    assert captured.out == ""
    assert '"event": "bridge_ready"' in captured.err


def test_rich_logger_tool_call_panels(capsys):
    ctx = rich_logger.ToolCallContext(tool_name="create_yak", kwargs={"title": "Fix", "ctx": object()}, group="main")
    rich_logger.log_tool_call_start(ctx)
    ctx.error = ToolExecutionError("CONTROLLER_ERROR", "tracker offline")
    ctx.success = False
    rich_logger.log_tool_call_end(ctx)
    assert ctx.end_time is not None
    err = capsys.readouterr().err
    assert "MCP TOOL CALL STARTED" in err
    assert "MCP TOOL CALL FAILED" in err
    assert "CONTROLLER_ERROR" in err


def test_rich_warnings_fall_back_to_structlog_when_disabled(isolated_env, capsys):
    with structlog.testing.capture_logs() as logs:
        rich_logger.log_warning("IPC root missing", root="/tmp/ipc")
        rich_logger.log_error("Wait failed", error=TimeoutError("late"), prefix="yak")

    assert logs[0] == {"event": "IPC root missing", "log_level": "warning", "root": "/tmp/ipc"}
    assert logs[1]["event"] == "Wait failed"
    assert logs[1]["error_type"] == "TimeoutError"
    assert logs[1]["prefix"] == "yak"
    assert "Warning Details" not in capsys.readouterr().err


def test_rich_warnings_render_panels_when_enabled(isolated_env, monkeypatch, capsys):
    from mcp_ipc_bridge.config import clear_settings_cache

    monkeypatch.setenv("LOG_RICH_ENABLED", "true")
    clear_settings_cache()
    with structlog.testing.capture_logs() as logs:
        rich_logger.log_warning("IPC root missing", root="/tmp/ipc")

    assert logs == []
    err = capsys.readouterr().err
    assert "IPC root missing" in err
    assert "Warning Details" in err
