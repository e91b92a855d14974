"""Application factory for the IPC bridge MCP server.

The tools below run inside the agent container. They never perform privileged
work themselves: each one writes a request into the shared IPC tree and, where
the action has a result, waits for the controller's correlated answer.
"""

from __future__ import annotations

import inspect
import logging
import re
import time
from collections import defaultdict
from contextlib import suppress
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Literal, Optional

from croniter import croniter
from fastmcp import Context, FastMCP

from . import rich_logger
from .bridge import IpcBridge
from .config import Settings, get_settings
from .models import ResponseEnvelope, ScheduledTask, Yak
from .storage import MESSAGES_CATEGORY, TASKS_CATEGORY, IpcLayout, TasksSnapshotError, read_tasks_snapshot
from .utils import validate_group_folder
from .waiter import ResponseParseError, ResponseTimeoutError, WaitCancelledError

logger = logging.getLogger(__name__)

YAK_RESPONSE_PREFIX = "yak"
LIST_YAKS_RESPONSE_PREFIX = "list_yaks"

_TZ_SUFFIX_RE = re.compile(r"(?:[Zz]|[+-]\d{2}:\d{2})$")

TOOL_METRICS: defaultdict[str, dict[str, int]] = defaultdict(lambda: {"calls": 0, "errors": 0})


class ToolExecutionError(Exception):
    def __init__(self, error_type: str, message: str, *, recoverable: bool = True, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.error_type = error_type
        self.recoverable = recoverable
        self.data = data or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "type": self.error_type,
                "message": str(self),
                "recoverable": self.recoverable,
                "data": self.data,
            }
        }


def _record_tool_error(tool_name: str, exc: Exception) -> None:
    logger.warning(
        "tool_error",
        extra={
            "tool": tool_name,
            "error": type(exc).__name__,
            "error_message": str(exc),
        },
    )


def _wrap_exception(tool_name: str, exc: Exception) -> ToolExecutionError:
    """Translate bridge and runtime failures into structured tool errors."""
    if isinstance(exc, ResponseTimeoutError):
        # The controller may still act on the request, so a blind retry could duplicate it
        return ToolExecutionError(
            "RESPONSE_TIMEOUT",
            f"{exc}. The controller may still complete the action; check before retrying.",
            recoverable=False,
            data={"tool": tool_name, "prefix": exc.prefix, "timeout_ms": exc.timeout_ms},
        )
    if isinstance(exc, ResponseParseError):
        return ToolExecutionError(
            "RESPONSE_PARSE_ERROR",
            str(exc),
            recoverable=False,
            data={"tool": tool_name, "file": exc.filename},
        )
    if isinstance(exc, WaitCancelledError):
        return ToolExecutionError(
            "WAIT_CANCELLED",
            str(exc),
            recoverable=False,
            data={"tool": tool_name, "prefix": exc.prefix},
        )
    if isinstance(exc, TasksSnapshotError):
        return ToolExecutionError(
            "TASKS_SNAPSHOT_UNREADABLE",
            str(exc),
            recoverable=True,
            data={"tool": tool_name},
        )
    if isinstance(exc, ValueError):
        return ToolExecutionError(
            "INVALID_ARGUMENT",
            f"Invalid argument value: {exc}",
            recoverable=True,
            data={"tool": tool_name, "error_detail": str(exc)},
        )
    if isinstance(exc, OSError):
        return ToolExecutionError(
            "OS_ERROR",
            f"Could not write request: {exc}",
            recoverable=False,
            data={"tool": tool_name, "errno": exc.errno, "error_detail": str(exc)},
        )
    return ToolExecutionError(
        "UNHANDLED_EXCEPTION",
        f"Unexpected error ({type(exc).__name__}): {exc}",
        recoverable=False,
        data={"tool": tool_name, "original_error": type(exc).__name__, "error_detail": str(exc)},
    )


def _instrument_tool(tool_name: str) -> Callable[[Any], Any]:
    def decorator(func: Any) -> Any:
        signature = inspect.signature(func)

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            metrics = TOOL_METRICS[tool_name]
            metrics["calls"] += 1
            settings = get_settings()
            log_ctx = None
            if settings.tools_log_enabled:
                try:
                    bound = signature.bind_partial(*args, **kwargs)
                    log_ctx = rich_logger.ToolCallContext(
                        tool_name=tool_name,
                        kwargs={k: v for k, v in bound.arguments.items() if k != "ctx"},
                        group=settings.agent.group_folder or None,
                    )
                    rich_logger.log_tool_call_start(log_ctx)
                except Exception:
                    # Logging errors should not break tool execution
                    log_ctx = None

            result = None
            error: Optional[Exception] = None
            try:
                result = await func(*args, **kwargs)
            except ToolExecutionError as exc:
                metrics["errors"] += 1
                _record_tool_error(tool_name, exc)
                error = exc
                raise
            except Exception as exc:
                metrics["errors"] += 1
                _record_tool_error(tool_name, exc)
                wrapped_exc = _wrap_exception(tool_name, exc)
                error = wrapped_exc
                raise wrapped_exc from exc
            finally:
                if log_ctx is not None:
                    with suppress(Exception):
                        log_ctx.end_time = time.perf_counter()
                        log_ctx.result = result
                        log_ctx.error = error
                        log_ctx.success = error is None
                        rich_logger.log_tool_call_end(log_ctx)
            return result

        return wrapper

    return decorator


def _validate_schedule(schedule_type: str, schedule_value: str) -> None:
    if schedule_type == "cron":
        if not croniter.is_valid(schedule_value):
            raise ToolExecutionError(
                "INVALID_SCHEDULE",
                f'Invalid cron: "{schedule_value}". Use format like "0 9 * * *" (daily 9am) or "*/5 * * * *" (every 5 min).',
                data={"schedule_type": schedule_type, "schedule_value": schedule_value},
            )
    elif schedule_type == "interval":
        try:
            interval_ms = int(schedule_value)
        except ValueError:
            interval_ms = 0
        if interval_ms <= 0:
            raise ToolExecutionError(
                "INVALID_SCHEDULE",
                f'Invalid interval: "{schedule_value}". Must be positive milliseconds (e.g., "300000" for 5 min).',
                data={"schedule_type": schedule_type, "schedule_value": schedule_value},
            )
    elif schedule_type == "once":
        if _TZ_SUFFIX_RE.search(schedule_value):
            raise ToolExecutionError(
                "INVALID_SCHEDULE",
                f'Timestamp must be local time without timezone suffix. Got "{schedule_value}", '
                'use format like "2026-02-01T15:30:00".',
                data={"schedule_type": schedule_type, "schedule_value": schedule_value},
            )
        try:
            datetime.fromisoformat(schedule_value)
        except ValueError:
            raise ToolExecutionError(
                "INVALID_SCHEDULE",
                f'Invalid timestamp: "{schedule_value}". Use local time format like "2026-02-01T15:30:00".',
                data={"schedule_type": schedule_type, "schedule_value": schedule_value},
            ) from None
    else:
        raise ToolExecutionError("INVALID_SCHEDULE", f"Unknown schedule_type {schedule_type!r}.")


def _require_main(settings: Settings, action: str) -> None:
    if not settings.agent.is_main:
        raise ToolExecutionError(
            "MAIN_GROUP_ONLY",
            f"Only the main group can {action}.",
            recoverable=False,
            data={"group_folder": settings.agent.group_folder},
        )


def build_mcp_server() -> FastMCP:
    """Create and configure the FastMCP server instance."""
    settings: Settings = get_settings()
    bridge = IpcBridge.from_settings(settings)
    layout: IpcLayout = bridge.layout
    agent = settings.agent

    instructions = (
        "Tools for talking to the controller that runs outside this container. "
        "Messages and task changes are queued for the controller; yak tools wait briefly for its answer."
    )
    mcp = FastMCP(name="ipc-bridge", instructions=instructions)

    async def _ctx_info_safe(ctx: Context, message: str) -> None:
        try:
            await ctx.info(message)
        except Exception:
            # Context may not be available outside of a request; ignore logging
            return

    @mcp.tool(name="health_check", description="Return the bridge configuration and IPC tree location.")
    @_instrument_tool("health_check")
    async def health_check() -> dict[str, Any]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "ipc_root": str(layout.root),
            "correlation_mode": bridge.correlation_mode,
            "response_timeout_ms": bridge.waiter.timeout_ms,
            "poll_interval_ms": bridge.waiter.poll_interval_ms,
            "group_folder": agent.group_folder,
            "is_main": agent.is_main,
        }

    @mcp.tool(name="send_message")
    @_instrument_tool("send_message")
    async def send_message(ctx: Context, text: str, sender: Optional[str] = None) -> dict[str, Any]:
        """
        Send a message to the user or group immediately while you're still running.

        Use this for progress updates or to send several messages. When running
        as a scheduled task your final output is NOT sent to the user, so use
        this tool to communicate.

        Parameters
        ----------
        text : str
            The message text to send.
        sender : Optional[str]
            Your role/identity name (e.g. "Researcher"); shown as a dedicated bot where supported.
        """
        payload: dict[str, Any] = {
            "type": "message",
            "chatJid": agent.chat_jid,
            "text": text,
            "groupFolder": agent.group_folder,
        }
        if sender:
            payload["sender"] = sender
        filename = await bridge.post(MESSAGES_CATEGORY, payload)
        await _ctx_info_safe(ctx, f"Queued message {filename}")
        return {"status": "sent", "file": filename}

    @mcp.tool(name="schedule_task")
    @_instrument_tool("schedule_task")
    async def schedule_task(
        prompt: str,
        schedule_type: Literal["cron", "interval", "once"],
        schedule_value: str,
        context_mode: Literal["group", "isolated"] = "group",
        target_group_jid: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Schedule a recurring or one-time task that runs as a full agent.

        Context modes
        -------------
        - "group": runs in the group's conversation context with chat history.
        - "isolated": fresh session; include all needed context in the prompt.

        Schedule values (all LOCAL time)
        --------------------------------
        - cron: standard expression, e.g. "0 9 * * *" for daily at 9am.
        - interval: milliseconds between runs, e.g. "300000" for 5 minutes.
        - once: local timestamp WITHOUT "Z"/offset, e.g. "2026-02-01T15:30:00".

        Only the main group may schedule for another group via `target_group_jid`.
        """
        _validate_schedule(schedule_type, schedule_value)
        target_jid = target_group_jid if agent.is_main and target_group_jid else agent.chat_jid
        filename = await bridge.post(
            TASKS_CATEGORY,
            {
                "type": "schedule_task",
                "prompt": prompt,
                "schedule_type": schedule_type,
                "schedule_value": schedule_value,
                "context_mode": context_mode,
                "targetJid": target_jid,
                "createdBy": agent.group_folder,
            },
        )
        return {
            "status": "scheduled",
            "file": filename,
            "schedule_type": schedule_type,
            "schedule_value": schedule_value,
            "target_jid": target_jid,
        }

    @mcp.tool(name="list_tasks")
    @_instrument_tool("list_tasks")
    async def list_tasks() -> dict[str, Any]:
        """List scheduled tasks. The main group sees all tasks; other groups see only their own."""
        rows = [ScheduledTask.from_dict(item) for item in read_tasks_snapshot(layout)]
        if not agent.is_main:
            rows = [row for row in rows if row.group_folder == agent.group_folder]
        return {
            "count": len(rows),
            "tasks": [row.to_dict() for row in rows],
            "summary": [row.summary() for row in rows],
        }

    async def _post_task_change(change: str, task_id: str) -> dict[str, Any]:
        if not task_id.strip():
            raise ValueError("task_id must not be empty")
        filename = await bridge.post(
            TASKS_CATEGORY,
            {
                "type": change,
                "taskId": task_id,
                "groupFolder": agent.group_folder,
                "isMain": agent.is_main,
            },
        )
        return {"status": "requested", "action": change, "task_id": task_id, "file": filename}

    @mcp.tool(name="pause_task", description="Pause a scheduled task. It will not run until resumed.")
    @_instrument_tool("pause_task")
    async def pause_task(task_id: str) -> dict[str, Any]:
        return await _post_task_change("pause_task", task_id)

    @mcp.tool(name="resume_task", description="Resume a paused task.")
    @_instrument_tool("resume_task")
    async def resume_task(task_id: str) -> dict[str, Any]:
        return await _post_task_change("resume_task", task_id)

    @mcp.tool(name="cancel_task", description="Cancel and delete a scheduled task.")
    @_instrument_tool("cancel_task")
    async def cancel_task(task_id: str) -> dict[str, Any]:
        return await _post_task_change("cancel_task", task_id)

    @mcp.tool(name="register_group")
    @_instrument_tool("register_group")
    async def register_group(jid: str, name: str, folder: str, trigger: str) -> dict[str, Any]:
        """
        Register a new chat group so the agent responds there. Main group only.

        `folder` must be lowercase words joined by hyphens (e.g. "family-chat").
        """
        _require_main(settings, "register new groups")
        if not validate_group_folder(folder):
            raise ValueError(f"folder {folder!r} must be lowercase letters/digits separated by single hyphens")
        filename = await bridge.post(
            TASKS_CATEGORY,
            {"type": "register_group", "jid": jid, "name": name, "folder": folder, "trigger": trigger},
        )
        return {"status": "registered", "name": name, "folder": folder, "file": filename}

    @mcp.tool(name="create_yak")
    @_instrument_tool("create_yak")
    async def create_yak(
        title: str,
        yak_type: Literal["bug", "feature", "task"],
        priority: int,
        description: str,
        parent: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Create a yak (tracked improvement or issue). Main group only.

        Priority: 1=critical, 2=important, 3=nice-to-have. Pass `parent` (a yak id)
        to create a child yak. Waits for the controller and returns the new yak id.
        """
        _require_main(settings, "create yaks")
        if priority not in (1, 2, 3):
            raise ValueError(f"priority must be 1, 2 or 3, got {priority}")
        payload: dict[str, Any] = {
            "type": "create_yak",
            "title": title,
            "yak_type": yak_type,
            "priority": priority,
            "description": description,
        }
        if parent:
            payload["parent"] = parent
        response = await bridge.request(TASKS_CATEGORY, payload, YAK_RESPONSE_PREFIX)
        envelope = ResponseEnvelope.from_payload(response)
        if not envelope.success:
            raise ToolExecutionError(
                "CONTROLLER_ERROR",
                f"Failed to create yak: {envelope.error}",
                recoverable=False,
                data={"title": title},
            )
        return {
            "yak_id": envelope.fields.get("yak_id"),
            "title": envelope.fields.get("title", title),
        }

    @mcp.tool(name="list_yaks")
    @_instrument_tool("list_yaks")
    async def list_yaks(status: Literal["hairy", "shearing", "shorn", "all"] = "hairy") -> dict[str, Any]:
        """
        List yaks filtered by status.

        hairy=not started, shearing=in progress, shorn=completed, all=everything.
        """
        response = await bridge.request(TASKS_CATEGORY, {"type": "list_yaks", "status": status}, LIST_YAKS_RESPONSE_PREFIX)
        envelope = ResponseEnvelope.from_payload(response)
        if not envelope.success:
            raise ToolExecutionError("CONTROLLER_ERROR", f"Failed to list yaks: {envelope.error}", recoverable=False)
        raw = envelope.result
        if isinstance(raw, dict):
            # Envelope form carries the list under "yaks"
            raw = raw.get("yaks", [])
        if not isinstance(raw, list):
            raise ToolExecutionError(
                "CONTROLLER_ERROR",
                f"Unexpected list_yaks response of type {type(raw).__name__}",
                recoverable=False,
            )
        yaks = [Yak.from_dict(item) for item in raw if isinstance(item, dict)]
        return {"status": status, "count": len(yaks), "yaks": [yak.to_dict() for yak in yaks]}

    return mcp
