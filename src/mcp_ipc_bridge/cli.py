"""Command-line interface surface for the IPC bridge."""

from __future__ import annotations

import asyncio
import json
import os
import sys
from typing import Annotated, Any, Optional

import structlog
import typer
from rich.console import Console

from . import rich_logger
from .app import build_mcp_server
from .config import get_settings
from .correlation import ResponsePattern, response_filename
from .logging_config import configure_logging
from .storage import (
    IpcLayout,
    directory_stats,
    sweep_stale_responses,
    sweep_temp_files,
    write_json_atomic,
    write_request,
)
from .utils import now_ms
from .waiter import BridgeError, ResponseWaiter

console = Console()
_log = structlog.get_logger("cli")


def _run_async(coro: Any) -> Any:
    """Run an async coroutine to completion from synchronous CLI code."""
    return asyncio.run(coro)


def _parse_payload(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"Payload is not valid JSON: {exc}") from exc


app = typer.Typer(help="Developer utilities for the IPC bridge.", no_args_is_help=True)


@app.command("serve-stdio")
def serve_stdio() -> None:
    """Run the MCP server over stdio transport.

    The agent runner spawns this process and speaks MCP over stdin/stdout,
    so all logging is redirected to stderr and tool panels are disabled.
    """
    from .config import clear_settings_cache

    os.environ["TOOLS_LOG_ENABLED"] = "false"
    os.environ["LOG_RICH_ENABLED"] = "false"
    clear_settings_cache()
    configure_logging(get_settings())

    # stdout is reserved for the MCP protocol
    print("IPC Bridge - Starting stdio transport...", file=sys.stderr)

    server = build_mcp_server()
    server.run(transport="stdio")


@app.command("status")
def status() -> None:
    """Show the resolved configuration and pending files per IPC directory."""
    settings = get_settings()
    layout = IpcLayout.from_settings(settings)
    config = {
        "ipc": {
            "root": str(layout.root),
            "correlation_mode": settings.ipc.correlation_mode,
            "response_timeout_ms": settings.ipc.response_timeout_ms,
            "poll_interval_ms": settings.ipc.poll_interval_ms,
            "clock_skew_ms": settings.ipc.clock_skew_ms,
        },
        "agent": {
            "chat_jid": settings.agent.chat_jid or "(unset)",
            "group_folder": settings.agent.group_folder or "(unset)",
            "is_main": settings.agent.is_main,
        },
        "controller": {
            "poll_interval_ms": settings.controller.poll_interval_ms,
            "lock_timeout_seconds": settings.controller.lock_timeout_seconds,
            "lock_held": layout.controller_lock_path.exists(),
        },
        "environment": settings.environment,
    }
    console.print(rich_logger.create_startup_panel(config))
    if not layout.root.is_dir():
        rich_logger.log_warning("IPC root does not exist yet; the first writer will create it", root=str(layout.root))
    console.print(rich_logger.create_directory_table(directory_stats(layout), str(layout.root)))


@app.command("sweep")
def sweep(
    temp_max_age: Annotated[
        Optional[int], typer.Option("--temp-max-age", help="Seconds before an orphaned .tmp file is removed")
    ] = None,
    response_max_age: Annotated[
        Optional[int], typer.Option("--response-max-age", help="Seconds before an unconsumed response is removed")
    ] = None,
) -> None:
    """Remove orphaned temp files and responses nobody consumed."""
    settings = get_settings()
    layout = IpcLayout.from_settings(settings)
    temp_age = temp_max_age if temp_max_age is not None else settings.ipc.temp_max_age_seconds
    response_age = response_max_age if response_max_age is not None else settings.ipc.response_max_age_seconds
    if temp_age < 0 or response_age < 0:
        raise typer.BadParameter("Ages must not be negative.")

    removed_temp: list[str] = []
    for directory in (layout.messages_dir, layout.tasks_dir, layout.responses_dir):
        removed_temp.extend(sweep_temp_files(directory, temp_age))
    removed_responses = sweep_stale_responses(layout.responses_dir, response_age * 1000)
    _log.info("sweep_completed", root=str(layout.root), temp=len(removed_temp), responses=len(removed_responses))

    console.print(
        f"[green]Removed {len(removed_temp)} temp file(s) and {len(removed_responses)} stale response(s).[/]"
    )
    for name in [*removed_temp, *removed_responses]:
        console.print(f"  [dim]{name}[/]")


@app.command("send")
def send(
    category: Annotated[str, typer.Argument(help="Request directory under the IPC root, e.g. messages or tasks")],
    payload: Annotated[str, typer.Argument(help="JSON object with at least a 'type' field")],
) -> None:
    """Write a request file into CATEGORY atomically."""
    document = _parse_payload(payload)
    if not isinstance(document, dict):
        raise typer.BadParameter("Payload must be a JSON object.")
    layout = IpcLayout.from_settings(get_settings())
    try:
        directory = layout.request_dir(category)
        filename = _run_async(write_request(directory, document))
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    console.print(f"[green]Wrote {category}/{filename}[/]")


@app.command("respond")
def respond(
    prefix: Annotated[str, typer.Argument(help="Response prefix, e.g. yak or list_yaks")],
    payload: Annotated[str, typer.Argument(help="JSON document to answer with")],
) -> None:
    """Write a response file ``<prefix>_<nowMs>.json`` the way the controller does."""
    document = _parse_payload(payload)
    layout = IpcLayout.from_settings(get_settings())
    try:
        path = layout.responses_dir / response_filename(prefix, now_ms())
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    _run_async(write_json_atomic(path, document))
    console.print(f"[green]Wrote responses/{path.name}[/]")


@app.command("wait")
def wait(
    prefix: Annotated[str, typer.Argument(help="Response prefix to wait for")],
    issued_at: Annotated[
        Optional[int], typer.Option("--issued-at", help="Issue time in epoch ms (default: now)")
    ] = None,
    timeout_ms: Annotated[Optional[int], typer.Option("--timeout-ms", help="Override the response timeout")] = None,
) -> None:
    """Wait for one correlated response and print it as JSON."""
    settings = get_settings()
    layout = IpcLayout.from_settings(settings)
    try:
        pattern = ResponsePattern.for_prefix(prefix)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    waiter = ResponseWaiter.from_settings(settings, layout.responses_dir)
    issued_at_ms = issued_at if issued_at is not None else now_ms()
    try:
        result = _run_async(waiter.wait(pattern, issued_at_ms, timeout_ms=timeout_ms))
    except BridgeError as exc:
        rich_logger.log_error("Wait failed", error=exc, prefix=prefix)
        raise typer.Exit(code=1) from exc
    console.print_json(json.dumps(result))


if __name__ == "__main__":
    app()
