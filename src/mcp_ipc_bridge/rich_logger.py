"""Rich-based console logging for MCP tool calls and bridge operations.

Panels go to a stderr console so they never interleave with the stdio MCP
stream on stdout.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import structlog
from rich import box
from rich.console import Console, Group, RenderableType
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from .config import get_settings

# Global console instance for logging
console = Console(stderr=True, soft_wrap=True)
_logger = structlog.get_logger("rich_logger")


@dataclass
class ToolCallContext:
    """Context information for a tool call."""

    tool_name: str
    kwargs: dict[str, Any]
    group: Optional[str] = None
    start_time: float = field(default_factory=time.perf_counter)
    end_time: Optional[float] = None
    result: Any = None
    error: Optional[Exception] = None
    success: bool = True
    _created_at: datetime = field(default_factory=datetime.now)  # Capture at creation time

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds."""
        end = self.end_time if self.end_time else time.perf_counter()
        return (end - self.start_time) * 1000

    @property
    def timestamp(self) -> str:
        """Get formatted timestamp (captured at creation)."""
        return self._created_at.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


def _safe_json_format(data: Any, max_length: int = 2000) -> str:
    """Format data as JSON with truncation."""
    json_str = json.dumps(data, indent=2, default=str, ensure_ascii=False)
    if len(json_str) > max_length:
        json_str = json_str[:max_length] + "\n... (truncated)"
    return json_str


def _json_panel(title: str, data: Any, *, border_style: str, theme: str = "dracula") -> Panel:
    syntax = Syntax(
        _safe_json_format(data),
        "json",
        theme=theme,
        line_numbers=False,
        word_wrap=True,
        background_color="default",
    )
    return Panel(syntax, title=title, border_style=border_style, box=box.ROUNDED, padding=(0, 1))


def _duration_style(duration_ms: float) -> str:
    # Bridge calls routinely wait on the controller, so thresholds sit above the poll interval
    if duration_ms < 100:
        return "bold bright_green"
    if duration_ms < 1000:
        return "bold yellow"
    return "bold red"


def _create_info_table(ctx: ToolCallContext) -> Table:
    """Create a table with tool call metadata."""
    table = Table(show_header=False, box=box.SIMPLE, padding=(0, 1), show_edge=False)
    table.add_column("Key", style="bold bright_yellow", width=12)
    table.add_column("Value", style="white", overflow="fold")

    table.add_row("Tool", f"[bold bright_green]{ctx.tool_name}[/bold bright_green]")
    table.add_row("Timestamp", f"[dim]{ctx.timestamp}[/dim]")
    if ctx.group:
        table.add_row("Group", f"[bright_cyan]{escape(ctx.group)}[/bright_cyan]")

    if ctx.end_time:
        style = _duration_style(ctx.duration_ms)
        table.add_row("Duration", f"[{style}]{ctx.duration_ms:.2f}ms[/{style}]")
        if ctx.success:
            table.add_row("Status", "[bold bright_green]SUCCESS[/bold bright_green]")
        else:
            table.add_row("Status", "[bold bright_red]FAILED[/bold bright_red]")
    return table


def log_tool_call_start(ctx: ToolCallContext) -> None:
    """Log the start of a tool call with its parameters."""
    components: list[RenderableType] = [_create_info_table(ctx)]
    params = {k: v for k, v in ctx.kwargs.items() if k not in {"ctx", "context"}}
    if params:
        components.append(_json_panel("Input Parameters", params, border_style="bright_blue"))
    console.print(
        Panel(
            Group(*components),
            title="[bold bright_white on bright_blue]MCP TOOL CALL STARTED[/bold bright_white on bright_blue]",
            border_style="bright_blue",
            box=box.DOUBLE,
            padding=(0, 1),
        )
    )


def log_tool_call_end(ctx: ToolCallContext) -> None:
    """Log the end of a tool call with its result or error."""
    if not ctx.end_time:
        ctx.end_time = time.perf_counter()

    components: list[RenderableType] = [
        Rule(style="bright_green" if ctx.success else "bright_red", characters="═"),
        _create_info_table(ctx),
    ]
    if ctx.error is not None:
        error_info: dict[str, Any] = {
            "error_type": type(ctx.error).__name__,
            "error_message": str(ctx.error),
        }
        if hasattr(ctx.error, "error_type"):
            error_info["error_code"] = ctx.error.error_type
        if hasattr(ctx.error, "data"):
            error_info["error_data"] = ctx.error.data
        components.append(_json_panel("Error Details", error_info, border_style="bright_red", theme="monokai"))
        title = "[bold bright_white on bright_red]MCP TOOL CALL FAILED[/bold bright_white on bright_red]"
        border_style = "bright_red"
    else:
        components.append(_json_panel("Result", ctx.result, border_style="bright_green"))
        title = "[bold bright_white on bright_green]MCP TOOL CALL COMPLETED[/bold bright_white on bright_green]"
        border_style = "bright_green"

    console.print(Panel(Group(*components), title=title, border_style=border_style, box=box.DOUBLE, padding=(0, 1)))


def log_warning(message: str, **kwargs: Any) -> None:
    """Log a warning message with Rich formatting, or through structlog when Rich output is disabled."""
    if not get_settings().log_rich_enabled:
        _logger.warning(message, **kwargs)
        return
    console.print(Text(message, style="bold bright_yellow"))
    if kwargs:
        console.print(_json_panel("Warning Details", kwargs, border_style="bright_yellow", theme="monokai"))


def log_error(message: str, error: Optional[Exception] = None, **kwargs: Any) -> None:
    """Log an error message with Rich formatting, or through structlog when Rich output is disabled."""
    error_data = kwargs.copy()
    if error:
        error_data["error_type"] = type(error).__name__
        error_data["error_message"] = str(error)
    if not get_settings().log_rich_enabled:
        _logger.error(message, **error_data)
        return
    console.print(Text(message, style="bold bright_red"))
    if error_data:
        console.print(_json_panel("Error Details", error_data, border_style="bright_red", theme="monokai"))


def create_startup_panel(config: dict[str, Any]) -> Panel:
    """Create a startup panel showing the bridge configuration."""
    tree = Tree("[bold bright_white]IPC Bridge[/bold bright_white]")
    for section, values in config.items():
        section_branch = tree.add(f"[bold bright_cyan]{section}[/bold bright_cyan]")
        if isinstance(values, dict):
            for key, value in values.items():
                section_branch.add(f"[bright_yellow]{key}[/bright_yellow]: [white]{escape(str(value))}[/white]")
        else:
            section_branch.add(f"[white]{escape(str(values))}[/white]")
    return Panel(
        tree,
        title="[bold bright_white on bright_blue]Bridge Configuration[/bold bright_white on bright_blue]",
        border_style="bright_blue",
        box=box.DOUBLE,
        padding=(1, 2),
    )


def create_directory_table(stats: dict[str, dict[str, int]], root: str) -> Table:
    """Table of pending files per IPC directory."""
    table = Table(
        title=f"[bold bright_cyan]IPC tree: {escape(root)}[/bold bright_cyan]",
        box=box.ROUNDED,
        border_style="bright_cyan",
        header_style="bold bright_white on bright_blue",
    )
    table.add_column("Directory", style="bold bright_yellow")
    table.add_column("Exists", justify="center")
    table.add_column("Pending", justify="right", style="bright_green")
    table.add_column("Temp", justify="right", style="bright_magenta")
    for name, counts in stats.items():
        exists = "[green]yes[/green]" if counts.get("exists") else "[dim]no[/dim]"
        table.add_row(name, exists, str(counts.get("pending", 0)), str(counts.get("temp", 0)))
    return table
