"""Filesystem helpers for the IPC directory tree.

Layout (all paths relative to the configured IPC root):

    messages/            outbound chat messages (request category)
    tasks/               task/action requests (request category)
    responses/           controller answers, ``<prefix>_<epochMs>.json``
    errors/              request files the controller could not parse
    current_tasks.json   task snapshot written by the controller
    .controller.lock     held by the running controller

Key Design Decisions:
1. Every file is written to ``<final>.tmp`` in the target directory and then
   renamed with ``os.replace``, so readers never observe a partial file.
2. Directories are created on demand by whichever side touches them first.
3. Blocking filesystem calls run in worker threads so poll loops never stall
   the event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import Settings
from .correlation import embedded_timestamp
from .utils import iso_now, now_ms, random_token, validate_category

_logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"
MESSAGES_CATEGORY = "messages"
TASKS_CATEGORY = "tasks"


@dataclass(slots=True, frozen=True)
class IpcLayout:
    """Resolved paths of the shared IPC tree."""

    root: Path

    @classmethod
    def from_settings(cls, settings: Settings) -> IpcLayout:
        return cls(root=Path(settings.ipc.root).expanduser())

    @property
    def messages_dir(self) -> Path:
        return self.root / MESSAGES_CATEGORY

    @property
    def tasks_dir(self) -> Path:
        return self.root / TASKS_CATEGORY

    @property
    def responses_dir(self) -> Path:
        return self.root / "responses"

    @property
    def errors_dir(self) -> Path:
        return self.root / "errors"

    @property
    def current_tasks_path(self) -> Path:
        return self.root / "current_tasks.json"

    @property
    def controller_lock_path(self) -> Path:
        return self.root / ".controller.lock"

    def request_dir(self, category: str) -> Path:
        if not validate_category(category):
            raise ValueError(f"Invalid request category {category!r}: use lowercase letters, digits, '_' or '-'.")
        return self.root / category

    def ensure(self) -> None:
        for directory in (self.messages_dir, self.tasks_dir, self.responses_dir, self.errors_dir):
            directory.mkdir(parents=True, exist_ok=True)


async def _to_thread(func: Any, /, *args: Any, **kwargs: Any) -> Any:
    return await asyncio.to_thread(func, *args, **kwargs)


def _write_json_atomic_sync(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # Serialize before touching the filesystem so unserializable payloads leave nothing behind
    content = json.dumps(payload, indent=2)
    temp_path = path.with_name(path.name + TEMP_SUFFIX)
    try:
        temp_path.write_text(content, encoding="utf-8")
        os.replace(temp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def request_filename(created_ms: int | None = None) -> str:
    """``<epochMs>-<random6>.json``: unique with very high probability."""
    stamp = now_ms() if created_ms is None else created_ms
    return f"{stamp}-{random_token()}.json"


async def write_json_atomic(path: Path, payload: Any) -> Path:
    """Write ``payload`` as JSON to ``path`` via a same-directory temp file and rename."""
    await _to_thread(_write_json_atomic_sync, path, payload)
    return path


async def write_request(directory: Path, payload: dict[str, Any]) -> str:
    """Persist a request into ``directory`` and return the final filename.

    The writer stamps ``timestamp`` (ISO-8601) for observability unless the
    caller already set one; it plays no part in response correlation.
    Directory-creation, serialization and write failures propagate.
    """
    if not isinstance(payload.get("type"), str) or not payload["type"]:
        raise ValueError("Request payload requires a non-empty string 'type'.")
    document = dict(payload)
    document.setdefault("timestamp", iso_now())
    filename = request_filename()
    await write_json_atomic(directory / filename, document)
    _logger.debug("ipc.request_written", extra={"directory": str(directory), "file": filename, "type": document["type"]})
    return filename


def list_request_files(directory: Path) -> list[Path]:
    """Pending request files in filename (creation) order, excluding temp files."""
    if not directory.is_dir():
        return []
    return sorted(
        (entry for entry in directory.iterdir() if entry.is_file() and entry.suffix == ".json"),
        key=lambda entry: entry.name,
    )


def sweep_temp_files(directory: Path, max_age_seconds: float, *, now: float | None = None) -> list[str]:
    """Remove ``*.tmp`` leftovers of crashed writers older than ``max_age_seconds``.

    Younger temp files may belong to a write in progress and are kept.
    """
    if not directory.is_dir():
        return []
    current = time.time() if now is None else now
    removed: list[str] = []
    for entry in directory.iterdir():
        if not entry.name.endswith(TEMP_SUFFIX) or not entry.is_file():
            continue
        try:
            age = current - entry.stat().st_mtime
        except FileNotFoundError:
            continue
        if age < max_age_seconds:
            continue
        with contextlib.suppress(FileNotFoundError):
            entry.unlink()
            removed.append(entry.name)
    return removed


def sweep_stale_responses(responses_dir: Path, max_age_ms: int, *, now: int | None = None) -> list[str]:
    """Remove response files whose embedded timestamp is older than ``max_age_ms``.

    These are answers nobody consumed, typically left behind by a waiter that
    gave up. Removing them keeps a later same-category waiter from claiming
    them.
    """
    if not responses_dir.is_dir():
        return []
    current = now_ms() if now is None else now
    removed: list[str] = []
    for entry in responses_dir.iterdir():
        created = embedded_timestamp(entry.name)
        if created is None or current - created < max_age_ms:
            continue
        with contextlib.suppress(FileNotFoundError):
            entry.unlink()
            removed.append(entry.name)
    return removed


def directory_stats(layout: IpcLayout) -> dict[str, dict[str, int]]:
    """Count pending JSON and temp files per directory of the tree."""
    stats: dict[str, dict[str, int]] = {}
    for name, directory in (
        ("messages", layout.messages_dir),
        ("tasks", layout.tasks_dir),
        ("responses", layout.responses_dir),
        ("errors", layout.errors_dir),
    ):
        pending = 0
        temp = 0
        if directory.is_dir():
            for entry in directory.iterdir():
                if entry.name.endswith(TEMP_SUFFIX):
                    temp += 1
                elif entry.suffix == ".json":
                    pending += 1
        stats[name] = {"pending": pending, "temp": temp, "exists": int(directory.is_dir())}
    return stats


class TasksSnapshotError(Exception):
    """``current_tasks.json`` exists but cannot be read as a task list."""


def read_tasks_snapshot(layout: IpcLayout) -> list[dict[str, Any]]:
    """Read the controller-maintained task list; a missing snapshot means no tasks."""
    path = layout.current_tasks_path
    if not path.exists():
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise TasksSnapshotError(f"Error reading tasks: {exc}") from exc
    if not isinstance(data, list):
        raise TasksSnapshotError(f"Error reading tasks: {path.name} must contain a JSON array, found {type(data).__name__}.")
    return [item for item in data if isinstance(item, dict)]
