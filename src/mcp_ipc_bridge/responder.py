"""Reference controller-side responder.

The real controller lives outside this package; this module implements the
contract it must uphold so the bridge can be exercised end to end and so a
Python controller can embed it:

- drain request directories in filename order, ignoring temp files;
- dispatch each request by ``type`` to a registered handler;
- when the handler is registered with a reply prefix, write its result to
  ``<prefix>_<nowMs>.json`` in the response directory with the atomic writer
  (the request's ``replyTo`` overrides the prefix);
- remove the request file once its handler has run, even if the reply
  cannot be written; a request with an unusable ``replyTo`` is quarantined
  before its handler runs.

Only one responder may drain a tree at a time; a ``SoftFileLock`` on
``.controller.lock`` enforces that across processes.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence

import structlog
from filelock import SoftFileLock, Timeout

from .config import Settings
from .correlation import response_filename, validate_prefix
from .storage import IpcLayout, list_request_files, write_json_atomic
from .utils import now_ms

Handler = Callable[[dict[str, Any]], Awaitable[Any]]

_log = structlog.get_logger("responder")


class ControllerBusyError(TimeoutError):
    def __init__(self, lock_path: Path) -> None:
        super().__init__(f"Another controller holds {lock_path}")
        self.lock_path = lock_path


@dataclass(slots=True)
class _Route:
    handler: Handler
    reply_prefix: Optional[str]


class Responder:
    """Drains request directories and answers through the response directory."""

    def __init__(
        self,
        layout: IpcLayout,
        *,
        categories: Sequence[str] = ("messages", "tasks"),
        poll_interval_ms: int = 500,
        lock_timeout_seconds: float = 1.0,
    ) -> None:
        self.layout = layout
        self.categories = tuple(categories)
        self.poll_interval_ms = poll_interval_ms
        self.lock_timeout_seconds = lock_timeout_seconds
        self._routes: dict[str, _Route] = {}

    @classmethod
    def from_settings(cls, settings: Settings, *, categories: Sequence[str] = ("messages", "tasks")) -> Responder:
        return cls(
            IpcLayout.from_settings(settings),
            categories=categories,
            poll_interval_ms=settings.controller.poll_interval_ms,
            lock_timeout_seconds=settings.controller.lock_timeout_seconds,
        )

    def register(self, request_type: str, handler: Handler, *, reply_prefix: Optional[str] = None) -> None:
        if reply_prefix is not None:
            validate_prefix(reply_prefix)
        self._routes[request_type] = _Route(handler=handler, reply_prefix=reply_prefix)

    def route(self, request_type: str, *, reply_prefix: Optional[str] = None) -> Callable[[Handler], Handler]:
        """Decorator form of ``register``."""

        def decorator(func: Handler) -> Handler:
            self.register(request_type, func, reply_prefix=reply_prefix)
            return func

        return decorator

    async def respond(self, prefix: str, payload: Any) -> Path:
        """Write one response file named after ``prefix`` and the current time."""
        path = self.layout.responses_dir / response_filename(prefix, now_ms())
        return await write_json_atomic(path, payload)

    async def drain_once(self) -> int:
        """Process every pending request once; return how many were handled."""
        handled = 0
        for category in self.categories:
            directory = self.layout.request_dir(category)
            for path in await asyncio.to_thread(list_request_files, directory):
                if await self._process(path):
                    handled += 1
        return handled

    async def _process(self, path: Path) -> bool:
        try:
            raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return False
        except UnicodeDecodeError as exc:
            await self._quarantine(path, str(exc))
            return False
        try:
            request = json.loads(raw)
            if not isinstance(request, dict) or not isinstance(request.get("type"), str):
                raise ValueError("request must be an object with a string 'type'")
        except ValueError as exc:
            await self._quarantine(path, str(exc))
            return False

        request_type = request["type"]
        route = self._routes.get(request_type)
        if route is None:
            _log.warning("unknown_request_type", type=request_type, file=path.name)
            await asyncio.to_thread(path.unlink, missing_ok=True)
            return False

        prefix = route.reply_prefix
        reply_to = request.get("replyTo")
        if reply_to is not None and reply_to != "":
            try:
                if not isinstance(reply_to, str):
                    raise ValueError(f"replyTo must be a string, got {type(reply_to).__name__}")
                prefix = validate_prefix(reply_to)
            except ValueError as exc:
                await self._quarantine(path, str(exc))
                return False

        try:
            result = await route.handler(request)
            json.dumps(result)
        except Exception as exc:
            _log.warning("handler_failed", type=request_type, file=path.name, error=str(exc))
            result = {"success": False, "error": str(exc)}

        try:
            if prefix is not None:
                written = await self.respond(prefix, result)
                _log.info("response_written", type=request_type, file=written.name)
        except OSError as exc:
            _log.error("response_write_failed", type=request_type, file=path.name, error=str(exc))
        finally:
            # The handler already ran; leaving the request would repeat it
            await asyncio.to_thread(path.unlink, missing_ok=True)
        return True

    async def _quarantine(self, path: Path, reason: str) -> None:
        _log.error("request_unreadable", file=path.name, reason=reason)
        target_dir = self.layout.errors_dir
        await asyncio.to_thread(target_dir.mkdir, parents=True, exist_ok=True)
        target = target_dir / f"{path.parent.name}-{path.name}"
        with contextlib.suppress(FileNotFoundError):
            await asyncio.to_thread(os.replace, path, target)

    async def run(self, stop: asyncio.Event) -> None:
        """Drain repeatedly until ``stop`` is set, holding the controller lock throughout."""
        await asyncio.to_thread(self.layout.ensure)
        # Acquire and release run on different worker threads
        lock = SoftFileLock(str(self.layout.controller_lock_path), thread_local=False)
        try:
            await asyncio.to_thread(lock.acquire, self.lock_timeout_seconds)
        except Timeout:
            raise ControllerBusyError(self.layout.controller_lock_path) from None
        _log.info("controller_started", root=str(self.layout.root))
        try:
            interval = self.poll_interval_ms / 1000
            while not stop.is_set():
                await self.drain_once()
                try:
                    async with asyncio.timeout(interval):
                        await stop.wait()
                except TimeoutError:
                    continue
        finally:
            await asyncio.to_thread(lock.release)
            _log.info("controller_stopped", root=str(self.layout.root))
