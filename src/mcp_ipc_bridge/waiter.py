"""Response poller with a bounded wait.

A waiter repeatedly lists the shared response directory, picks the first
file that matches its category pattern and was created after its request
(minus the clock-skew buffer), consumes it and returns the parsed payload.

Consumption is read, parse, then best-effort delete. The file is the only
record of delivery, so a waiter deletes what it returns; a failed delete is
ignored because the caller already has the answer. Two waiters with
overlapping patterns can both see one file before either deletes it; the
loser of the read race skips the vanished file.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import Settings
from .correlation import ResponsePattern, is_fresh

_logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 2000
DEFAULT_POLL_INTERVAL_MS = 100
DEFAULT_CLOCK_SKEW_MS = 100


class BridgeError(Exception):
    """Base class for failures surfaced by the response side of the bridge."""


class ResponseTimeoutError(BridgeError, TimeoutError):
    def __init__(self, prefix: str, timeout_ms: int) -> None:
        super().__init__(f"Response timeout - no response received within {timeout_ms / 1000:g} seconds")
        self.prefix = prefix
        self.timeout_ms = timeout_ms


class ResponseParseError(BridgeError, ValueError):
    def __init__(self, filename: str, detail: str) -> None:
        super().__init__(f"Response file {filename} is not valid JSON: {detail}")
        self.filename = filename


class WaitCancelledError(BridgeError):
    def __init__(self, prefix: str) -> None:
        super().__init__(f"Wait for '{prefix}' response was cancelled")
        self.prefix = prefix


@dataclass(slots=True)
class _Consumed:
    filename: str
    payload: Any


class ResponseWaiter:
    """Polls one response directory for correlated answers."""

    def __init__(
        self,
        responses_dir: Path,
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        clock_skew_ms: int = DEFAULT_CLOCK_SKEW_MS,
    ) -> None:
        if poll_interval_ms <= 0:
            raise ValueError("poll_interval_ms must be positive")
        if timeout_ms < 0:
            raise ValueError("timeout_ms must not be negative")
        self.responses_dir = Path(responses_dir)
        self.timeout_ms = int(timeout_ms)
        self.poll_interval_ms = int(poll_interval_ms)
        self.clock_skew_ms = max(int(clock_skew_ms), 0)

    @classmethod
    def from_settings(cls, settings: Settings, responses_dir: Path | None = None) -> ResponseWaiter:
        root = Path(settings.ipc.root).expanduser()
        return cls(
            responses_dir if responses_dir is not None else root / "responses",
            timeout_ms=settings.ipc.response_timeout_ms,
            poll_interval_ms=settings.ipc.poll_interval_ms,
            clock_skew_ms=settings.ipc.clock_skew_ms,
        )

    async def wait(
        self,
        pattern: ResponsePattern,
        issued_at_ms: int,
        *,
        timeout_ms: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Any:
        """Block until a fresh response matching ``pattern`` appears, then consume it.

        Raises ``ResponseTimeoutError`` once ``timeout_ms`` (measured from this
        call, not from the issue time) elapses without a match,
        ``ResponseParseError`` when the matched file is not valid JSON, and
        ``WaitCancelledError`` as soon as ``cancel`` is set.
        """
        budget_ms = self.timeout_ms if timeout_ms is None else int(timeout_ms)
        budget = budget_ms / 1000
        interval = self.poll_interval_ms / 1000
        started = time.monotonic()

        while time.monotonic() - started < budget:
            if cancel is not None and cancel.is_set():
                raise WaitCancelledError(pattern.prefix)
            consumed = await asyncio.to_thread(self._scan_and_consume, pattern, issued_at_ms)
            if consumed is not None:
                _logger.debug(
                    "ipc.response_consumed",
                    extra={
                        "file": consumed.filename,
                        "prefix": pattern.prefix,
                        "waited_ms": round((time.monotonic() - started) * 1000, 1),
                    },
                )
                return consumed.payload
            remaining = budget - (time.monotonic() - started)
            if remaining <= 0:
                break
            await self._pause(min(interval, remaining), pattern, cancel)

        _logger.info(
            "ipc.response_timeout",
            extra={"prefix": pattern.prefix, "timeout_ms": budget_ms, "issued_at_ms": issued_at_ms},
        )
        raise ResponseTimeoutError(pattern.prefix, budget_ms)

    async def _pause(self, seconds: float, pattern: ResponsePattern, cancel: asyncio.Event | None) -> None:
        if cancel is None:
            await asyncio.sleep(seconds)
            return
        try:
            async with asyncio.timeout(seconds):
                await cancel.wait()
        except TimeoutError:
            return
        raise WaitCancelledError(pattern.prefix)

    def _scan_and_consume(self, pattern: ResponsePattern, issued_at_ms: int) -> _Consumed | None:
        try:
            names = [entry.name for entry in self.responses_dir.iterdir()]
        except FileNotFoundError:
            # Controller has not created the directory yet
            return None
        for name in names:
            embedded = pattern.timestamp_of(name)
            if embedded is None or not is_fresh(embedded, issued_at_ms, self.clock_skew_ms):
                continue
            path = self.responses_dir / name
            if not path.is_file():
                # Directories or vanished entries are never responses
                continue
            try:
                raw = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                # Another waiter consumed it between listing and reading
                continue
            except UnicodeDecodeError as exc:
                raise ResponseParseError(name, str(exc)) from exc
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise ResponseParseError(name, str(exc)) from exc
            try:
                path.unlink()
            except OSError as exc:
                _logger.debug("ipc.response_cleanup_failed", extra={"file": name, "error": str(exc)})
            return _Consumed(filename=name, payload=payload)
        return None


async def wait_for_response(
    responses_dir: Path,
    pattern: ResponsePattern,
    issued_at_ms: int,
    *,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
    clock_skew_ms: int = DEFAULT_CLOCK_SKEW_MS,
    cancel: asyncio.Event | None = None,
) -> Any:
    """One-shot convenience wrapper around ``ResponseWaiter.wait``."""
    waiter = ResponseWaiter(
        responses_dir,
        timeout_ms=timeout_ms,
        poll_interval_ms=poll_interval_ms,
        clock_skew_ms=clock_skew_ms,
    )
    return await waiter.wait(pattern, issued_at_ms, cancel=cancel)
