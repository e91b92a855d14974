"""Request/response facade over the mailbox writer and the response waiter."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from .config import Settings
from .correlation import ResponsePattern, reply_prefix, validate_prefix
from .storage import IpcLayout, write_request
from .utils import new_request_id, now_ms
from .waiter import ResponseWaiter

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class IssuedRequest:
    filename: str
    request_id: str
    issued_at_ms: int
    pattern: ResponsePattern


class IpcBridge:
    """Writes requests into the IPC tree and waits for correlated answers.

    ``correlation_mode="window"`` matches responses by category prefix and
    creation time. ``"request_id"`` asks the controller to answer under
    ``<prefix>.<requestId>`` so only the issuing waiter can match.
    """

    def __init__(self, layout: IpcLayout, waiter: ResponseWaiter, *, correlation_mode: str = "window") -> None:
        if correlation_mode not in {"window", "request_id"}:
            raise ValueError(f"Unknown correlation mode {correlation_mode!r}")
        self.layout = layout
        self.waiter = waiter
        self.correlation_mode = correlation_mode

    @classmethod
    def from_settings(cls, settings: Settings) -> IpcBridge:
        layout = IpcLayout.from_settings(settings)
        return cls(
            layout,
            ResponseWaiter.from_settings(settings, layout.responses_dir),
            correlation_mode=settings.ipc.correlation_mode,
        )

    async def post(self, category: str, payload: dict[str, Any]) -> str:
        """Fire-and-forget: write a request and return its filename."""
        directory = self.layout.request_dir(category)
        document = dict(payload)
        document.setdefault("requestId", new_request_id())
        return await write_request(directory, document)

    async def issue(self, category: str, payload: dict[str, Any], response_prefix: str) -> IssuedRequest:
        """Write a request that expects an answer under ``response_prefix``."""
        validate_prefix(response_prefix)
        directory = self.layout.request_dir(category)
        # Issue time is captured before the write so a fast controller cannot look stale
        issued_at = now_ms()
        request_id = new_request_id()
        document = dict(payload)
        document["requestId"] = request_id
        prefix = response_prefix
        if self.correlation_mode == "request_id":
            prefix = reply_prefix(response_prefix, request_id)
            document["replyTo"] = prefix
        filename = await write_request(directory, document)
        return IssuedRequest(
            filename=filename,
            request_id=request_id,
            issued_at_ms=issued_at,
            pattern=ResponsePattern.for_prefix(prefix),
        )

    async def request(
        self,
        category: str,
        payload: dict[str, Any],
        response_prefix: str,
        *,
        timeout_ms: Optional[int] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> Any:
        """Write a request and block until its answer arrives or the wait times out."""
        issued = await self.issue(category, payload, response_prefix)
        logger.debug(
            "ipc.request_issued",
            extra={"file": issued.filename, "request_id": issued.request_id, "prefix": issued.pattern.prefix},
        )
        return await self.waiter.wait(issued.pattern, issued.issued_at_ms, timeout_ms=timeout_ms, cancel=cancel)
