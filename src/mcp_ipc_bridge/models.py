"""Typed views over the JSON documents exchanged through the IPC tree."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(slots=True)
class ResponseEnvelope:
    """Normalized controller answer.

    Controllers answer either with an envelope (``success`` plus result fields
    or ``error``) or with the raw result and no discriminator. Raw results are
    treated as successes and kept under ``result``.
    """

    success: bool
    error: Optional[str] = None
    fields: dict[str, Any] = field(default_factory=dict)
    result: Any = None

    @classmethod
    def from_payload(cls, payload: Any) -> ResponseEnvelope:
        if isinstance(payload, dict) and "success" in payload:
            success = bool(payload.get("success"))
            fields = {k: v for k, v in payload.items() if k not in {"success", "error"}}
            error = None
            if not success:
                error = str(payload.get("error") or "unknown controller error")
            return cls(success=success, error=error, fields=fields, result=payload)
        return cls(success=True, result=payload)


@dataclass(slots=True)
class ScheduledTask:
    """Row of the controller's ``current_tasks.json`` snapshot."""

    id: str
    prompt: str
    schedule_type: str
    schedule_value: str
    status: str
    group_folder: str = ""
    next_run: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduledTask:
        return cls(
            id=str(data.get("id", "")),
            prompt=str(data.get("prompt", "")),
            schedule_type=str(data.get("schedule_type", "")),
            schedule_value=str(data.get("schedule_value", "")),
            status=str(data.get("status", "")),
            group_folder=str(data.get("groupFolder", "")),
            next_run=data.get("next_run") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "schedule_type": self.schedule_type,
            "schedule_value": self.schedule_value,
            "status": self.status,
            "group_folder": self.group_folder,
            "next_run": self.next_run,
        }

    def summary(self, prompt_chars: int = 50) -> str:
        prompt = self.prompt if len(self.prompt) <= prompt_chars else self.prompt[:prompt_chars] + "..."
        return (
            f"[{self.id}] {prompt} ({self.schedule_type}: {self.schedule_value})"
            f" - {self.status}, next: {self.next_run or 'N/A'}"
        )


@dataclass(slots=True)
class Yak:
    id: str
    title: str
    type: str
    priority: int
    status: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Yak:
        try:
            priority = int(data.get("priority", 0))
        except (TypeError, ValueError):
            priority = 0
        return cls(
            id=str(data.get("id", "")),
            title=str(data.get("title", "")),
            type=str(data.get("type", "")),
            priority=priority,
            status=str(data.get("status", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "type": self.type, "priority": self.priority, "status": self.status}
