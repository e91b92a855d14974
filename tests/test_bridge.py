from __future__ import annotations

import asyncio
import contextlib
import json

import pytest

from mcp_ipc_bridge.bridge import IpcBridge
from mcp_ipc_bridge.config import get_settings
from mcp_ipc_bridge.responder import Responder
from mcp_ipc_bridge.storage import IpcLayout, list_request_files
from mcp_ipc_bridge.waiter import ResponseTimeoutError, ResponseWaiter


def _bridge(root, *, mode: str = "window", timeout_ms: int = 2000) -> IpcBridge:
    layout = IpcLayout(root)
    waiter = ResponseWaiter(layout.responses_dir, timeout_ms=timeout_ms, poll_interval_ms=20)
    return IpcBridge(layout, waiter, correlation_mode=mode)


@contextlib.asynccontextmanager
async def running(responder: Responder):
    stop = asyncio.Event()
    task = asyncio.create_task(responder.run(stop))
    try:
        yield responder
    finally:
        stop.set()
        await asyncio.wait_for(task, timeout=5)


def _yak_responder(root) -> Responder:
    responder = Responder(IpcLayout(root), poll_interval_ms=20)

    @responder.route("create_yak", reply_prefix="yak")
    async def create(request):
        return {"success": True, "yak_id": "y-42", "title": request["title"]}

    return responder


@pytest.mark.asyncio
async def test_post_writes_request_with_request_id(tmp_path):
    bridge = _bridge(tmp_path)
    filename = await bridge.post("messages", {"type": "message", "text": "hello"})

    stored = json.loads((tmp_path / "messages" / filename).read_text(encoding="utf-8"))
    assert stored["type"] == "message"
    assert len(stored["requestId"]) == 16
    assert "replyTo" not in stored


@pytest.mark.asyncio
async def test_issue_in_window_mode_uses_category_prefix(tmp_path):
    bridge = _bridge(tmp_path)
    issued = await bridge.issue("tasks", {"type": "create_yak"}, "yak")

    stored = json.loads((tmp_path / "tasks" / issued.filename).read_text(encoding="utf-8"))
    assert issued.pattern.prefix == "yak"
    assert stored["requestId"] == issued.request_id
    assert "replyTo" not in stored
    assert issued.issued_at_ms <= int(issued.filename.split("-")[0])


@pytest.mark.asyncio
async def test_issue_in_request_id_mode_sets_reply_to(tmp_path):
    bridge = _bridge(tmp_path, mode="request_id")
    issued = await bridge.issue("tasks", {"type": "create_yak"}, "yak")

    stored = json.loads((tmp_path / "tasks" / issued.filename).read_text(encoding="utf-8"))
    assert stored["replyTo"] == f"yak.{issued.request_id}"
    assert issued.pattern.prefix == stored["replyTo"]


def test_unknown_correlation_mode_rejected(tmp_path):
    with pytest.raises(ValueError):
        _bridge(tmp_path, mode="fifo")


@pytest.mark.asyncio
async def test_invalid_category_rejected(tmp_path):
    with pytest.raises(ValueError):
        await _bridge(tmp_path).post("../outside", {"type": "message"})


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", ["window", "request_id"])
async def test_round_trip_through_responder(tmp_path, mode):
    bridge = _bridge(tmp_path, mode=mode)
    async with running(_yak_responder(tmp_path)):
        result = await bridge.request("tasks", {"type": "create_yak", "title": "Fix login"}, "yak")

    assert result == {"success": True, "yak_id": "y-42", "title": "Fix login"}
    assert list_request_files(tmp_path / "tasks") == []
    assert list((tmp_path / "responses").iterdir()) == []


@pytest.mark.asyncio
async def test_request_id_mode_ignores_other_requests_answers(tmp_path, write_response):
    bridge = _bridge(tmp_path, mode="request_id", timeout_ms=200)
    # A same-category answer meant for someone else
    write_response(tmp_path / "responses", "yak_99999999999999.json", {"success": True, "yak_id": "other"})

    with pytest.raises(ResponseTimeoutError):
        await bridge.request("tasks", {"type": "create_yak"}, "yak")

    assert (tmp_path / "responses" / "yak_99999999999999.json").exists()


@pytest.mark.asyncio
async def test_request_times_out_without_controller(tmp_path):
    bridge = _bridge(tmp_path, timeout_ms=150)
    with pytest.raises(ResponseTimeoutError):
        await bridge.request("tasks", {"type": "list_yaks", "status": "hairy"}, "list_yaks")
    # The request itself stays queued for a controller that comes up later
    assert len(list_request_files(tmp_path / "tasks")) == 1


def test_from_settings_uses_configuration(isolated_env, ipc_root, monkeypatch):
    monkeypatch.setenv("IPC_CORRELATION_MODE", "request_id")
    from mcp_ipc_bridge.config import clear_settings_cache

    clear_settings_cache()
    bridge = IpcBridge.from_settings(get_settings())

    assert bridge.layout.root == ipc_root
    assert bridge.correlation_mode == "request_id"
    assert bridge.waiter.responses_dir == ipc_root / "responses"
    assert bridge.waiter.poll_interval_ms == 20
