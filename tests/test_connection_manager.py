"""Tests for the single-active-channel connection manager."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from chatrelay.engine.config import RelayConfig
from chatrelay.engine.provider import ChatProvider
from chatrelay.web.connection import ConnectionManager

_SPAWN = "chatrelay.engine.process_supervisor.asyncio.create_subprocess_exec"


class _FakeWebSocket:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self.close_code = None

    async def send_json(self, data: dict) -> None:
        if self.closed:
            raise ConnectionResetError("closed")
        self.sent.append(data)

    async def close(self, *, code=None, message: bytes = b"") -> bool:
        self.closed = True
        self.close_code = code
        return True

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]


class _HungProcess:
    """A subprocess that produces nothing until terminated."""

    def __init__(self) -> None:
        self.pid = 99
        self._exited = asyncio.Event()
        self.terminated = False
        self.stdin = AsyncMock()
        self.stdin.write = lambda data: None
        self.stdin.close = lambda: None
        self.stdout = self
        self.stderr = self

    async def read(self, n: int = -1) -> bytes:
        await self._exited.wait()
        return b""

    async def wait(self) -> int:
        await self._exited.wait()
        return -15

    def terminate(self) -> None:
        self.terminated = True
        self._exited.set()


def _manager(root: Path) -> ConnectionManager:
    return ConnectionManager(ChatProvider(root, RelayConfig()))


@pytest.mark.asyncio
async def test_attach_sends_connected_first(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    ws = _FakeWebSocket()
    channel = await manager.attach(ws)
    await manager.drain()
    assert ws.types() == ["connected"]
    assert manager.connected
    await manager.detach(channel)
    assert not manager.connected


@pytest.mark.asyncio
async def test_attach_replays_resumed_session(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    session = manager.provider.session
    session.assign_session_id("sess-r")
    session.append("userInput", "earlier question")
    session.append("output", "earlier answer")
    manager.provider.conversations.save(session)

    fresh = _manager(tmp_path)
    ws = _FakeWebSocket()
    await fresh.attach(ws)
    await fresh.drain()

    assert ws.types() == ["connected", "sessionResumed", "userInput", "output", "updateTotals"]
    assert ws.sent[1]["data"]["sessionId"] == "sess-r"
    assert ws.sent[2]["data"] == "earlier question"


@pytest.mark.asyncio
async def test_new_channel_replaces_old_without_stopping_subprocess(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    first = _FakeWebSocket()
    await manager.attach(first)

    proc = _HungProcess()
    with patch(_SPAWN, new=AsyncMock(return_value=proc)):
        await manager.handle_message(json.dumps({"type": "sendMessage", "text": "work"}))
    await manager.drain()
    assert "setProcessing" in first.types()

    second = _FakeWebSocket()
    await manager.attach(second)
    assert first.closed
    assert manager.provider.supervisor.is_running
    assert not proc.terminated

    before = list(first.sent)
    await manager.handle_message('{"type": "getSettings"}')
    await manager.drain()
    assert first.sent == before
    assert second.types() == ["connected", "sessionResumed", "userInput", "updateTotals", "settings"]

    await manager.handle_message('{"type": "stopRequest"}')
    await manager.provider.supervisor.wait_idle()
    await manager.drain()
    assert proc.terminated
    assert second.types()[-2:] == ["setProcessing", "error"]
    await manager.close()


@pytest.mark.asyncio
async def test_malformed_input_reports_error_and_keeps_channel(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    ws = _FakeWebSocket()
    await manager.attach(ws)
    await manager.handle_message("{{not json")
    await manager.handle_message('{"type": "teleport"}')
    await manager.drain()
    assert ws.types() == ["connected", "error", "error"]
    assert "Unknown message type: teleport" in ws.sent[2]["data"]
    assert not ws.closed
    assert manager.provider.session.entries == []


@pytest.mark.asyncio
async def test_routes_conversation_and_workspace_commands(tmp_path: Path) -> None:
    (tmp_path / "notes.md").write_text("x", encoding="utf-8")
    manager = _manager(tmp_path)
    ws = _FakeWebSocket()
    await manager.attach(ws)

    await manager.handle_message('{"type": "getConversationList"}')
    await manager.handle_message('{"type": "deleteConversation", "sessionId": "ghost"}')
    await manager.handle_message('{"type": "getWorkspaceFiles", "searchTerm": "notes"}')
    await manager.handle_message('{"type": "getPermissions"}')
    await manager.handle_message('{"type": "newSession"}')
    await manager.drain()

    assert ws.types() == [
        "connected", "conversationList", "conversationDeleted",
        "workspaceFiles", "permissions", "sessionCleared",
    ]
    assert ws.sent[1]["data"] == []
    assert ws.sent[2]["data"] == {"sessionId": "ghost", "success": False}
    assert ws.sent[3]["data"] == [{"name": "notes.md", "path": "notes.md"}]


@pytest.mark.asyncio
async def test_events_without_channel_are_dropped(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.provider.get_settings()
    ws = _FakeWebSocket()
    await manager.attach(ws)
    await manager.drain()
    assert ws.types() == ["connected"]
