from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from chatrelay.engine.errors import AssistantNotFoundError, ProcessBusyError
from chatrelay.engine.process_supervisor import (
    ENV_OVERRIDES,
    ProcessRun,
    ProcessSupervisor,
    build_message,
)

_SPAWN = "chatrelay.engine.process_supervisor.asyncio.create_subprocess_exec"


class _FakeStdin:
    def __init__(self) -> None:
        self.data = b""
        self.closed = False

    def write(self, data: bytes) -> None:
        self.data += data

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class _FakeStream:
    def __init__(self, chunks: list[bytes], until: asyncio.Event | None = None) -> None:
        self._chunks = list(chunks)
        self._until = until

    async def read(self, n: int = -1) -> bytes:
        if n == -1:
            if self._until is not None:
                await self._until.wait()
            data = b"".join(self._chunks)
            self._chunks.clear()
            return data
        if self._chunks:
            return self._chunks.pop(0)
        if self._until is not None:
            await self._until.wait()
        return b""


class _FakeProcess:
    def __init__(
        self,
        stdout: list[bytes] | None = None,
        stderr: bytes = b"",
        returncode: int = 0,
        hold: bool = False,
    ) -> None:
        self.pid = 4242
        self._exited = asyncio.Event()
        gate = self._exited if hold else None
        self.stdin = _FakeStdin()
        self.stdout = _FakeStream(stdout or [], gate)
        self.stderr = _FakeStream([stderr] if stderr else [], gate)
        self._returncode = returncode
        self.terminated = False
        if not hold:
            self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self._returncode

    def terminate(self) -> None:
        self.terminated = True
        self._returncode = -15
        self._exited.set()


def _supervisor(cwd: Path, mcp: Path | None = None) -> ProcessSupervisor:
    return ProcessSupervisor(
        ["claude"],
        cwd,
        mcp_config_path=mcp,
        permission_tool="mcp__perm__approval_prompt",
    )


class TestBuildArgs:
    def test_defaults_are_stream_json_only(self):
        sup = _supervisor(Path("."))
        assert sup.build_args() == ["-p", "--output-format", "stream-json", "--verbose"]

    def test_resume_wins_over_continue(self):
        args = _supervisor(Path(".")).build_args(resume_id="abc", continue_last=True)
        assert args[-2:] == ["--resume", "abc"]
        assert "--continue" not in args

    def test_continue_model_and_think(self):
        args = _supervisor(Path(".")).build_args(
            continue_last=True, model="opus", thinking_mode=True,
        )
        assert args[4:] == ["--continue", "--model", "opus", "--think"]

    def test_mcp_flags_only_when_config_exists(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            mcp = Path(tmpdir) / "mcp-servers.json"
            sup = _supervisor(Path(tmpdir), mcp)
            assert "--mcp-config" not in sup.build_args()

            mcp.write_text("{}", encoding="utf-8")
            args = sup.build_args()
            assert args[args.index("--mcp-config") + 1] == str(mcp)
            assert args[args.index("--allowedTools") + 1] == "mcp__perm__approval_prompt"
            assert args[args.index("--permission-prompt-tool") + 1] == "mcp__perm__approval_prompt"


def test_build_message_plan_prefix() -> None:
    assert build_message("do it") == "do it"
    assert build_message("do it", plan_mode=True) == "plan\n\ndo it"


@pytest.mark.asyncio
async def test_spawn_feeds_stdin_streams_stdout_and_reports_exit() -> None:
    proc = _FakeProcess(stdout=[b"caf\xc3", b"\xa9\n"], returncode=0)
    chunks: list[str] = []
    exits: list[ProcessRun] = []
    with tempfile.TemporaryDirectory() as tmpdir:
        sup = _supervisor(Path(tmpdir))
        with patch(_SPAWN, new=AsyncMock(return_value=proc)) as spawn:
            await sup.spawn(["-p"], "hello", on_stdout=chunks.append, on_exit=exits.append)
            await sup.wait_idle()

        cmd = spawn.call_args.args
        assert cmd == ("claude", "-p")
        kwargs = spawn.call_args.kwargs
        assert kwargs["cwd"] == tmpdir
        for key, value in ENV_OVERRIDES.items():
            assert kwargs["env"][key] == value

    assert proc.stdin.data == b"hello\n"
    assert proc.stdin.closed
    assert "".join(chunks) == "café\n"
    assert len(exits) == 1
    assert exits[0].returncode == 0
    assert not sup.is_running


@pytest.mark.asyncio
async def test_second_spawn_while_running_is_rejected() -> None:
    proc = _FakeProcess(hold=True)
    with tempfile.TemporaryDirectory() as tmpdir:
        sup = _supervisor(Path(tmpdir))
        with patch(_SPAWN, new=AsyncMock(return_value=proc)) as spawn:
            await sup.spawn([], "one", on_stdout=lambda _: None, on_exit=lambda _: None)
            with pytest.raises(ProcessBusyError):
                await sup.spawn([], "two", on_stdout=lambda _: None, on_exit=lambda _: None)
            assert spawn.await_count == 1
            sup.stop()
            await sup.wait_idle()


@pytest.mark.asyncio
async def test_stop_terminates_and_exit_still_fires() -> None:
    proc = _FakeProcess(hold=True)
    exits: list[ProcessRun] = []
    with tempfile.TemporaryDirectory() as tmpdir:
        sup = _supervisor(Path(tmpdir))
        with patch(_SPAWN, new=AsyncMock(return_value=proc)):
            await sup.spawn([], "x", on_stdout=lambda _: None, on_exit=exits.append)
        assert sup.is_running

        assert sup.stop() is True
        assert not sup.is_running
        assert proc.terminated
        await sup.wait_idle()

    assert len(exits) == 1
    assert exits[0].stopped
    assert exits[0].returncode == -15


def test_stop_without_process_is_noop() -> None:
    sup = _supervisor(Path("."))
    assert sup.stop() is False
    assert sup.current is None


@pytest.mark.asyncio
async def test_missing_executable_raises_not_found() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        sup = _supervisor(Path(tmpdir))
        with patch(_SPAWN, new=AsyncMock(side_effect=FileNotFoundError("claude"))):
            with pytest.raises(AssistantNotFoundError) as excinfo:
                await sup.spawn([], "x", on_stdout=lambda _: None, on_exit=lambda _: None)
    assert "npm install -g @anthropic-ai/claude-code" in str(excinfo.value)
    assert not sup.is_running


@pytest.mark.asyncio
async def test_stderr_is_collected_on_failure() -> None:
    proc = _FakeProcess(stderr=b"bad flag\n", returncode=2)
    exits: list[ProcessRun] = []
    with tempfile.TemporaryDirectory() as tmpdir:
        sup = _supervisor(Path(tmpdir))
        with patch(_SPAWN, new=AsyncMock(return_value=proc)):
            await sup.spawn([], "x", on_stdout=lambda _: None, on_exit=exits.append)
            await sup.wait_idle()
    assert exits[0].returncode == 2
    assert exits[0].stderr == "bad flag\n"
    assert not exits[0].stopped


@pytest.mark.asyncio
async def test_concurrent_spawns_reserve_the_slot() -> None:
    proc = _FakeProcess(hold=True)

    async def slow_exec(*args, **kwargs):
        await asyncio.sleep(0.01)
        return proc

    with tempfile.TemporaryDirectory() as tmpdir:
        sup = _supervisor(Path(tmpdir))
        with patch(_SPAWN, new=AsyncMock(side_effect=slow_exec)) as spawn:
            results = await asyncio.gather(
                sup.spawn([], "one", on_stdout=lambda _: None, on_exit=lambda _: None),
                sup.spawn([], "two", on_stdout=lambda _: None, on_exit=lambda _: None),
                return_exceptions=True,
            )
            assert spawn.await_count == 1
        assert isinstance(results[0], ProcessRun)
        assert isinstance(results[1], ProcessBusyError)
        assert sup.is_running
        sup.stop()
        await sup.wait_idle()
        assert not sup.is_running


@pytest.mark.asyncio
async def test_failed_exec_releases_the_slot() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        sup = _supervisor(Path(tmpdir))
        with patch(_SPAWN, new=AsyncMock(side_effect=FileNotFoundError("claude"))):
            with pytest.raises(AssistantNotFoundError):
                await sup.spawn([], "one", on_stdout=lambda _: None, on_exit=lambda _: None)
        assert not sup.is_running
