"""Assistant CLI subprocess lifecycle.

One subprocess per outgoing message: spawned with the message on stdin
(then closed), stdout streamed to a chunk callback, stderr collected,
and an exit callback fired once both pipes are drained. At most one
subprocess exists per supervisor; a second spawn is rejected, never
queued. No timeout is applied; a hung CLI runs until ``stop()``.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from chatrelay.engine.errors import AssistantNotFoundError, ProcessBusyError

logger = logging.getLogger(__name__)

STREAM_ARGS = ("-p", "--output-format", "stream-json", "--verbose")
THINKING_FLAG = "--think"
PLAN_PREFIX = "plan\n\n"

# Force plain, unbuffered output from the CLI and anything it runs.
ENV_OVERRIDES = {
    "FORCE_COLOR": "0",
    "NO_COLOR": "1",
    "PYTHONUNBUFFERED": "1",
    "NODE_NO_READLINE": "1",
}

_CHUNK_SIZE = 64 * 1024


@dataclass
class ProcessRun:
    """Bookkeeping for one subprocess invocation."""
    process: asyncio.subprocess.Process
    stopped: bool = False
    returncode: int | None = None
    stderr: str = ""
    task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def pid(self) -> int | None:
        return getattr(self.process, "pid", None)


ChunkCallback = Callable[[str], None]
ExitCallback = Callable[[ProcessRun], None]


def build_message(text: str, plan_mode: bool = False) -> str:
    return f"{PLAN_PREFIX}{text}" if plan_mode else text


class ProcessSupervisor:
    """Spawns and supervises the assistant CLI for one project root."""

    def __init__(
        self,
        argv: list[str],
        cwd: Path,
        *,
        mcp_config_path: Path | None = None,
        permission_tool: str | None = None,
    ) -> None:
        if not argv:
            raise ValueError("assistant command must not be empty")
        self._argv = list(argv)
        self._cwd = cwd
        self._mcp_config_path = mcp_config_path
        self._permission_tool = permission_tool
        self._run: ProcessRun | None = None
        self._starting = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._run is not None or self._starting

    @property
    def current(self) -> ProcessRun | None:
        return self._run

    def build_args(
        self,
        *,
        resume_id: str | None = None,
        continue_last: bool = False,
        model: str | None = None,
        thinking_mode: bool = False,
    ) -> list[str]:
        """CLI arguments for one request.

        ``resume_id`` wins over ``continue_last``; pass it only for ids the
        assistant itself assigned.
        """
        args = list(STREAM_ARGS)

        if self._mcp_config_path is not None and self._mcp_config_path.exists():
            args.extend(["--mcp-config", str(self._mcp_config_path)])
            if self._permission_tool:
                args.extend(["--allowedTools", self._permission_tool])
                args.extend(["--permission-prompt-tool", self._permission_tool])

        if resume_id:
            args.extend(["--resume", resume_id])
        elif continue_last:
            args.append("--continue")

        if model:
            args.extend(["--model", model])

        if thinking_mode:
            args.append(THINKING_FLAG)
        return args

    @staticmethod
    def _build_env() -> dict[str, str]:
        env = os.environ.copy()
        env.update(ENV_OVERRIDES)
        return env

    async def spawn(
        self,
        args: list[str],
        message: str,
        *,
        on_stdout: ChunkCallback,
        on_exit: ExitCallback,
    ) -> ProcessRun:
        """Start the CLI, feed ``message`` on stdin and close it.

        Raises ProcessBusyError when a subprocess is already running and
        AssistantNotFoundError when the executable is missing.
        """
        if self.is_running:
            raise ProcessBusyError(self._run.pid if self._run else None)
        # Held across the exec await so a concurrent spawn is rejected.
        self._starting = True

        cmd = [*self._argv, *args]
        logger.info("Running assistant: %s (cwd=%s)", shlex.join(cmd), self._cwd)
        try:
            # Argument list, no shell.
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self._cwd),
                env=self._build_env(),
            )
        except FileNotFoundError as exc:
            raise AssistantNotFoundError(self._argv[0]) from exc
        finally:
            self._starting = False

        run = ProcessRun(process=proc)
        self._run = run
        logger.info("Assistant started (pid=%s)", run.pid)

        await self._write_stdin(proc, message)

        task = asyncio.create_task(self._pump(run, on_stdout, on_exit))
        run.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return run

    @staticmethod
    async def _write_stdin(proc: asyncio.subprocess.Process, message: str) -> None:
        if proc.stdin is None:
            return
        try:
            proc.stdin.write((message + "\n").encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.warning("Assistant closed stdin before the message was written")
        finally:
            proc.stdin.close()

    @staticmethod
    async def _collect(stream: asyncio.StreamReader | None) -> str:
        if stream is None:
            return ""
        data = await stream.read()
        return data.decode("utf-8", errors="replace")

    async def _pump(
        self,
        run: ProcessRun,
        on_stdout: ChunkCallback,
        on_exit: ExitCallback,
    ) -> None:
        proc = run.process
        stderr_task = asyncio.create_task(self._collect(proc.stderr))
        # Incremental so multi-byte characters split across reads survive.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while proc.stdout is not None:
                chunk = await proc.stdout.read(_CHUNK_SIZE)
                if not chunk:
                    break
                logger.debug("stdout chunk pid=%s: %r", run.pid, chunk[:500])
                self._deliver(on_stdout, decoder.decode(chunk))
            self._deliver(on_stdout, decoder.decode(b"", final=True))
        finally:
            run.returncode = await proc.wait()
            run.stderr = await stderr_task
            if self._run is run:
                self._run = None
            if run.stderr.strip():
                logger.warning("Assistant stderr pid=%s: %s", run.pid, run.stderr.strip()[:2000])
            logger.info(
                "Assistant exited pid=%s code=%s stopped=%s",
                run.pid, run.returncode, run.stopped,
            )
            try:
                on_exit(run)
            except Exception:
                logger.exception("Exit handler failed for pid=%s", run.pid)

    @staticmethod
    def _deliver(on_stdout: ChunkCallback, text: str) -> None:
        if not text:
            return
        try:
            on_stdout(text)
        except Exception:
            logger.exception("stdout handler failed")

    def stop(self) -> bool:
        """Signal the running subprocess to terminate.

        Returns immediately without waiting for the exit; the exit
        callback still fires later. Returns False when nothing is running.
        """
        run = self._run
        if run is None:
            return False
        run.stopped = True
        self._run = None
        try:
            run.process.terminate()
        except ProcessLookupError:
            logger.debug("Assistant pid=%s already gone", run.pid)
        logger.info("Assistant stop requested (pid=%s)", run.pid)
        return True

    async def wait_idle(self) -> None:
        """Wait until every spawned subprocess has been fully reaped."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
