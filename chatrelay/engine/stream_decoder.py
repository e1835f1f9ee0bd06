"""Incremental decoder for the assistant CLI's ``stream-json`` stdout.

Chunks arrive in any size; a partial trailing line is buffered until
its newline shows up. Each complete line is either one JSON object,
dispatched on its ``type`` field, or plain text which becomes an
``output`` event. Decode failures are expected noise from the CLI and
never propagate.

Every event produced here goes through ``record``, which appends it to
the session transcript and pushes it to the client in one step.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Callable

from chatrelay.adapters.events import (
    ClientEvent,
    Output,
    SessionInfo,
    Thinking,
    ToolResult,
    ToolUse,
    UpdateTokens,
    UpdateTotals,
)
from chatrelay.shared.formatters.tool_call import format_tool_input
from chatrelay.shared.models.session import Session

logger = logging.getLogger(__name__)

RecordFn = Callable[[ClientEvent], None]

# Frame types the CLI may emit that carry nothing for the client.
_IGNORED_TYPES = frozenset({"permission_request"})


def _int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def _float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    return 0.0


class LineBuffer:
    """Splits a text stream into complete lines across chunk boundaries."""

    def __init__(self) -> None:
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: str) -> list[str]:
        data = self._pending + chunk
        *lines, self._pending = data.split("\n")
        return lines

    def flush(self) -> list[str]:
        rest, self._pending = self._pending, ""
        return [rest] if rest else []


class StreamDecoder:
    """Translate stdout frames into client events for one subprocess run."""

    def __init__(self, session: Session, record: RecordFn) -> None:
        self._session = session
        self._record = record
        self._buffer = LineBuffer()
        # tool_use id -> tool name, so results can name their tool.
        self._tool_names: dict[str, str] = {}
        self._handlers: dict[str, Callable[[dict[str, Any]], None]] = {
            "system": self._on_system,
            "user": self._on_user,
            "assistant": self._on_assistant,
            "final": self._on_final,
            "result": self._on_result,
        }

    def feed(self, chunk: str) -> None:
        for line in self._buffer.feed(chunk):
            self.process_line(line)

    def flush(self) -> None:
        """Process whatever is left once stdout has closed."""
        for line in self._buffer.flush():
            self.process_line(line)

    def process_line(self, line: str) -> None:
        stripped = line.strip()
        if not stripped:
            return
        try:
            frame = json.loads(stripped)
        except ValueError:
            logger.debug("Non-JSON output: %r", stripped[:200])
            self._record(Output(text=stripped))
            return
        if not isinstance(frame, dict):
            self._record(Output(text=stripped))
            return
        try:
            self.dispatch(frame)
        except (AttributeError, TypeError, ValueError):
            logger.warning(
                "Dropping malformed %r frame", frame.get("type"), exc_info=True,
            )

    def dispatch(self, frame: dict[str, Any]) -> None:
        frame_type = frame.get("type")
        handler = self._handlers.get(frame_type) if isinstance(frame_type, str) else None
        if handler is None:
            if frame_type in _IGNORED_TYPES:
                logger.info("Ignoring stream %s frame (handled by the broker)", frame_type)
            else:
                logger.debug("Unhandled stream frame type: %r", frame_type)
            return
        handler(frame)

    # ── helpers ──

    def _capture_session_id(self, frame: dict[str, Any]) -> None:
        session_id = frame.get("session_id")
        if not isinstance(session_id, str) or not session_id:
            return
        if session_id != self._session.session_id:
            logger.info("Assistant session id: %s", session_id)
        self._session.assign_session_id(session_id)

    def _token_update(self, usage: dict[str, Any], current_cost: float) -> UpdateTokens:
        session = self._session
        return UpdateTokens(
            total_tokens_input=session.total_tokens_input,
            total_tokens_output=session.total_tokens_output,
            current_input_tokens=_int(usage.get("input_tokens")),
            current_output_tokens=_int(usage.get("output_tokens")),
            current_cost=current_cost,
            request_count=session.request_count,
            cache_creation_tokens=_int(usage.get("cache_creation_input_tokens")),
            cache_read_tokens=_int(usage.get("cache_read_input_tokens")),
        )

    # ── frame handlers ──

    def _on_system(self, frame: dict[str, Any]) -> None:
        subtype = frame.get("subtype")
        if subtype != "init":
            if subtype == "permission_request":
                logger.info("Ignoring legacy in-stream permission request")
            else:
                logger.debug("Unhandled system subtype: %r", subtype)
            return
        self._capture_session_id(frame)
        self._record(SessionInfo(
            session_id=frame.get("session_id"),
            tools=list(frame.get("tools") or []),
            mcp_servers=list(frame.get("mcp_servers") or []),
        ))

    def _on_user(self, frame: dict[str, Any]) -> None:
        message = frame.get("message")
        if not isinstance(message, dict):
            return
        content = message.get("content")
        if not isinstance(content, list):
            return
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            tool_use_id = block.get("tool_use_id")
            self._record(ToolResult(
                content=block.get("content") or "",
                is_error=bool(block.get("is_error")),
                tool_use_id=tool_use_id,
                tool_name=(
                    block.get("name")
                    or self._tool_names.get(tool_use_id or "")
                    or "unknown"
                ),
            ))

    def _on_assistant(self, frame: dict[str, Any]) -> None:
        message = frame.get("message")
        if not isinstance(message, dict) or message.get("role") != "assistant":
            return

        usage = message.get("usage")
        if isinstance(usage, dict):
            cost = _float(usage.get("total_cost"))
            self._session.add_usage(
                _int(usage.get("input_tokens")),
                _int(usage.get("output_tokens")),
                cost,
            )
            self._session.request_count += 1
            self._record(self._token_update(usage, cost))

        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                text = block.get("text")
                if isinstance(text, str) and text.strip():
                    self._record(Output(text=text.strip()))
            elif block_type == "thinking":
                thinking = block.get("thinking")
                if isinstance(thinking, str) and thinking.strip():
                    self._record(Thinking(text=thinking.strip()))
            elif block_type == "tool_use":
                self._on_tool_use(block)

    def _on_tool_use(self, block: dict[str, Any]) -> None:
        name = block.get("name") or ""
        tool_use_id = block.get("id") or block.get("tool_use_id")
        if tool_use_id:
            self._tool_names[tool_use_id] = name
        tool_input = block.get("input")
        self._record(ToolUse(
            tool_info=name,
            tool_input=format_tool_input(name, tool_input),
            raw_input=tool_input,
            tool_name=name,
            tool_use_id=tool_use_id,
        ))

    def _on_final(self, frame: dict[str, Any]) -> None:
        self._capture_session_id(frame)
        duration = _float(frame.get("duration"))
        session = self._session
        self._record(UpdateTotals(
            total_cost=session.total_cost,
            total_tokens_input=session.total_tokens_input,
            total_tokens_output=session.total_tokens_output,
            request_count=session.request_count,
            total_duration=duration,
            current_duration=duration,
            current_cost=_float(frame.get("cost")),
        ))

    def _on_result(self, frame: dict[str, Any]) -> None:
        self._capture_session_id(frame)
        usage = frame.get("usage")
        if isinstance(usage, dict):
            self._record(self._token_update(usage, _float(frame.get("total_cost_usd"))))
