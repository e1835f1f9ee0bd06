"""Tests for chatrelay.engine.stream_decoder: stdout frames to client events."""

import json

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
from chatrelay.engine.stream_decoder import LineBuffer, StreamDecoder
from chatrelay.shared.models.session import Session


def _decoder() -> tuple[StreamDecoder, Session, list[ClientEvent]]:
    session = Session()
    events: list[ClientEvent] = []

    def record(event: ClientEvent) -> None:
        session.append(event.event_type, event.payload())
        events.append(event)

    return StreamDecoder(session, record), session, events


def _line(frame: dict) -> str:
    return json.dumps(frame) + "\n"


class TestLineBuffer:
    def test_partial_line_is_held_until_newline(self):
        buf = LineBuffer()
        assert buf.feed('{"type":') == []
        assert buf.pending == '{"type":'
        assert buf.feed('"x"}\nnext') == ['{"type":"x"}']
        assert buf.pending == "next"

    def test_flush_returns_trailing_text_once(self):
        buf = LineBuffer()
        buf.feed("tail")
        assert buf.flush() == ["tail"]
        assert buf.flush() == []


class TestPlainText:
    def test_assistant_hello_produces_one_output(self):
        decoder, session, events = _decoder()
        decoder.feed(
            '{"type":"assistant","message":{"role":"assistant",'
            '"content":[{"type":"text","text":"Hello"}]}}\n'
        )
        assert len(events) == 1
        assert isinstance(events[0], Output)
        assert events[0].payload() == "Hello"
        assert len(session.entries) == 1
        assert session.entries[0].kind == "output"
        assert session.entries[0].data == "Hello"

    def test_non_json_line_is_output_not_error(self):
        decoder, session, events = _decoder()
        decoder.feed("plain text\n")
        assert [e.event_type for e in events] == ["output"]
        assert events[0].payload() == "plain text"
        assert session.entries[0].data == "plain text"

    def test_json_scalar_is_treated_as_text(self):
        decoder, _, events = _decoder()
        decoder.feed("42\n")
        assert [e.payload() for e in events] == ["42"]

    def test_blank_lines_are_skipped(self):
        decoder, _, events = _decoder()
        decoder.feed("\n   \n")
        assert events == []

    def test_line_split_across_chunks(self):
        decoder, _, events = _decoder()
        raw = _line({
            "type": "assistant",
            "message": {"role": "assistant", "content": [{"type": "text", "text": "split"}]},
        })
        decoder.feed(raw[:10])
        assert events == []
        decoder.feed(raw[10:])
        assert [e.payload() for e in events] == ["split"]

    def test_flush_processes_unterminated_last_line(self):
        decoder, _, events = _decoder()
        decoder.feed("no newline at end")
        assert events == []
        decoder.flush()
        assert [e.payload() for e in events] == ["no newline at end"]


class TestSystemFrames:
    def test_init_captures_session_and_emits_info(self):
        decoder, session, events = _decoder()
        decoder.feed(_line({
            "type": "system",
            "subtype": "init",
            "session_id": "abc-123",
            "tools": ["Bash", "Read"],
            "mcp_servers": [{"name": "perm", "status": "connected"}],
        }))
        assert session.session_id == "abc-123"
        assert session.can_resume
        assert len(events) == 1
        assert isinstance(events[0], SessionInfo)
        assert events[0].payload() == {
            "sessionId": "abc-123",
            "tools": ["Bash", "Read"],
            "mcpServers": [{"name": "perm", "status": "connected"}],
        }

    def test_other_subtypes_are_ignored(self):
        decoder, session, events = _decoder()
        decoder.feed(_line({"type": "system", "subtype": "permission_request", "session_id": "x"}))
        assert events == []
        assert session.session_id is None

    def test_unknown_and_defunct_types_emit_nothing(self):
        decoder, _, events = _decoder()
        decoder.feed(_line({"type": "permission_request", "tool": "Bash"}))
        decoder.feed(_line({"type": "mystery"}))
        assert events == []


class TestAssistantFrames:
    def test_usage_accumulates_and_emits_token_update(self):
        decoder, session, events = _decoder()
        frame = {
            "type": "assistant",
            "message": {
                "role": "assistant",
                "usage": {
                    "input_tokens": 10,
                    "output_tokens": 5,
                    "cache_read_input_tokens": 3,
                },
                "content": [],
            },
        }
        decoder.feed(_line(frame))
        decoder.feed(_line(frame))

        assert session.total_tokens_input == 20
        assert session.total_tokens_output == 10
        assert session.request_count == 2
        updates = [e for e in events if isinstance(e, UpdateTokens)]
        assert len(updates) == 2
        last = updates[-1].payload()
        assert last["totalTokensInput"] == 20
        assert last["currentInputTokens"] == 10
        assert last["cacheReadTokens"] == 3
        assert last["cacheCreationTokens"] == 0

    def test_text_and_thinking_are_stripped_and_empty_skipped(self):
        decoder, _, events = _decoder()
        decoder.feed(_line({
            "type": "assistant",
            "message": {
                "role": "assistant",
                "content": [
                    {"type": "thinking", "thinking": "  pondering  "},
                    {"type": "text", "text": "   "},
                    {"type": "text", "text": " answer\n"},
                ],
            },
        }))
        assert [type(e) for e in events] == [Thinking, Output]
        assert events[0].payload() == "pondering"
        assert events[1].payload() == "answer"

    def test_non_assistant_role_is_ignored(self):
        decoder, _, events = _decoder()
        decoder.feed(_line({
            "type": "assistant",
            "message": {"role": "user", "content": [{"type": "text", "text": "x"}]},
        }))
        assert events == []

    def test_todo_write_tool_use_gets_summary(self):
        decoder, _, events = _decoder()
        todos = [
            {"content": "write tests", "status": "completed", "priority": "high"},
            {"content": "ship", "status": "pending", "priority": "low"},
        ]
        decoder.feed(_line({
            "type": "assistant",
            "message": {
                "role": "assistant",
                "content": [{
                    "type": "tool_use",
                    "id": "tu_1",
                    "name": "TodoWrite",
                    "input": {"todos": todos},
                }],
            },
        }))
        assert len(events) == 1
        event = events[0]
        assert isinstance(event, ToolUse)
        data = event.payload()
        assert data["toolName"] == "TodoWrite"
        assert data["toolUseId"] == "tu_1"
        assert data["rawInput"] == {"todos": todos}
        assert data["toolInput"].startswith("Todo List Update:")
        assert "[DONE] write tests (priority: high)" in data["toolInput"]
        assert "[TODO] ship (priority: low)" in data["toolInput"]

    def test_tool_result_is_correlated_with_tool_name(self):
        decoder, _, events = _decoder()
        decoder.feed(_line({
            "type": "assistant",
            "message": {
                "role": "assistant",
                "content": [{"type": "tool_use", "id": "tu_9", "name": "Bash", "input": {"command": "ls"}}],
            },
        }))
        decoder.feed(_line({
            "type": "user",
            "message": {
                "content": [{
                    "type": "tool_result",
                    "tool_use_id": "tu_9",
                    "content": "a.txt",
                    "is_error": False,
                }],
            },
        }))
        result = events[-1]
        assert isinstance(result, ToolResult)
        assert result.payload() == {
            "content": "a.txt",
            "isError": False,
            "toolUseId": "tu_9",
            "toolName": "Bash",
        }

    def test_tool_result_for_unknown_id_names_unknown(self):
        decoder, _, events = _decoder()
        decoder.feed(_line({
            "type": "user",
            "message": {"content": [{"type": "tool_result", "tool_use_id": "zz", "content": "x", "is_error": True}]},
        }))
        assert events[0].tool_name == "unknown"
        assert events[0].is_error is True


class TestFinalAndResult:
    def test_final_emits_totals_with_duration_and_cost(self):
        decoder, session, events = _decoder()
        session.total_cost = 0.5
        decoder.feed(_line({"type": "final", "session_id": "s-1", "duration": 1200, "cost": 0.02}))
        assert session.session_id == "s-1"
        assert isinstance(events[0], UpdateTotals)
        data = events[0].payload()
        assert data["totalCost"] == 0.5
        assert data["totalDuration"] == 1200
        assert data["currentCost"] == 0.02

    def test_result_with_usage_uses_top_level_cost(self):
        decoder, session, events = _decoder()
        decoder.feed(_line({
            "type": "result",
            "session_id": "s-2",
            "total_cost_usd": 0.07,
            "usage": {"input_tokens": 4, "output_tokens": 2},
        }))
        assert session.session_id == "s-2"
        assert len(events) == 1
        assert events[0].payload()["currentCost"] == 0.07
        assert events[0].payload()["currentOutputTokens"] == 2

    def test_result_without_usage_only_captures_id(self):
        decoder, session, events = _decoder()
        decoder.feed(_line({"type": "result", "session_id": "s-3"}))
        assert session.session_id == "s-3"
        assert events == []

    def test_malformed_frame_is_dropped_not_raised(self):
        decoder, _, events = _decoder()
        decoder.feed(_line({"type": "assistant", "message": {"role": "assistant", "content": 5}}))
        assert events == []
