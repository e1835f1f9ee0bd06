"""Event types pushed to the browser client.

Each outbound message is one JSON object ``{"type": ..., "data": ...}``.
Events are typed dataclasses; ``event_to_dict`` produces the wire form
and ``dict_to_event`` parses it back (used to replay stored entries).

Events with ``recordable = True`` may be appended to the session
transcript; the rest are transient UI state.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar

logger = logging.getLogger(__name__)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class ClientEvent:
    """Base outbound event."""
    event_type: ClassVar[str] = ""
    recordable: ClassVar[bool] = False
    # Name of the single field that *is* the payload (string/list data).
    scalar_field: ClassVar[str | None] = None

    def payload(self) -> Any:
        if self.scalar_field is not None:
            return getattr(self, self.scalar_field)
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None:
                data[_camel(f.name)] = value
        return data


# ── Transcript events ──


@dataclass
class UserInput(ClientEvent):
    event_type: ClassVar[str] = "userInput"
    recordable: ClassVar[bool] = True
    scalar_field: ClassVar[str | None] = "text"
    text: str = ""


@dataclass
class Output(ClientEvent):
    event_type: ClassVar[str] = "output"
    recordable: ClassVar[bool] = True
    scalar_field: ClassVar[str | None] = "text"
    text: str = ""


@dataclass
class Thinking(ClientEvent):
    event_type: ClassVar[str] = "thinking"
    recordable: ClassVar[bool] = True
    scalar_field: ClassVar[str | None] = "text"
    text: str = ""


@dataclass
class Error(ClientEvent):
    event_type: ClassVar[str] = "error"
    recordable: ClassVar[bool] = True
    scalar_field: ClassVar[str | None] = "message"
    message: str = ""


@dataclass
class System(ClientEvent):
    event_type: ClassVar[str] = "system"
    recordable: ClassVar[bool] = True
    scalar_field: ClassVar[str | None] = "text"
    text: str = ""


@dataclass
class ToolUse(ClientEvent):
    event_type: ClassVar[str] = "toolUse"
    recordable: ClassVar[bool] = True
    tool_info: str = ""
    tool_input: str = ""
    raw_input: Any = None
    tool_name: str = ""
    tool_use_id: str | None = None


@dataclass
class ToolResult(ClientEvent):
    event_type: ClassVar[str] = "toolResult"
    recordable: ClassVar[bool] = True
    content: Any = ""
    is_error: bool = False
    tool_use_id: str | None = None
    tool_name: str = "unknown"


@dataclass
class SessionInfo(ClientEvent):
    event_type: ClassVar[str] = "sessionInfo"
    recordable: ClassVar[bool] = True
    session_id: str | None = None
    tools: list = field(default_factory=list)
    mcp_servers: list = field(default_factory=list)


@dataclass
class UpdateTokens(ClientEvent):
    event_type: ClassVar[str] = "updateTokens"
    recordable: ClassVar[bool] = True
    total_tokens_input: int = 0
    total_tokens_output: int = 0
    current_input_tokens: int = 0
    current_output_tokens: int = 0
    current_cost: float = 0.0
    request_count: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0


@dataclass
class UpdateTotals(ClientEvent):
    event_type: ClassVar[str] = "updateTotals"
    recordable: ClassVar[bool] = True
    total_cost: float = 0.0
    total_tokens_input: int = 0
    total_tokens_output: int = 0
    request_count: int = 0
    total_duration: float | None = None
    current_duration: float | None = None
    current_cost: float | None = None


# ── Transient events ──


@dataclass
class Connected(ClientEvent):
    event_type: ClassVar[str] = "connected"


@dataclass
class SessionResumed(ClientEvent):
    event_type: ClassVar[str] = "sessionResumed"
    session_id: str | None = None
    total_cost: float = 0.0
    total_tokens_input: int = 0
    total_tokens_output: int = 0
    request_count: int = 0


@dataclass
class SetProcessing(ClientEvent):
    event_type: ClassVar[str] = "setProcessing"
    is_processing: bool = False


@dataclass
class SessionCleared(ClientEvent):
    event_type: ClassVar[str] = "sessionCleared"


@dataclass
class ConversationList(ClientEvent):
    event_type: ClassVar[str] = "conversationList"
    scalar_field: ClassVar[str | None] = "conversations"
    conversations: list = field(default_factory=list)


@dataclass
class WorkspaceFiles(ClientEvent):
    event_type: ClassVar[str] = "workspaceFiles"
    scalar_field: ClassVar[str | None] = "files"
    files: list = field(default_factory=list)


@dataclass
class SettingsSnapshot(ClientEvent):
    event_type: ClassVar[str] = "settings"
    selected_model: str = "default"
    thinking_mode: bool = False


@dataclass
class PermissionRequest(ClientEvent):
    event_type: ClassVar[str] = "permissionRequest"
    id: str = ""
    tool: str = ""
    command: str = ""


@dataclass
class Permissions(ClientEvent):
    event_type: ClassVar[str] = "permissions"
    scalar_field: ClassVar[str | None] = "rules"
    rules: list = field(default_factory=list)


@dataclass
class ConversationDeleted(ClientEvent):
    event_type: ClassVar[str] = "conversationDeleted"
    session_id: str = ""
    success: bool = False


# Map of wire type strings to dataclass constructors
_EVENT_MAP: dict[str, type[ClientEvent]] = {
    cls.event_type: cls
    for cls in (
        UserInput, Output, Thinking, Error, System, ToolUse, ToolResult,
        SessionInfo, UpdateTokens, UpdateTotals, Connected, SessionResumed,
        SetProcessing, SessionCleared, ConversationList, WorkspaceFiles,
        SettingsSnapshot, PermissionRequest, Permissions, ConversationDeleted,
    )
}

_NO_DATA = (Connected, SessionCleared)


def event_to_dict(event: ClientEvent) -> dict[str, Any]:
    """Convert a typed event to its wire form."""
    if isinstance(event, _NO_DATA):
        return {"type": event.event_type}
    return {"type": event.event_type, "data": event.payload()}


def dict_to_event(message: dict[str, Any]) -> ClientEvent | None:
    """Parse a wire-form message back into a typed event.

    Returns None for unknown types so stored transcripts written by
    newer or older versions replay what they can.
    """
    cls = _EVENT_MAP.get(message.get("type", ""))
    if cls is None:
        logger.debug("Unknown event type on replay: %r", message.get("type"))
        return None
    data = message.get("data")
    if cls.scalar_field is not None:
        if data is None:
            return cls()
        return cls(**{cls.scalar_field: data})
    if not isinstance(data, dict):
        return cls()
    by_wire = {_camel(f.name): f.name for f in fields(cls)}
    kwargs = {by_wire[k]: v for k, v in data.items() if k in by_wire}
    return cls(**kwargs)
