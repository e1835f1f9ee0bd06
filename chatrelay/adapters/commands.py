"""Inbound client commands.

Parses the JSON object sent by the browser into a typed command.
Anything that is not a known command with the right field types
raises InvalidCommandError.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from chatrelay.engine.errors import InvalidCommandError


@dataclass
class ClientCommand:
    command_type: str = ""


@dataclass
class SendMessage(ClientCommand):
    command_type: str = "sendMessage"
    text: str = ""
    plan_mode: bool = False
    thinking_mode: bool = False


@dataclass
class NewSession(ClientCommand):
    command_type: str = "newSession"


@dataclass
class StopRequest(ClientCommand):
    command_type: str = "stopRequest"


@dataclass
class GetWorkspaceFiles(ClientCommand):
    command_type: str = "getWorkspaceFiles"
    search_term: str = ""


@dataclass
class SelectModel(ClientCommand):
    command_type: str = "selectModel"
    model: str = ""


@dataclass
class GetSettings(ClientCommand):
    command_type: str = "getSettings"


@dataclass
class UpdateSettings(ClientCommand):
    command_type: str = "updateSettings"
    settings: dict[str, Any] = field(default_factory=dict)


@dataclass
class PermissionResponse(ClientCommand):
    command_type: str = "permissionResponse"
    id: str = ""
    approved: bool = False
    always_allow: bool = False


@dataclass
class GetPermissions(ClientCommand):
    command_type: str = "getPermissions"


@dataclass
class RemovePermission(ClientCommand):
    command_type: str = "removePermission"
    tool: str = ""
    command: str = ""


@dataclass
class GetConversationList(ClientCommand):
    command_type: str = "getConversationList"


@dataclass
class LoadConversation(ClientCommand):
    command_type: str = "loadConversation"
    session_id: str = ""


@dataclass
class DeleteConversation(ClientCommand):
    command_type: str = "deleteConversation"
    session_id: str = ""


def _str(data: dict, key: str, command_type: str, *, required: bool = True) -> str:
    value = data.get(key)
    if value is None and not required:
        return ""
    if not isinstance(value, str):
        raise InvalidCommandError(
            f"'{command_type}' requires a string '{key}'", command_type,
        )
    return value


def _bool(data: dict, key: str) -> bool:
    return bool(data.get(key) or False)


def _parse_send(data: dict) -> ClientCommand:
    text = _str(data, "text", "sendMessage")
    if not text.strip():
        raise InvalidCommandError("'sendMessage' requires non-empty text", "sendMessage")
    return SendMessage(
        text=text,
        plan_mode=_bool(data, "planMode"),
        thinking_mode=_bool(data, "thinkingMode"),
    )


def _parse_update_settings(data: dict) -> ClientCommand:
    settings = data.get("settings")
    if not isinstance(settings, dict):
        raise InvalidCommandError(
            "'updateSettings' requires a 'settings' object", "updateSettings",
        )
    return UpdateSettings(settings=settings)


def _parse_permission_response(data: dict) -> ClientCommand:
    raw_id = data.get("id")
    if not isinstance(raw_id, (str, int)) or isinstance(raw_id, bool):
        raise InvalidCommandError(
            "'permissionResponse' requires an 'id'", "permissionResponse",
        )
    return PermissionResponse(
        id=str(raw_id),
        approved=_bool(data, "approved"),
        always_allow=_bool(data, "alwaysAllow"),
    )


_PARSERS = {
    "sendMessage": _parse_send,
    "newSession": lambda d: NewSession(),
    "stopRequest": lambda d: StopRequest(),
    "getWorkspaceFiles": lambda d: GetWorkspaceFiles(
        search_term=_str(d, "searchTerm", "getWorkspaceFiles", required=False),
    ),
    "selectModel": lambda d: SelectModel(model=_str(d, "model", "selectModel")),
    "getSettings": lambda d: GetSettings(),
    "updateSettings": _parse_update_settings,
    "permissionResponse": _parse_permission_response,
    "getPermissions": lambda d: GetPermissions(),
    "removePermission": lambda d: RemovePermission(
        tool=_str(d, "tool", "removePermission"),
        command=_str(d, "command", "removePermission"),
    ),
    "getConversationList": lambda d: GetConversationList(),
    "loadConversation": lambda d: LoadConversation(
        session_id=_str(d, "sessionId", "loadConversation"),
    ),
    "deleteConversation": lambda d: DeleteConversation(
        session_id=_str(d, "sessionId", "deleteConversation"),
    ),
}


def parse_command(raw: str | bytes) -> ClientCommand:
    """Decode one inbound WebSocket message into a typed command."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidCommandError(f"Invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise InvalidCommandError("Message must be a JSON object")
    command_type = data.get("type")
    if not isinstance(command_type, str):
        raise InvalidCommandError("Message is missing a 'type' field")
    parser = _PARSERS.get(command_type)
    if parser is None:
        raise InvalidCommandError(f"Unknown message type: {command_type}", command_type)
    return parser(data)
