"""Adapters package - client protocol and permission plumbing.

Typed inbound commands and outbound events, plus the allow-list store
and the file-based permission bridge that connect the engine to the
browser client.
"""
from __future__ import annotations

__all__ = [
    "ClientEvent",
    "PermissionBridge",
    "PermissionStore",
    "event_to_dict",
    "parse_command",
]

from chatrelay.adapters.commands import parse_command
from chatrelay.adapters.events import ClientEvent, event_to_dict
from chatrelay.adapters.permission_bridge import PermissionBridge
from chatrelay.adapters.permission_store import PermissionStore
