"""Relay engine: assistant subprocess supervision and stream decoding."""
from .config import RelayConfig
from .errors import (
    AssistantNotFoundError,
    InvalidCommandError,
    PermissionBridgeError,
    ProcessBusyError,
    RelayError,
    StorageError,
)

__all__ = [
    # Provider (lazy import to avoid circular deps)
    "ChatProvider",
    # Config
    "RelayConfig",
    # Errors
    "AssistantNotFoundError",
    "InvalidCommandError",
    "PermissionBridgeError",
    "ProcessBusyError",
    "RelayError",
    "StorageError",
]


def __getattr__(name: str):
    if name == "ChatProvider":
        from .provider import ChatProvider
        return ChatProvider
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
