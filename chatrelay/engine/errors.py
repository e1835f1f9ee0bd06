"""Exception hierarchy for the relay.

Every error here is contained at a component boundary and converted
into an ``error`` event or an empty result before it reaches the
transport.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relay errors."""


class ProcessBusyError(RelayError):
    """A request arrived while another one is still in flight."""
    def __init__(self, pid: int | None = None):
        self.pid = pid
        super().__init__(
            "Already processing a message. Please wait or stop the current request."
        )


class AssistantNotFoundError(RelayError):
    """The assistant CLI executable could not be launched."""
    def __init__(self, command: str):
        self.command = command
        super().__init__(
            f"Claude CLI not found ({command}). "
            "Please install it with: npm install -g @anthropic-ai/claude-code"
        )


class InvalidCommandError(RelayError):
    """An inbound client message could not be understood."""
    def __init__(self, reason: str, command_type: str | None = None):
        self.reason = reason
        self.command_type = command_type
        super().__init__(reason)


class StorageError(RelayError):
    """Reading or writing a persisted file failed."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Storage failure at {path}: {reason}")


class PermissionBridgeError(RelayError):
    """A permission request file could not be handled."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Permission request {path} dropped: {reason}")
