"""Session state: the current conversation transcript and running totals."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


LOCAL_ID_PREFIXES = ("session_", "conversation_")


def utcnow_iso() -> str:
    """UTC timestamp in the same shape browsers produce (``...123Z``)."""
    stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return stamp.replace("+00:00", "Z")


def parse_iso(value: str | None) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def looks_assistant_assigned(session_id: str | None) -> bool:
    """Prefix heuristic for records that predate ``sessionIdAssigned``."""
    if not session_id:
        return False
    return not session_id.startswith(LOCAL_ID_PREFIXES)


class EntryKind(str, Enum):
    USER_INPUT = "userInput"
    OUTPUT = "output"
    THINKING = "thinking"
    ERROR = "error"
    SYSTEM = "system"
    TOOL_USE = "toolUse"
    TOOL_RESULT = "toolResult"
    SESSION_INFO = "sessionInfo"
    UPDATE_TOKENS = "updateTokens"
    UPDATE_TOTALS = "updateTotals"


@dataclass(frozen=True)
class ConversationEntry:
    """One timestamped transcript unit. ``kind`` is the outbound event type."""

    kind: str
    data: Any = None
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "messageType": self.kind,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ConversationEntry | None:
        kind = raw.get("messageType") or raw.get("type")
        if not isinstance(kind, str) or not kind:
            return None
        timestamp = raw.get("timestamp")
        if not isinstance(timestamp, str):
            timestamp = utcnow_iso()
        return cls(kind=kind, data=raw.get("data"), timestamp=timestamp)


@dataclass
class Session:
    """Holds all conversation state for the current session.

    ``record_name`` is the on-disk file stem chosen at first save. It never
    changes afterwards, even when ``session_id`` is assigned later.
    """

    session_id: str | None = None
    session_id_assigned: bool = False
    start_time: str | None = None
    end_time: str | None = None
    entries: list[ConversationEntry] = field(default_factory=list)
    total_cost: float = 0.0
    total_tokens_input: int = 0
    total_tokens_output: int = 0
    request_count: int = 0
    record_name: str | None = None

    def append(self, kind: str, data: Any = None) -> ConversationEntry:
        if not self.entries:
            self.start_time = utcnow_iso()
        entry = ConversationEntry(kind=kind, data=data)
        self.entries.append(entry)
        return entry

    def assign_session_id(self, session_id: str) -> None:
        self.session_id = session_id
        self.session_id_assigned = True

    def add_usage(self, input_tokens: int, output_tokens: int, cost: float) -> None:
        self.total_tokens_input += input_tokens
        self.total_tokens_output += output_tokens
        # Cost never decreases within a session.
        if cost > 0:
            self.total_cost += cost

    @property
    def can_resume(self) -> bool:
        return bool(self.session_id) and self.session_id_assigned

    @property
    def message_count(self) -> int:
        return len(self.entries)

    def first_user_input(self) -> ConversationEntry | None:
        for entry in self.entries:
            if entry.kind == EntryKind.USER_INPUT.value:
                return entry
        return None

    def totals(self) -> dict[str, Any]:
        return {
            "totalCost": self.total_cost,
            "totalTokensInput": self.total_tokens_input,
            "totalTokensOutput": self.total_tokens_output,
            "requestCount": self.request_count,
        }
