"""Conversation persistence: save and load transcripts to disk.

Storage layout:
    <project>/.claude-code-chat/conversations/{record_name}.json

``record_name`` is the session id when one is known at first save,
otherwise ``conversation_<epoch ms>``. It is fixed at first write, so
lookups by id also match on the decoded ``sessionId`` field.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from chatrelay.engine.errors import StorageError
from chatrelay.shared.models.session import (
    ConversationEntry,
    Session,
    looks_assistant_assigned,
    parse_iso,
    utcnow_iso,
)
from chatrelay.shared.services.durable_write import atomic_write_json, read_json

logger = logging.getLogger(__name__)

TITLE_LENGTH = 50
UNTITLED = "Untitled Conversation"
_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def derive_title(session: Session) -> str:
    """Title from the first user input: leading 50 chars, ``...`` if cut."""
    first = session.first_user_input()
    if first is None or not isinstance(first.data, str):
        return UNTITLED
    title = first.data[:TITLE_LENGTH].strip()
    if len(first.data) > TITLE_LENGTH:
        title += "..."
    return title or UNTITLED


def session_to_record(session: Session) -> dict[str, Any]:
    return {
        "sessionId": session.session_id,
        "sessionIdAssigned": session.session_id_assigned,
        "title": derive_title(session),
        "startTime": session.start_time,
        "endTime": session.end_time,
        "messageCount": session.message_count,
        "totalCost": session.total_cost,
        "totalTokens": {
            "input": session.total_tokens_input,
            "output": session.total_tokens_output,
        },
        "messages": [entry.to_dict() for entry in session.entries],
    }


def _as_number(value: Any, cast: type, default: Any = 0) -> Any:
    # bool is an int subclass; a stray true/false is not a count.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return cast(value)


def record_to_session(record: dict[str, Any], record_name: str) -> Session:
    """Rebuild a Session from a decoded record; wrong-typed fields get defaults."""
    session_id = record.get("sessionId")
    if not isinstance(session_id, str) or not session_id:
        session_id = None
    assigned = record.get("sessionIdAssigned")
    if not isinstance(assigned, bool):
        assigned = looks_assistant_assigned(session_id)

    messages = record.get("messages")
    if not isinstance(messages, list):
        messages = []
    entries: list[ConversationEntry] = []
    for raw in messages:
        if not isinstance(raw, dict):
            continue
        entry = ConversationEntry.from_dict(raw)
        if entry is not None:
            entries.append(entry)

    tokens = record.get("totalTokens")
    if not isinstance(tokens, dict):
        tokens = {}
    start_time = record.get("startTime")
    end_time = record.get("endTime")
    return Session(
        session_id=session_id,
        session_id_assigned=assigned and session_id is not None,
        start_time=start_time if isinstance(start_time, str) else None,
        end_time=end_time if isinstance(end_time, str) else None,
        entries=entries,
        total_cost=_as_number(record.get("totalCost"), float, 0.0),
        total_tokens_input=_as_number(tokens.get("input"), int),
        total_tokens_output=_as_number(tokens.get("output"), int),
        request_count=sum(1 for e in entries if e.kind == "userInput"),
        record_name=record_name,
    )


class ConversationStore:
    """Save, list, load and delete persisted conversation records."""

    def __init__(self, conversations_dir: Path) -> None:
        self._dir = conversations_dir
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def _record_files(self) -> list[Path]:
        try:
            return sorted(self._dir.glob("*.json"))
        except OSError:
            logger.error("Error listing conversations in %s", self._dir, exc_info=True)
            return []

    def list(self) -> list[dict[str, Any]]:
        """Summaries of every readable record, most recently ended first."""
        conversations: list[dict[str, Any]] = []
        for path in self._record_files():
            try:
                data = read_json(path)
                if not isinstance(data, dict):
                    raise ValueError("record is not a JSON object")
                end_time = data.get("endTime")
                if not isinstance(end_time, str) or not end_time:
                    end_time = datetime.fromtimestamp(
                        path.stat().st_mtime, tz=timezone.utc,
                    ).isoformat()
                messages = data.get("messages")
                if not isinstance(messages, list):
                    messages = []
                title = data.get("title")
                conversations.append({
                    "sessionId": data.get("sessionId"),
                    "title": title if isinstance(title, str) and title else UNTITLED,
                    "startTime": data.get("startTime"),
                    "endTime": end_time,
                    "messageCount": _as_number(data.get("messageCount"), int) or len(messages),
                    "totalCost": _as_number(data.get("totalCost"), float, 0.0),
                    "fileName": path.name,
                })
            except (StorageError, OSError, ValueError):
                logger.warning("Skipping unreadable conversation file %s", path, exc_info=True)

        conversations.sort(
            key=lambda c: parse_iso(c["endTime"]) or _EPOCH,
            reverse=True,
        )
        return conversations

    def _find(self, session_id: str) -> Path | None:
        for path in self._record_files():
            if session_id in path.name:
                return path
            try:
                data = read_json(path)
            except StorageError:
                continue
            if isinstance(data, dict) and data.get("sessionId") == session_id:
                return path
        return None

    def load(self, session_id: str) -> Session | None:
        """Load the record for ``session_id``; None when absent or unreadable."""
        if not session_id:
            return None
        path = self._find(session_id)
        if path is None:
            logger.info("No conversation found for %s", session_id)
            return None
        try:
            data = read_json(path)
        except StorageError:
            logger.error("Error loading conversation %s", path, exc_info=True)
            return None
        if not isinstance(data, dict):
            logger.error("Conversation %s is not a JSON object", path)
            return None
        session = record_to_session(data, path.stem)
        logger.info(
            "Loaded conversation %s (%d entries) from %s",
            session.session_id, session.message_count, path.name,
        )
        return session

    def load_latest(self) -> Session | None:
        for summary in self.list():
            session = self._load_file(self._dir / summary["fileName"])
            if session is not None:
                return session
        return None

    def _load_file(self, path: Path) -> Session | None:
        try:
            data = read_json(path)
        except StorageError:
            logger.error("Error loading conversation %s", path, exc_info=True)
            return None
        if not isinstance(data, dict):
            return None
        return record_to_session(data, path.stem)

    def delete(self, session_id: str) -> bool:
        """Remove the record whose ``sessionId`` matches. False if not found."""
        for summary in self.list():
            if summary["sessionId"] != session_id or not summary.get("fileName"):
                continue
            path = self._dir / summary["fileName"]
            try:
                path.unlink()
            except OSError:
                logger.error("Error deleting conversation %s", path, exc_info=True)
                return False
            logger.info("Deleted conversation %s (%s)", session_id, path.name)
            return True
        return False

    def save(self, session: Session) -> Path | None:
        """Overwrite the session's record with its current state.

        No-op for a session without entries. Returns the written path,
        or None when nothing was written.
        """
        if not session.entries:
            return None
        if session.record_name is None:
            session.record_name = (
                session.session_id
                or f"conversation_{int(time.time() * 1000)}"
            )
        session.end_time = utcnow_iso()
        path = self._dir / f"{session.record_name}.json"
        try:
            atomic_write_json(path, session_to_record(session))
        except StorageError:
            logger.error("Error saving conversation to %s", path, exc_info=True)
            return None
        logger.info("Conversation saved to %s (%d entries)", path, session.message_count)
        return path
