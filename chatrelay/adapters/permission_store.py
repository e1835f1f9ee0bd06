"""Persistent allow-list of pre-approved tool invocations.

Rules are keyed by ``(tool, command)`` and stored in the project's
``permissions.json`` as ``{"<tool>:<command>": true}``.
"""

from __future__ import annotations

import logging
from pathlib import Path

from chatrelay.engine.errors import StorageError
from chatrelay.shared.services.durable_write import atomic_write_json, read_json

logger = logging.getLogger(__name__)

FILENAME = "permissions.json"


def rule_key(tool: str, command: str) -> str:
    return f"{tool}:{command}"


class PermissionStore:
    """Load and save always-allow rules."""

    def __init__(self, store_dir: Path) -> None:
        self._path = store_dir / FILENAME
        self._rules: dict[str, bool] = self._load_file(self._path)

    @property
    def path(self) -> Path:
        return self._path

    def is_allowed(self, tool: str, command: str) -> bool:
        return bool(self._rules.get(rule_key(tool, command)))

    def add(self, tool: str, command: str) -> None:
        """Persist a new always-allow rule."""
        self._rules[rule_key(tool, command)] = True
        self._save()

    def remove(self, tool: str, command: str) -> bool:
        """Delete a rule. Returns False when it did not exist."""
        if self._rules.pop(rule_key(tool, command), None) is None:
            return False
        self._save()
        return True

    def list_rules(self) -> list[dict[str, str]]:
        rules: list[dict[str, str]] = []
        for key, allowed in self._rules.items():
            if not allowed:
                continue
            tool, _, command = key.partition(":")
            rules.append({"tool": tool, "command": command})
        return rules

    @staticmethod
    def _load_file(path: Path) -> dict[str, bool]:
        if not path.exists():
            return {}
        try:
            data = read_json(path)
        except StorageError as exc:
            logger.warning("%s", exc)
            return {}
        if isinstance(data, dict):
            return {str(k): bool(v) for k, v in data.items()}
        logger.warning("Ignoring non-object permissions file %s", path)
        return {}

    def _save(self) -> None:
        try:
            atomic_write_json(self._path, self._rules)
        except StorageError:
            logger.warning("Failed to write %s", self._path)
