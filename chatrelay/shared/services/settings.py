"""Project settings: persisted in ``<project>/.claude-code-chat/settings.json``.

Holds the selected model and the thinking-mode preference. One instance
per project; the last writer wins.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from chatrelay.engine.errors import StorageError
from chatrelay.shared.services.durable_write import atomic_write_json, read_json

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "default"
FILENAME = "settings.json"


@dataclass
class Settings:
    """User-facing relay settings.

    Attributes:
        selected_model: Model passed to ``--model``. ``"default"`` lets
            the assistant choose.
        thinking_mode: Whether the client should request extended thinking.
    """

    selected_model: str = DEFAULT_MODEL
    thinking_mode: bool = False

    def validate(self) -> None:
        if not isinstance(self.selected_model, str) or not self.selected_model.strip():
            self.selected_model = DEFAULT_MODEL
        if not isinstance(self.thinking_mode, bool):
            self.thinking_mode = False

    @property
    def model_override(self) -> str | None:
        if self.selected_model == DEFAULT_MODEL:
            return None
        return self.selected_model

    def to_dict(self) -> dict[str, Any]:
        return {
            "selectedModel": self.selected_model,
            "thinkingMode": self.thinking_mode,
        }


class SettingsStore:
    """Load/update/save ``Settings`` for one project."""

    def __init__(self, store_dir: Path) -> None:
        self._path = store_dir / FILENAME
        self.settings = self.load()

    def load(self) -> Settings:
        """Load settings from disk, returning defaults if missing/corrupt."""
        if not self._path.exists():
            logger.debug("Settings file not found at %s; using defaults", self._path)
            return Settings()
        try:
            data = read_json(self._path)
        except StorageError as exc:
            logger.warning("%s; using default settings", exc)
            return Settings()
        if not isinstance(data, dict):
            logger.warning("Ignoring non-object settings file %s", self._path)
            return Settings()
        settings = Settings(
            selected_model=data.get("selectedModel") or DEFAULT_MODEL,
            thinking_mode=data.get("thinkingMode", False),
        )
        settings.validate()
        logger.debug("Loaded settings from %s", self._path)
        return settings

    def save(self) -> None:
        try:
            atomic_write_json(self._path, self.settings.to_dict())
        except StorageError:
            logger.error("Failed to save settings to %s", self._path, exc_info=True)

    def select_model(self, model: str) -> None:
        self.settings.selected_model = model
        self.settings.validate()
        self.save()

    def update(self, changes: dict[str, Any]) -> Settings:
        """Apply a partial update from the client and persist it."""
        model = changes.get("selectedModel")
        if model:
            self.settings.selected_model = str(model)
        if changes.get("thinkingMode") is not None:
            self.settings.thinking_mode = bool(changes["thinkingMode"])
        self.settings.validate()
        self.save()
        return self.settings
