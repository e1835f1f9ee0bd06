"""Whole-file JSON persistence for everything under the store directory.

Writes go to a temp file beside the target and are renamed over it, so
a reader sees either the previous document or the new one. Both helpers
report failures as StorageError.
"""
from __future__ import annotations

import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any

from chatrelay.engine.errors import StorageError


def _sync_parent(path: Path) -> None:
    """Flush the rename to disk where the platform allows it."""
    if not hasattr(os, "O_DIRECTORY"):
        return
    try:
        fd = os.open(str(path.parent), os.O_RDONLY | os.O_DIRECTORY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        # Not every filesystem can fsync a directory.
        pass
    finally:
        os.close(fd)


def atomic_write_json(path: Path, payload: Any, *, indent: int | None = 2) -> None:
    """Serialize ``payload`` and swap it in place of ``path``."""
    try:
        text = json.dumps(payload, indent=indent)
    except (TypeError, ValueError) as exc:
        raise StorageError(str(path), f"not serializable: {exc}") from exc

    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            tmp_name = tmp.name
            tmp.write(text)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, path)
    except OSError as exc:
        if tmp_name is not None:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
        raise StorageError(str(path), str(exc)) from exc
    _sync_parent(path)


def read_json(path: Path) -> Any:
    """Decode the JSON document at ``path``."""
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise StorageError(str(path), str(exc)) from exc
