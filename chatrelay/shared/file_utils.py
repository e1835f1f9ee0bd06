"""File utilities: workspace file search for ``@``-style completion.

Walks the project root with ``os.scandir()``, skipping hidden entries
and ``node_modules``, and matches file names case-insensitively.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

SKIP_DIRS: set[str] = {"node_modules"}
DEFAULT_LIMIT: int = 50


@dataclass
class WorkspaceFile:
    """A single matching file."""

    name: str  # Base name
    path: str  # Relative to the project root, "/"-separated

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "path": self.path}


def _is_skipped(name: str) -> bool:
    return name.startswith(".") or name in SKIP_DIRS


def _scan_dir(
    abs_path: Path,
    rel_prefix: str,
    needle: str,
    limit: int,
    results: list[WorkspaceFile],
) -> None:
    """Recursively collect matching files until ``limit`` is reached."""
    try:
        with os.scandir(abs_path) as it:
            entries = sorted(it, key=lambda e: e.name.lower())
    except OSError:
        logger.warning("Error reading directory %s", abs_path, exc_info=True)
        return

    for entry in entries:
        if len(results) >= limit:
            return
        if _is_skipped(entry.name):
            continue
        rel = f"{rel_prefix}{entry.name}"
        try:
            is_dir = entry.is_dir(follow_symlinks=False)
        except OSError:
            continue
        if is_dir:
            _scan_dir(abs_path / entry.name, rel + "/", needle, limit, results)
        elif not needle or needle in entry.name.lower():
            results.append(WorkspaceFile(name=entry.name, path=rel))


def search_workspace_files(
    root: Path,
    search_term: str = "",
    limit: int = DEFAULT_LIMIT,
) -> list[WorkspaceFile]:
    """Files under ``root`` whose name contains ``search_term``.

    An empty term matches every file. At most ``limit`` results.
    """
    results: list[WorkspaceFile] = []
    if limit <= 0:
        return results
    _scan_dir(root, "", (search_term or "").lower(), limit, results)
    return results
