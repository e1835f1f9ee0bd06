from __future__ import annotations

import tempfile
from pathlib import Path

from chatrelay.shared.file_utils import search_workspace_files


def _tree(root: Path, files: list[str]) -> None:
    for rel in files:
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("x", encoding="utf-8")


def test_search_skips_hidden_and_node_modules() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        _tree(root, [
            "src/app.py",
            "src/App.test.py",
            "README.md",
            ".env",
            ".git/config",
            "node_modules/pkg/app.js",
        ])
        everything = search_workspace_files(root)
        matches = search_workspace_files(root, "APP")

    assert sorted(f.path for f in everything) == ["README.md", "src/App.test.py", "src/app.py"]
    assert sorted(f.to_dict()["path"] for f in matches) == ["src/App.test.py", "src/app.py"]
    assert {f.name for f in matches} == {"app.py", "App.test.py"}


def test_search_respects_limit() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        _tree(root, [f"dir{i}/file{j}.txt" for i in range(5) for j in range(20)])
        assert len(search_workspace_files(root, "file")) == 50
        assert len(search_workspace_files(root, "file", limit=7)) == 7
        assert search_workspace_files(root, "file", limit=0) == []


def test_search_in_missing_directory_is_empty() -> None:
    assert search_workspace_files(Path("/nonexistent/chatrelay-root"), "x") == []
