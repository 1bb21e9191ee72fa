import sys
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def isolated_imports(monkeypatch):
    """Undo sys.path edits and forget modules imported from test projects."""
    monkeypatch.setattr(sys, "path", list(sys.path))
    before = set(sys.modules)
    yield
    for name in set(sys.modules) - before:
        module = sys.modules.get(name)
        file = getattr(module, "__file__", None) or ""
        if "pytest-of-" in file or name.startswith("ib_"):
            del sys.modules[name]


def write_files(root: Path, files: dict[str, str]) -> None:
    for rel, text in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")


def make_project(root: Path, name: str, files: dict[str, str], *, extra_toml: str = "") -> Path:
    """Create `root/<name>/` with a pyproject.toml declaring project `name`."""
    project = root / name
    write_files(
        project,
        {
            "pyproject.toml": f'[project]\nname = "{name}"\nversion = "0.1"\n{extra_toml}',
            **files,
        },
    )
    return project
