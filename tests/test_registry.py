from pathlib import Path

import pytest

from imagebuilder.errors import LoadError, NameNotFoundError
from imagebuilder.registry import ModuleRecord, Registry, split_identifier


def test_load_file_is_an_upsert(tmp_path: Path) -> None:
    path = tmp_path / "ib_upsert.py"
    path.write_text("VALUE = 1\n", encoding="utf-8")
    registry = Registry()

    first = registry.load_file("ib_upsert", path)
    path.write_text("VALUE = 2\n", encoding="utf-8")
    second = registry.load_file("ib_upsert", path)

    assert first is second
    assert second.VALUE == 2
    assert len(registry) == 1
    assert registry.get("ib_upsert") == ModuleRecord("ib_upsert", path.resolve(), False)


def test_load_file_failure_is_load_error(tmp_path: Path) -> None:
    path = tmp_path / "ib_broken.py"
    path.write_text("raise RuntimeError('nope')\n", encoding="utf-8")
    registry = Registry()

    with pytest.raises(LoadError, match="nope"):
        registry.load_file("ib_broken", path)
    assert "ib_broken" not in registry


def test_package_and_submodule(tmp_path: Path) -> None:
    pkg = tmp_path / "ib_pkg"
    pkg.mkdir()
    (pkg / "__init__.py").write_text("", encoding="utf-8")
    (pkg / "tool.py").write_text("def run(args):\n    return len(args)\n", encoding="utf-8")
    registry = Registry()

    parent = registry.load_file("ib_pkg", pkg / "__init__.py")
    registry.load_file("ib_pkg.tool", pkg / "tool.py")

    assert parent.tool.run(["a"]) == 1
    assert [r.archive_path for r in registry] == ["ib_pkg/__init__.py", "ib_pkg/tool.py"]
    assert registry.resolve("ib_pkg.tool:run")(["a", "b"]) == 2
    assert registry.resolve("ib_pkg.tool.run")([]) == 0


def test_bare_name_uses_default_module(tmp_path: Path) -> None:
    path = tmp_path / "ib_bare.py"
    path.write_text("def main(args):\n    return args\n", encoding="utf-8")
    registry = Registry()
    registry.load_file("ib_bare", path)

    assert registry.resolve("main", default_module="ib_bare")(["x"]) == ["x"]


def test_resolve_failures(tmp_path: Path) -> None:
    path = tmp_path / "ib_names.py"
    path.write_text("NOT_CALLABLE = 3\n", encoding="utf-8")
    registry = Registry()
    registry.load_file("ib_names", path)

    with pytest.raises(NameNotFoundError, match="no attribute"):
        registry.resolve("ib_names:missing")
    with pytest.raises(NameNotFoundError, match="not callable"):
        registry.resolve("ib_names:NOT_CALLABLE")
    with pytest.raises(NameNotFoundError):
        registry.resolve("ib_no_such_module_anywhere:main")
    with pytest.raises(NameNotFoundError):
        registry.resolve("main")


def test_split_identifier() -> None:
    assert split_identifier("pkg.cli:main") == ("pkg.cli", "main")
    assert split_identifier("pkg.cli.main") == ("pkg.cli", "main")
    assert split_identifier("pkg:App.run") == ("pkg", "App.run")
    assert split_identifier("main", "pkg") == ("pkg", "main")
