import os
import sys
from pathlib import Path

import pytest

from conftest import make_project, write_files
from imagebuilder.errors import LoadError
from imagebuilder.loader import load_packages
from imagebuilder.process import CommandError
from imagebuilder.registry import Registry
from imagebuilder.runtime import PipRuntime, normalize_name


class RecordingRunner:
    def __init__(self) -> None:
        self.calls: list[tuple[list[str], dict]] = []

    def __call__(self, cmd, *, cwd=None, env=None) -> str:
        self.calls.append((cmd, {"cwd": cwd, "env": env}))
        return ""


def _runtime(tmp_path: Path, runner=None) -> PipRuntime:
    build = tmp_path / "build"
    return PipRuntime(
        build / "site",
        build / "setup.json",
        local_projects_dir=build / "local-projects",
        runner=runner or RecordingRunner(),
    )


def test_quickload_is_one_batched_call(tmp_path: Path) -> None:
    make_project(tmp_path, "mine", {"ib_mine/__init__.py": ""})
    make_project(tmp_path / "build" / "local-projects", "widgets", {"widgets/__init__.py": ""})
    runner = RecordingRunner()
    runtime = _runtime(tmp_path, runner)

    runtime.quickload(["mine", "widgets", "requests"], tmp_path)

    ((cmd, kwargs),) = runner.calls
    assert cmd[:4] == [sys.executable, "-m", "pip", "install"]
    assert cmd[cmd.index("--target") + 1] == str(runtime.site_dir)
    assert cmd[-3:] == [
        str((tmp_path / "mine").resolve()),
        str((tmp_path / "build" / "local-projects" / "widgets").resolve()),
        "requests",
    ]
    assert kwargs["env"]["PYTHONPATH"].split(os.pathsep)[0] == str(runtime.site_dir)


def test_quickload_failure_is_load_error(tmp_path: Path) -> None:
    def failing(cmd, **kwargs):
        raise CommandError(cmd, 1, "No matching distribution found for nope")

    with pytest.raises(LoadError, match="No matching distribution"):
        _runtime(tmp_path, failing).quickload(["nope"], tmp_path)


def test_find_definitions_matches_normalized_names(tmp_path: Path) -> None:
    make_project(tmp_path, "Other_Name", {})
    target = make_project(tmp_path, "cool.tool", {})

    found = _runtime(tmp_path).find_definitions("Cool-Tool", tmp_path)

    assert found == [target / "pyproject.toml"]


def test_top_level_modules_from_metadata(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path)
    write_files(
        runtime.site_dir,
        {
            "ib_toppkg-1.0.dist-info/METADATA": "Metadata-Version: 2.1\nName: ib-toppkg\nVersion: 1.0\n",
            "ib_toppkg-1.0.dist-info/top_level.txt": "ib_toppkg\nib_toppkg_extra\n",
            "ib_rec-2.0.dist-info/METADATA": "Metadata-Version: 2.1\nName: IB.Rec\nVersion: 2.0\n",
            "ib_rec-2.0.dist-info/RECORD": (
                "ib_rec_impl/__init__.py,,\n"
                "ib_rec_helpers.py,,\n"
                "ib_rec-2.0.dist-info/METADATA,,\n"
                "../../bin/ib-rec,,\n"
            ),
        },
    )

    assert runtime.top_level_modules("IB_TopPkg") == ["ib_toppkg", "ib_toppkg_extra"]
    assert runtime.top_level_modules("ib-rec") == ["ib_rec_impl", "ib_rec_helpers"]
    assert runtime.top_level_modules("not-installed") == ["not_installed"]


def test_normalize_name() -> None:
    assert normalize_name("Foo.Bar_baz--qux") == "foo-bar-baz-qux"


def test_load_packages_scopes_search_path(tmp_path: Path, monkeypatch) -> None:
    (tmp_path / "ib_loaded.py").write_text("LOADED = True\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    seen = {}

    class FakeRuntime:
        def quickload(self, names, search_dir):
            seen["names"] = names
            seen["first_path"] = sys.path[0]

        def top_level_modules(self, name):
            return ["ib_loaded"]

    registry = Registry()
    load_packages(["ib-loaded"], FakeRuntime(), registry)

    assert seen == {"names": ["ib-loaded"], "first_path": str(tmp_path.resolve())}
    assert str(tmp_path.resolve()) not in sys.path
    assert registry.module("ib_loaded").LOADED is True


def test_load_packages_with_no_names_does_nothing() -> None:
    class Untouchable:
        def quickload(self, names, search_dir):
            raise AssertionError("should not be called")

    load_packages([], Untouchable(), Registry())


def test_find_definitions_skips_malformed_sibling_projects(tmp_path: Path) -> None:
    write_files(tmp_path, {"aaa-broken/pyproject.toml": "[project\nname = \n"})
    target = make_project(tmp_path, "wanted", {})

    found = _runtime(tmp_path).find_definitions("wanted", tmp_path)

    assert found == [target / "pyproject.toml"]


def test_find_definitions_reports_malformed_named_project(tmp_path: Path) -> None:
    write_files(tmp_path, {"wanted/pyproject.toml": "[project\n"})

    with pytest.raises(LoadError, match="Cannot read package definition"):
        _runtime(tmp_path).find_definitions("wanted", tmp_path)
