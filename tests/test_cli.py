import logging
from pathlib import Path

import pytest

from conftest import make_project
from imagebuilder import cli
from imagebuilder.errors import FetchError
from imagebuilder.orchestrator import Orchestrator


def test_version(capsys) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["--version"])
    assert exc.value.code == 0
    assert "imagebuilder" in capsys.readouterr().out


def test_malformed_config_exits_with_3(tmp_path: Path, capsys) -> None:
    config = tmp_path / "build.yaml"
    config.write_text("packages: [oops\n", encoding="utf-8")

    rc = cli.main(["build", str(config)])

    assert rc == 3
    err = capsys.readouterr().err
    assert err.startswith("error: ")
    assert "build.yaml" in err


def test_build_prints_image_path(tmp_path: Path, monkeypatch, capsys) -> None:
    config = tmp_path / "build.yaml"
    config.write_text("packages: [a]\noutput-file: first\n", encoding="utf-8")
    seen = {}

    def fake_build(self):
        seen["config"] = self.config
        return tmp_path / "img.exe"

    monkeypatch.setattr(Orchestrator, "build", fake_build)

    rc = cli.main(["build", str(config), "--output", "second", "--build-dir", "elsewhere", "-q"])

    assert rc == 0
    assert capsys.readouterr().out.strip() == str(tmp_path / "img.exe")
    assert seen["config"].output_base == "second"
    assert seen["config"].build_dir == "elsewhere"


def test_stage_error_maps_to_its_exit_code(tmp_path: Path, monkeypatch, capsys) -> None:
    config = tmp_path / "build.yaml"
    config.write_text("packages: [a]\n", encoding="utf-8")

    def fail(self):
        raise FetchError("Cloning https://h.example/x.git failed")

    monkeypatch.setattr(Orchestrator, "build", fail)

    rc = cli.main(["build", str(config)])

    assert rc == FetchError.exit_code
    assert "error: Cloning https://h.example/x.git failed" in capsys.readouterr().err


def test_plan_prints_load_order(tmp_path: Path, monkeypatch, capsys) -> None:
    make_project(
        tmp_path,
        "planned",
        {"ib_planned/__init__.py": "", "ib_planned/core.py": "", "ib_planned/cli.py": "from . import core\n"},
    )
    config = tmp_path / "build.yaml"
    config.write_text("packages: [planned]\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)

    rc = cli.main(["plan", str(config)])

    assert rc == 0
    lines = capsys.readouterr().out.splitlines()
    assert [line.split("\t")[0] for line in lines] == ["ib_planned", "ib_planned.core", "ib_planned.cli"]


def test_upgrade_passes_verbosity(tmp_path: Path, monkeypatch) -> None:
    config = tmp_path / "build.yaml"
    config.write_text("packages: [a]\n", encoding="utf-8")
    seen = {}

    def fake_upgrade(self, *, verbose=False, echo=print):
        seen["verbose"] = verbose
        return tmp_path / "img.exe"

    monkeypatch.setattr(Orchestrator, "upgrade", fake_upgrade)

    assert cli.main(["upgrade", str(config), "-v"]) == 0
    assert seen["verbose"] is True


def test_debug_opens_debugger_instead_of_error_line(tmp_path: Path, monkeypatch, capsys) -> None:
    config = tmp_path / "build.yaml"
    config.write_text("packages: [a]\n", encoding="utf-8")
    inspected = []

    def fail(self):
        raise FetchError("Cloning https://h.example/x.git failed")

    monkeypatch.setattr(Orchestrator, "build", fail)
    monkeypatch.setattr(cli.pdb, "post_mortem", inspected.append)

    rc = cli.main(["build", str(config), "--debug"])

    assert rc == FetchError.exit_code
    assert len(inspected) == 1
    err = capsys.readouterr().err
    assert "Traceback" in err
    assert not any(line.startswith("error: ") for line in err.splitlines())


def test_verbosity_counts_step_the_log_level() -> None:
    assert cli._configure_logging(verbose=0, quiet=0).level == logging.INFO
    assert cli._configure_logging(verbose=1, quiet=0).level == logging.DEBUG
    assert cli._configure_logging(verbose=0, quiet=1).level == logging.WARNING
    assert cli._configure_logging(verbose=0, quiet=3).level == logging.ERROR
    assert cli._configure_logging(verbose=1, quiet=1).level == logging.INFO
