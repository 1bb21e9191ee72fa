"""
runtime.py

Responsibility: the only place that drives pip and knows its on-disk layout.

pip is installed into `<build-dir>/site` by the bootstrap payload and is always
invoked as `python -m pip` with that directory first on PYTHONPATH, so the
bootstrapped copy is the one that runs. Everything pip installs for the image
lands in the same directory.
"""

from __future__ import annotations

import importlib
import importlib.metadata
import json
import logging
import os
import re
import sys
import tomllib
from pathlib import Path
from types import ModuleType
from typing import Callable

from imagebuilder.errors import EnvironmentSetupError, LoadError
from imagebuilder.process import CommandError, run

logger = logging.getLogger(__name__)

SETUP_FORMAT_VERSION = 1
PROJECT_MARKERS = ("pyproject.toml", "setup.py")


def normalize_name(name: str) -> str:
    """PEP 503 normalization, used to compare project names."""
    return re.sub(r"[-_.]+", "-", name).lower()


def module_name_for(name: str) -> str:
    return re.sub(r"[-.]+", "_", name).lower()


class PipRuntime:
    def __init__(
        self,
        site_dir: Path,
        setup_file: Path,
        *,
        local_projects_dir: Path | None = None,
        python: str = sys.executable,
        runner: Callable[..., str] = run,
    ) -> None:
        self.site_dir = Path(site_dir)
        self.setup_file = Path(setup_file)
        self.local_projects_dir = Path(local_projects_dir) if local_projects_dir is not None else None
        self.python = python
        self._run = runner

    @classmethod
    def for_config(cls, config, **kwargs) -> PipRuntime:
        return cls(
            config.site_dir,
            config.setup_file,
            local_projects_dir=config.local_projects_dir,
            **kwargs,
        )

    # -- setup marker -------------------------------------------------------

    def is_set_up(self) -> bool:
        return self.setup_file.is_file()

    def install_self(self, payload: Path) -> None:
        """Run the bootstrap payload so pip is installed under `site_dir`."""
        self.site_dir.mkdir(parents=True, exist_ok=True)
        cmd = [
            self.python,
            str(payload),
            "--target",
            str(self.site_dir),
            "--no-warn-script-location",
            "--disable-pip-version-check",
        ]
        try:
            self._run(cmd, cwd=self.setup_file.parent)
        except CommandError as e:
            raise EnvironmentSetupError(f"Installing pip from {payload} failed: {e}") from e

    def write_setup(self) -> None:
        site = os.path.relpath(self.site_dir, self.setup_file.parent)
        payload = {"version": SETUP_FORMAT_VERSION, "site": Path(site).as_posix()}
        try:
            self.setup_file.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        except OSError as e:
            raise EnvironmentSetupError(f"Cannot write setup marker {self.setup_file}: {e}") from e

    def load_setup(self) -> Path:
        """Put the install root recorded in the setup marker on `sys.path`."""
        try:
            data = json.loads(self.setup_file.read_text(encoding="utf-8"))
            site = (self.setup_file.parent / data["site"]).resolve()
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise EnvironmentSetupError(f"Unreadable setup marker {self.setup_file}: {e}") from e

        if str(site) not in sys.path:
            sys.path.insert(0, str(site))
            importlib.invalidate_caches()
        logger.debug("Loaded setup marker %s (site=%s)", self.setup_file, site)
        return site

    def require(self, module_name: str) -> ModuleType:
        try:
            return importlib.import_module(module_name)
        except ImportError as e:
            raise LoadError(f"Cannot import {module_name!r}: {e}") from e

    # -- package resolution -------------------------------------------------

    def _pip_env(self) -> dict[str, str]:
        env = os.environ.copy()
        parts = [str(self.site_dir)]
        if env.get("PYTHONPATH"):
            parts.append(env["PYTHONPATH"])
        env["PYTHONPATH"] = os.pathsep.join(parts)
        env.setdefault("PIP_DISABLE_PIP_VERSION_CHECK", "1")
        return env

    def _search_roots(self, search_dir: Path) -> list[Path]:
        roots = [Path(search_dir)]
        if self.local_projects_dir is not None:
            roots.append(self.local_projects_dir)
        return roots

    def requirement_for(self, name: str, search_dir: Path) -> str:
        """A local project directory if one matches `name`, else the bare requirement."""
        for root in self._search_roots(search_dir):
            candidate = root / name
            if any((candidate / marker).is_file() for marker in PROJECT_MARKERS):
                return str(candidate.resolve())
        return name

    def quickload(self, names: list[str], search_dir: Path) -> None:
        """Install every name in one pip call so shared dependencies resolve together."""
        if not names:
            return
        requirements = [self.requirement_for(name, search_dir) for name in names]
        cmd = [
            self.python,
            "-m",
            "pip",
            "install",
            "--upgrade",
            "--target",
            str(self.site_dir),
            *requirements,
        ]
        try:
            self._run(cmd, cwd=Path(search_dir), env=self._pip_env())
        except CommandError as e:
            raise LoadError(f"Resolving packages {', '.join(names)} failed: {e}") from e
        importlib.invalidate_caches()

    def top_level_modules(self, name: str) -> list[str]:
        """
        Importable top-level names provided by installed distribution `name`.
        Falls back to the normalized project name when pip left no metadata.
        """
        wanted = normalize_name(name)
        for dist in importlib.metadata.distributions(path=[str(self.site_dir)]):
            if normalize_name(dist.metadata["Name"] or "") != wanted:
                continue
            top_level = dist.read_text("top_level.txt")
            if top_level:
                return [line.strip() for line in top_level.splitlines() if line.strip()]
            modules: list[str] = []
            for file in dist.files or []:
                head = file.parts[0]
                if head.endswith((".dist-info", ".data")) or head in ("..", "__pycache__", "bin"):
                    continue
                if len(file.parts) == 1:
                    if not head.endswith(".py"):
                        continue
                    head = head[: -len(".py")]
                if head.isidentifier() and head not in modules:
                    modules.append(head)
            if modules:
                return modules
        return [module_name_for(name)]

    # -- definitions --------------------------------------------------------

    @staticmethod
    def read_definition(path: Path) -> dict:
        try:
            with Path(path).open("rb") as fh:
                return tomllib.load(fh)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise LoadError(f"Cannot read package definition {path}: {e}") from e

    def find_definitions(self, name: str, search_dir: Path) -> list[Path]:
        """
        Locate `pyproject.toml` files declaring project `name` under `search_dir`.

        Checked in order: `<search_dir>/<name>/`, `<search_dir>/` itself, then
        every other direct child directory (sorted). A malformed definition
        outside `<search_dir>/<name>/` is skipped.
        """
        search_dir = Path(search_dir)
        wanted = normalize_name(name)
        primary = search_dir / name / "pyproject.toml"
        candidates = [primary, search_dir / "pyproject.toml"]
        if search_dir.is_dir():
            candidates.extend(
                child / "pyproject.toml"
                for child in sorted(search_dir.iterdir())
                if child.is_dir() and not child.name.startswith(".")
            )

        found: list[Path] = []
        seen: set[Path] = set()
        for candidate in candidates:
            if not candidate.is_file():
                continue
            resolved = candidate.resolve()
            if resolved in seen:
                continue
            seen.add(resolved)
            try:
                data = self.read_definition(candidate)
            except LoadError as e:
                # Only the directory named after the project must parse.
                if candidate == primary:
                    raise
                logger.debug("Skipping unreadable candidate: %s", e)
                continue
            project = data.get("project") or {}
            if normalize_name(str(project.get("name") or "")) == wanted:
                found.append(candidate)
        return found
