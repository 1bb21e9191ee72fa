"""
config.py

Responsibility: Load and parse a build description into an immutable, typed model.

Accepted inputs:
- A YAML file whose top level is a mapping.
- A markdown file that starts with YAML frontmatter delimited by '---'.

Every path the pipeline touches is derived from `Config.build_path`, which is
resolved against the working directory at the moment it is read.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from imagebuilder.errors import ConfigError

DEFAULT_OUTPUT_BASE = "app"
DEFAULT_BUILD_DIR = "build"
DEFAULT_BOOTSTRAP_URL = "https://bootstrap.pypa.io/get-pip.py"

SITE_SUBDIR = "site"
LOCAL_PROJECTS_SUBDIR = "local-projects"
SETUP_FILE_NAME = "setup.json"

_KNOWN_KEYS = {
    "packages",
    "entry-point",
    "output-file",
    "options",
    "custom-systems",
    "build-dir",
    "bootstrap-url",
}


@dataclass(frozen=True)
class ExternalSource:
    """A source repository fetched into `local-projects` before packages load."""

    url: str
    method: str = "git"
    branch: str | None = None


@dataclass(frozen=True)
class Config:
    """Parsed build description used by both `build` and `upgrade`."""

    packages: tuple[str, ...] = ()
    entry_point: str | None = None
    output_base: str = DEFAULT_OUTPUT_BASE
    options: tuple[tuple[str, Any], ...] = ()
    external_sources: tuple[ExternalSource, ...] = ()
    build_dir: str = DEFAULT_BUILD_DIR
    bootstrap_url: str = DEFAULT_BOOTSTRAP_URL
    source_path: Path | None = field(default=None, compare=False)

    @property
    def build_path(self) -> Path:
        return (Path.cwd() / self.build_dir).resolve()

    @property
    def site_dir(self) -> Path:
        return self.build_path / SITE_SUBDIR

    @property
    def local_projects_dir(self) -> Path:
        return self.build_path / LOCAL_PROJECTS_SUBDIR

    @property
    def setup_file(self) -> Path:
        return self.build_path / SETUP_FILE_NAME

    def with_overrides(self, *, build_dir: str | None = None, output_base: str | None = None) -> Config:
        changes: dict[str, Any] = {}
        if build_dir:
            changes["build_dir"] = build_dir
        if output_base:
            changes["output_base"] = output_base
        return replace(self, **changes) if changes else self


def _parse_yaml_frontmatter(text: str) -> tuple[dict[str, Any] | None, str]:
    """
    If the markdown begins with YAML frontmatter delimited by '---', parse it.
    Returns (frontmatter_dict_or_none, remaining_markdown_text).
    """
    if not text.startswith("---\n"):
        return None, text

    end = text.find("\n---\n", 4)
    if end == -1:
        raise ConfigError("YAML frontmatter starts with '---' but no closing '---' was found.")

    fm_text = text[4:end]
    rest = text[end + len("\n---\n") :]
    data = yaml.safe_load(fm_text) or {}
    if not isinstance(data, dict):
        raise ConfigError("YAML frontmatter must be a mapping/object at the top level.")
    return data, rest


def _normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    return {str(k).strip().replace("_", "-"): v for k, v in data.items()}


def _str_list(value: Any, key: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value.strip(),) if value.strip() else ()
    if not isinstance(value, list):
        raise ConfigError(f"`{key}` must be a list of strings.")
    out = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"`{key}` entries must be non-empty strings, got {item!r}.")
        out.append(item.strip())
    return tuple(out)


def _parse_options(value: Any) -> tuple[tuple[str, Any], ...]:
    """
    Options stay opaque; only their shape is checked. Accepts a mapping,
    a list of single-key mappings, or a list of [key, value] pairs.
    """
    if value is None:
        return ()
    if isinstance(value, dict):
        return tuple((str(k), v) for k, v in value.items())
    if not isinstance(value, list):
        raise ConfigError("`options` must be a mapping or a list of key/value pairs.")
    pairs: list[tuple[str, Any]] = []
    for item in value:
        if isinstance(item, dict) and len(item) == 1:
            ((k, v),) = item.items()
            pairs.append((str(k), v))
        elif isinstance(item, (list, tuple)) and len(item) == 2:
            pairs.append((str(item[0]), item[1]))
        else:
            raise ConfigError(f"Malformed `options` entry: {item!r}")
    return tuple(pairs)


def _parse_external_sources(value: Any) -> tuple[ExternalSource, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError("`custom-systems` must be a list.")
    sources: list[ExternalSource] = []
    for item in value:
        if isinstance(item, str):
            item = {"url": item}
        if not isinstance(item, dict):
            raise ConfigError(f"`custom-systems` entries must be mappings, got {item!r}")
        url = str(item.get("url") or "").strip()
        if not url:
            raise ConfigError("Every `custom-systems` entry needs a `url`.")
        method = str(item.get("method") or "git").strip().lower()
        branch = item.get("branch")
        if branch is not None:
            branch = str(branch).strip() or None
        sources.append(ExternalSource(url=url, method=method, branch=branch))
    return tuple(sources)


def config_from_mapping(raw: dict[str, Any], *, source_path: Path | None = None) -> Config:
    """Build a `Config` from an already-decoded mapping."""
    data = _normalize_keys(raw)
    unknown = sorted(set(data) - _KNOWN_KEYS)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

    entry_point = data.get("entry-point")
    if entry_point is not None:
        if not isinstance(entry_point, str):
            raise ConfigError("`entry-point` must be a string.")
        entry_point = entry_point.strip() or None

    output_base = str(data.get("output-file") or DEFAULT_OUTPUT_BASE).strip()
    build_dir = str(data.get("build-dir") or DEFAULT_BUILD_DIR).strip()
    bootstrap_url = str(data.get("bootstrap-url") or DEFAULT_BOOTSTRAP_URL).strip()

    return Config(
        packages=_str_list(data.get("packages"), "packages"),
        entry_point=entry_point,
        output_base=output_base,
        options=_parse_options(data.get("options")),
        external_sources=_parse_external_sources(data.get("custom-systems")),
        build_dir=build_dir,
        bootstrap_url=bootstrap_url,
        source_path=source_path,
    )


def parse_config(config_path: str | Path) -> Config:
    """
    Parse a build description file into a `Config`.

    Recognized keys (underscores and dashes are interchangeable):
    - packages: list[str]
    - entry-point: str, e.g. `myapp.cli:main`
    - output-file: str, base name of the produced image
    - options: mapping or list of pairs, passed through to the image writer
    - custom-systems: list of {url, method, branch}
    - build-dir: str
    - bootstrap-url: str
    """
    path = Path(config_path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Cannot read configuration file {path}: {e}") from e

    try:
        frontmatter, _rest = _parse_yaml_frontmatter(text)
        data = frontmatter if frontmatter is not None else yaml.safe_load(text)
    except (yaml.YAMLError, ConfigError) as e:
        raise ConfigError(f"Malformed configuration file {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Malformed configuration file {path}: top level must be a mapping.")

    try:
        return config_from_mapping(data, source_path=path)
    except ConfigError as e:
        raise ConfigError(f"{path}: {e}") from e
