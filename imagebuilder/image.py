"""
image.py

Responsibility: freeze the loaded modules and the installed packages into one
image file.

Two kinds of image:
- With an entry point: an executable zip application. Its `__main__.py` is a
  restart hook rendered from a Jinja2 template: it runs an explicit, ordered
  list of init steps, then calls the entry function with the command-line
  arguments (program name excluded).
- Without one: a plain zip that can be put on `sys.path`, with no `__main__.py`.

Options from the configuration are handed to the archive writer unchanged.
"""

from __future__ import annotations

import logging
import shutil
import sys
import tempfile
import zipapp
import zipfile
from pathlib import Path
from typing import Any, Sequence

from jinja2 import Environment, StrictUndefined

from imagebuilder import __version__
from imagebuilder.errors import SerializationError
from imagebuilder.registry import Registry, split_identifier

logger = logging.getLogger(__name__)

DEFAULT_INTERPRETER = "/usr/bin/env python3"
IMAGE_SUFFIX = "exe"

RESTART_STEPS = ("streams", "argv", "tempdir")

STEP_SOURCES = {
    "streams": (
        "def _init_streams():\n"
        "    for stream in (sys.stdout, sys.stderr):\n"
        "        if hasattr(stream, \"reconfigure\"):\n"
        "            stream.reconfigure(errors=\"backslashreplace\")\n"
    ),
    "argv": (
        "def _init_argv():\n"
        "    if sys.argv and sys.argv[0]:\n"
        "        sys.argv[0] = os.path.abspath(sys.argv[0])\n"
    ),
    "tempdir": (
        "def _init_tempdir():\n"
        "    tempfile.tempdir = None\n"
        "    tempfile.gettempdir()\n"
    ),
}

RESTART_HOOK_TEMPLATE = '''\
# Restart hook generated by imagebuilder {{ version }}.
import importlib
import os
import sys
import tempfile

{% for step in steps %}
{{ step_sources[step] }}
{% endfor %}

def _entry():
    target = importlib.import_module({{ module | pyrepr }})
    for part in {{ attr_parts | pyrepr }}:
        target = getattr(target, part)
    return target


def _restart():
{% for step in steps %}
    _init_{{ step }}()
{% endfor %}
    return _entry()(sys.argv[1:])


if __name__ == "__main__":
    sys.exit(_restart())
'''


def implementation_tag() -> str:
    """Identifies the interpreter that built the image, e.g. `cpython-312`."""
    return sys.implementation.cache_tag or sys.implementation.name


def output_name(output_base: str) -> str:
    return f"{output_base}.{implementation_tag()}.{IMAGE_SUFFIX}"


def render_restart_hook(module: str, attr: str, steps: Sequence[str] = RESTART_STEPS) -> str:
    unknown = [s for s in steps if s not in STEP_SOURCES]
    if unknown:
        raise SerializationError(f"Unknown restart steps: {', '.join(unknown)}")

    env = Environment(
        autoescape=False,
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["pyrepr"] = repr
    template = env.from_string(RESTART_HOOK_TEMPLATE)
    return template.render(
        version=__version__,
        steps=list(steps),
        step_sources=STEP_SOURCES,
        module=module,
        attr_parts=attr.split("."),
    )


def stage_image(registry: Registry, staging: Path, *, site_dir: Path | None = None) -> int:
    """
    Copy the install root, then every recorded module source over it at its
    module-relative path. Returns the number of module files staged.
    """
    if site_dir is not None and Path(site_dir).is_dir():
        shutil.copytree(
            site_dir,
            staging,
            dirs_exist_ok=True,
            ignore=shutil.ignore_patterns("__pycache__", "*.pyc", "bin"),
        )

    staged = 0
    for record in registry:
        if record.path is None or record.path.suffix != ".py":
            logger.debug("Not staging %s: no Python source", record.name)
            continue
        dest = staging / record.archive_path
        if dest.exists() and dest.resolve() == record.path:
            continue
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(record.path, dest)
        staged += 1
    return staged


def _write_library_zip(staging: Path, target: Path, options: dict[str, Any]) -> None:
    compressed = bool(options.pop("compressed", True))
    if options:
        raise SerializationError(f"Unsupported options for a library image: {', '.join(sorted(options))}")
    compression = zipfile.ZIP_DEFLATED if compressed else zipfile.ZIP_STORED
    files = sorted(p for p in staging.rglob("*") if p.is_file())
    with zipfile.ZipFile(target, "w", compression=compression) as zf:
        for path in files:
            zf.write(path, path.relative_to(staging).as_posix())


def freeze(staging: Path, target: Path, *, options: Sequence[tuple[str, Any]] = (), executable: bool = False) -> Path:
    opts = dict(options)
    target.parent.mkdir(parents=True, exist_ok=True)
    try:
        if executable:
            opts.setdefault("interpreter", DEFAULT_INTERPRETER)
            zipapp.create_archive(staging, target=target, **opts)
        else:
            _write_library_zip(staging, target, opts)
    except SerializationError:
        raise
    except (zipapp.ZipAppError, OSError, TypeError, ValueError) as e:
        raise SerializationError(f"Writing image {target} failed: {e}") from e
    return target


def write_image(
    registry: Registry,
    entry_point: str | None,
    output_base: str,
    options: Sequence[tuple[str, Any]] = (),
    *,
    site_dir: Path | None = None,
    default_module: str | None = None,
    restart_steps: Sequence[str] = RESTART_STEPS,
) -> Path:
    """
    Write `<output_base>.<impl-tag>.exe` and return its path.
    The entry point is resolved before anything is written.
    """
    target = (Path.cwd() / output_name(output_base)).resolve()

    hook: str | None = None
    if entry_point:
        module, attr = split_identifier(entry_point, default_module)
        registry.resolve(f"{module}:{attr}")
        hook = render_restart_hook(module, attr, restart_steps)

    with tempfile.TemporaryDirectory(prefix="imagebuilder-") as tmp:
        staging = Path(tmp) / "image"
        staging.mkdir()
        try:
            staged = stage_image(registry, staging, site_dir=site_dir)
        except OSError as e:
            raise SerializationError(f"Staging image contents failed: {e}") from e
        if hook is not None:
            (staging / "__main__.py").write_text(hook, encoding="utf-8")
        logger.info("Writing %s (%d module files)", target, staged)
        freeze(staging, target, options=options, executable=hook is not None)
    return target
