"""
loader.py

Responsibility: make the configured packages available in this process.
"""

from __future__ import annotations

import contextlib
import importlib
import logging
import sys
from pathlib import Path
from typing import Iterator, Sequence

from imagebuilder.registry import Registry
from imagebuilder.runtime import PipRuntime

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def scoped_search_path(directory: Path) -> Iterator[Path]:
    """Put `directory` first on sys.path for the duration of the block."""
    entry = str(Path(directory).resolve())
    sys.path.insert(0, entry)
    importlib.invalidate_caches()
    try:
        yield Path(entry)
    finally:
        try:
            sys.path.remove(entry)
        except ValueError:
            pass


def load_packages(names: Sequence[str], runtime: PipRuntime, registry: Registry) -> None:
    if not names:
        return
    cwd = Path.cwd()
    logger.info("Resolving %s", ", ".join(names))
    with scoped_search_path(cwd):
        runtime.quickload(list(names), cwd)
        for name in names:
            for module_name in runtime.top_level_modules(name):
                registry.load_module(module_name)
