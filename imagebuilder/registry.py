"""
registry.py

Responsibility: the explicit table of modules loaded into this process for the image.

Loads are upserts keyed by module name: loading a file for a module that is
already present re-executes the new source in the existing module object.
Entry points are looked up here and fail with NameNotFoundError instead of
falling back to arbitrary attribute access.
"""

from __future__ import annotations

import importlib
import importlib.util
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Callable, Iterator

from imagebuilder.errors import LoadError, NameNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModuleRecord:
    name: str
    path: Path | None
    is_package: bool

    @property
    def archive_path(self) -> str:
        """Location of this module's source inside an image, relative to its root."""
        parts = self.name.split(".")
        if self.is_package:
            return "/".join([*parts, "__init__.py"])
        return "/".join(parts) + ".py"


def split_identifier(identifier: str, default_module: str | None = None) -> tuple[str, str]:
    """
    Split `pkg.mod:func`, `pkg.mod.func` or a bare `func` into (module, attribute).
    Bare names live in `default_module`.
    """
    identifier = identifier.strip()
    if ":" in identifier:
        module_name, _, attr = identifier.partition(":")
    elif "." in identifier:
        module_name, _, attr = identifier.rpartition(".")
    else:
        module_name, attr = default_module or "", identifier
    if not module_name or not attr:
        raise NameNotFoundError(f"Cannot resolve {identifier!r}: no module to look it up in")
    return module_name, attr


class Registry:
    def __init__(self) -> None:
        self._records: dict[str, ModuleRecord] = {}
        self._modules: dict[str, ModuleType] = {}

    def __iter__(self) -> Iterator[ModuleRecord]:
        return iter(list(self._records.values()))

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, name: object) -> bool:
        return name in self._records

    def get(self, name: str) -> ModuleRecord | None:
        return self._records.get(name)

    def module(self, name: str) -> ModuleType | None:
        return self._modules.get(name)

    def _record(self, name: str, module: ModuleType) -> ModuleRecord:
        file = getattr(module, "__file__", None)
        record = ModuleRecord(
            name=name,
            path=Path(file).resolve() if file else None,
            is_package=hasattr(module, "__path__"),
        )
        self._records[name] = record
        self._modules[name] = module
        return record

    def load_module(self, name: str) -> ModuleType:
        """Import `name` through the normal import system and record it."""
        if name in self._modules:
            return self._modules[name]
        try:
            module = importlib.import_module(name)
        except Exception as e:
            raise LoadError(f"Cannot import {name!r}: {e}") from e
        self._record(name, module)
        return module

    def load_file(self, name: str, path: Path, *, is_package: bool | None = None) -> ModuleType:
        """Execute the source file at `path` as module `name`."""
        path = Path(path).resolve()
        if is_package is None:
            is_package = path.name == "__init__.py"

        spec = importlib.util.spec_from_file_location(
            name,
            path,
            submodule_search_locations=[str(path.parent)] if is_package else None,
        )
        if spec is None or spec.loader is None:
            raise LoadError(f"Cannot load {path} as {name!r}: not a Python source file")

        existing = sys.modules.get(name)
        if existing is not None:
            module = existing
            module.__spec__ = spec
            module.__loader__ = spec.loader
            module.__file__ = str(path)
            if is_package:
                module.__path__ = list(spec.submodule_search_locations or [])
        else:
            module = importlib.util.module_from_spec(spec)
            sys.modules[name] = module

        try:
            spec.loader.exec_module(module)
        except Exception as e:
            if existing is None:
                sys.modules.pop(name, None)
            raise LoadError(f"Loading {path} failed: {e}") from e

        parent, _, child = name.rpartition(".")
        if parent and parent in sys.modules:
            setattr(sys.modules[parent], child, module)

        self._record(name, module)
        logger.debug("Loaded %s from %s", name, path)
        return module

    def resolve(self, identifier: str, default_module: str | None = None) -> Callable:
        module_name, attr = split_identifier(identifier, default_module)
        try:
            module = self.load_module(module_name)
        except LoadError as e:
            raise NameNotFoundError(f"Cannot resolve {identifier!r}: {e}") from e

        obj: object = module
        for part in attr.split("."):
            try:
                obj = getattr(obj, part)
            except AttributeError:
                raise NameNotFoundError(f"{module_name!r} has no attribute {attr!r}") from None
        if not callable(obj):
            raise NameNotFoundError(f"{identifier!r} is not callable")
        return obj
