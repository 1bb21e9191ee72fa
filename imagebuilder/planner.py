"""
planner.py

Responsibility: compute the order in which a project's source files must be
re-loaded for `upgrade`, without touching pip or the network.

For each package:
1) find its `pyproject.toml` under the working directory
2) turn it into a `PackageDefinition`: the project's own modules and the
   imports between them (dependencies on other projects are ignored)
3) plan a load of that definition: a topologically ordered action list
4) keep only the `load-source` actions on `.py` files

Packages are planned independently and concatenated in the order given.
"""

from __future__ import annotations

import ast
import contextlib
import heapq
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Sequence

from imagebuilder.errors import LoadError
from imagebuilder.loader import scoped_search_path
from imagebuilder.registry import Registry
from imagebuilder.runtime import PipRuntime, module_name_for

logger = logging.getLogger(__name__)

PREPARE_PACKAGE = "prepare-package"
LOAD_SOURCE = "load-source"
LOAD_PACKAGE = "load-package"

_SKIP_DIRS = {"tests", "test", "docs", "examples", "build", "dist", "__pycache__"}


@dataclass(frozen=True)
class Component:
    module: str
    path: Path
    requires: tuple[str, ...] = ()

    @property
    def is_package(self) -> bool:
        return self.path.name == "__init__.py"


@dataclass(frozen=True)
class PackageDefinition:
    name: str
    root: Path
    source_root: Path
    components: tuple[Component, ...]


@dataclass(frozen=True)
class PlanAction:
    kind: str
    target: str | Path


@dataclass(frozen=True)
class PlanEntry:
    action: str
    path: Path
    module: str


def _ancestors(module: str) -> list[str]:
    parts = module.split(".")
    return [".".join(parts[:i]) for i in range(1, len(parts))]


def _source_root(project_dir: Path, tool: dict) -> Path:
    package_dir = (tool.get("setuptools") or {}).get("package-dir") or {}
    if package_dir.get(""):
        return project_dir / package_dir[""]
    if (project_dir / "src").is_dir():
        return project_dir / "src"
    return project_dir


def _walk_package(package_dir: Path, prefix: str) -> list[tuple[str, Path]]:
    # _SKIP_DIRS only applies at the source root; any subpackage is part of the project.
    found = [(prefix, package_dir / "__init__.py")]
    for child in sorted(package_dir.iterdir()):
        if child.is_dir():
            if (child / "__init__.py").is_file():
                found.extend(_walk_package(child, f"{prefix}.{child.name}"))
        elif child.suffix == ".py" and child.name != "__init__.py":
            found.append((f"{prefix}.{child.stem}", child))
    return found


def _discover_modules(source_root: Path, project_name: str, tool: dict) -> list[tuple[str, Path]]:
    setuptools_cfg = tool.get("setuptools") or {}
    packages = setuptools_cfg.get("packages")
    py_modules = list(setuptools_cfg.get("py-modules") or [])

    if isinstance(packages, list):
        top_level = sorted({p.split(".")[0] for p in packages})
    else:
        top_level = sorted(
            child.name
            for child in source_root.iterdir()
            if child.is_dir()
            and child.name not in _SKIP_DIRS
            and not child.name.startswith(".")
            and (child / "__init__.py").is_file()
        )

    modules: list[tuple[str, Path]] = []
    for name in top_level:
        package_dir = source_root.joinpath(*name.split("."))
        if (package_dir / "__init__.py").is_file():
            modules.extend(_walk_package(package_dir, name))
    for name in py_modules:
        path = source_root / f"{name}.py"
        if path.is_file():
            modules.append((name, path))

    if not modules:
        fallback = source_root / f"{module_name_for(project_name)}.py"
        if fallback.is_file():
            modules.append((fallback.stem, fallback))
    return modules


def _is_type_checking(test: ast.expr) -> bool:
    if isinstance(test, ast.Name):
        return test.id == "TYPE_CHECKING"
    return isinstance(test, ast.Attribute) and test.attr == "TYPE_CHECKING"


def _load_time_imports(body: Sequence[ast.AST]) -> Iterator[ast.Import | ast.ImportFrom]:
    """
    Import statements that run when the module body executes. Function bodies
    and `if TYPE_CHECKING:` branches are skipped; class bodies, conditionals,
    loops, `with` and `try` blocks are followed.
    """
    for node in body:
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            yield node
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda)):
            continue
        elif isinstance(node, ast.If):
            if not _is_type_checking(node.test):
                yield from _load_time_imports(node.body)
            yield from _load_time_imports(node.orelse)
        else:
            for field in ("body", "handlers", "orelse", "finalbody", "cases"):
                yield from _load_time_imports(getattr(node, field, None) or ())


def _imported_names(path: Path, module: str, is_package: bool) -> list[str]:
    try:
        tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    except (OSError, UnicodeDecodeError, SyntaxError) as e:
        raise LoadError(f"Cannot parse {path}: {e}") from e

    package = module if is_package else module.rpartition(".")[0]
    names: list[str] = []
    for node in _load_time_imports(tree.body):
        if isinstance(node, ast.Import):
            names.extend(alias.name for alias in node.names)
        elif isinstance(node, ast.ImportFrom):
            if node.level:
                parts = package.split(".") if package else []
                if node.level - 1 > len(parts):
                    continue
                parts = parts[: len(parts) - (node.level - 1)]
                base = ".".join(parts + ([node.module] if node.module else []))
            else:
                base = node.module or ""
            if not base:
                continue
            names.append(base)
            names.extend(f"{base}.{alias.name}" for alias in node.names if alias.name != "*")
    return names


def _longest_known_prefix(name: str, known: set[str]) -> str | None:
    parts = name.split(".")
    for i in range(len(parts), 0, -1):
        candidate = ".".join(parts[:i])
        if candidate in known:
            return candidate
    return None


def _reaches(graph: dict[str, set[str]], start: str, goal: str) -> bool:
    stack, seen = [start], set()
    while stack:
        node = stack.pop()
        if node == goal:
            return True
        if node in seen:
            continue
        seen.add(node)
        stack.extend(graph.get(node, ()))
    return False


def _component_requires(modules: list[tuple[str, Path]]) -> dict[str, set[str]]:
    """
    Intra-project dependency edges. A dependency on one of the module's own
    parent packages is only kept when that parent does not itself depend on
    the module (an `__init__` re-exporting its submodules).
    """
    known = {name for name, _ in modules}
    strong: dict[str, set[str]] = {name: set() for name in known}
    weak: dict[str, set[str]] = {name: set(_ancestors(name)) & known for name in known}

    for name, path in modules:
        ancestors = set(_ancestors(name))
        for imported in _imported_names(path, name, path.name == "__init__.py"):
            target = _longest_known_prefix(imported, known)
            if target is None or target == name:
                continue
            if target in ancestors:
                weak[name].add(target)
            else:
                strong[name].add(target)

    graph = {name: set(deps) for name, deps in strong.items()}
    for name in sorted(weak):
        for parent in sorted(weak[name]):
            if not _reaches(graph, parent, name):
                graph[name].add(parent)
    return graph


def parse_definition(path: Path, cwd: Path | None = None) -> PackageDefinition:
    """
    Normalize a `pyproject.toml` into the project's local module structure.
    Relative paths are anchored to the absolute working directory.
    """
    cwd = Path(cwd or os.getcwd()).resolve()
    definition_path = (cwd / Path(path)).resolve()
    data = PipRuntime.read_definition(definition_path)

    project = dict(data.get("project") or {})
    project.pop("dependencies", None)
    project.pop("optional-dependencies", None)
    name = str(project.get("name") or definition_path.parent.name)

    tool = data.get("tool") or {}
    project_dir = definition_path.parent
    source_root = _source_root(project_dir, tool).resolve()
    if not source_root.is_dir():
        raise LoadError(f"{definition_path}: source directory {source_root} does not exist")

    modules = _discover_modules(source_root, name, tool)
    graph = _component_requires(modules)
    components = tuple(
        Component(module=module, path=path.resolve(), requires=tuple(sorted(graph[module])))
        for module, path in modules
    )
    return PackageDefinition(name=name, root=project_dir, source_root=source_root, components=components)


def topological_order(components: Sequence[Component]) -> list[Component]:
    """
    Order components so each comes after everything it requires. Among the
    components that are ready at the same time the smallest module name wins,
    so the result is stable.
    """
    by_name = {c.module: c for c in components}
    pending = {c.module: {r for r in c.requires if r in by_name} for c in components}
    dependents: dict[str, list[str]] = {name: [] for name in by_name}
    for name, deps in pending.items():
        for dep in deps:
            dependents[dep].append(name)

    ready = [name for name, deps in pending.items() if not deps]
    heapq.heapify(ready)
    ordered: list[Component] = []
    while ready:
        name = heapq.heappop(ready)
        ordered.append(by_name[name])
        for dependent in dependents[name]:
            pending[dependent].discard(name)
            if not pending[dependent]:
                heapq.heappush(ready, dependent)

    if len(ordered) != len(by_name):
        stuck = sorted(set(by_name) - {c.module for c in ordered})
        raise LoadError(f"Circular imports between modules: {', '.join(stuck)}")
    return ordered


def make_plan(definition: PackageDefinition) -> list[PlanAction]:
    actions = [PlanAction(PREPARE_PACKAGE, definition.name)]
    actions.extend(PlanAction(LOAD_SOURCE, c.path) for c in topological_order(definition.components))
    actions.append(PlanAction(LOAD_PACKAGE, definition.name))
    return actions


def _source_entries(definition: PackageDefinition, actions: Sequence[PlanAction]) -> list[PlanEntry]:
    module_for_path = {c.path: c.module for c in definition.components}
    entries: list[PlanEntry] = []
    for action in actions:
        if action.kind != LOAD_SOURCE:
            continue
        path = Path(action.target)
        if path.suffix != ".py":
            continue
        entries.append(PlanEntry(action=action.kind, path=path, module=module_for_path[path]))
    return entries


def plan_upgrade(names: Sequence[str], runtime: PipRuntime, cwd: Path | None = None) -> list[PlanEntry]:
    cwd = Path(cwd or os.getcwd()).resolve()
    entries: list[PlanEntry] = []
    for name in names:
        definitions = runtime.find_definitions(name, cwd)
        if not definitions:
            raise LoadError(f"No pyproject.toml declaring {name!r} found under {cwd}")
        for definition_path in definitions:
            definition = parse_definition(definition_path, cwd)
            entries.extend(_source_entries(definition, make_plan(definition)))
    return entries


def _import_root(entry: PlanEntry) -> Path:
    """The sys.path entry from which `entry.module` is importable."""
    depth = entry.module.count(".") + (1 if entry.path.name == "__init__.py" else 0)
    return entry.path.parents[depth]


def upgrade_load(
    names: Sequence[str],
    runtime: PipRuntime,
    registry: Registry,
    *,
    cwd: Path | None = None,
    verbose: bool = False,
    echo: Callable[[str], None] = print,
) -> list[PlanEntry]:
    """
    Load every source file of `names` in dependency order. The first file that
    fails to load aborts the rest.
    """
    cwd = Path(cwd or os.getcwd()).resolve()
    entries = plan_upgrade(names, runtime, cwd)
    roots = list(dict.fromkeys([cwd, *(_import_root(entry) for entry in entries)]))
    with contextlib.ExitStack() as stack:
        for root in reversed(roots):
            stack.enter_context(scoped_search_path(root))
        for entry in entries:
            if verbose:
                echo(str(entry.path))
            registry.load_file(entry.module, entry.path)
    logger.info("Reloaded %d source files", len(entries))
    return entries
