"""
orchestrator.py

Responsibility: sequence the pipeline stages for one invocation.

build:   bootstrap -> fetch external sources -> load packages -> write image
upgrade: reload project sources in dependency order -> write image

Each stage advances `state`; the first failure moves it to FAILED and the
error propagates to the caller.
"""

from __future__ import annotations

import enum
import logging
from pathlib import Path
from typing import Callable

from imagebuilder import bootstrap, fetcher, image, loader, planner
from imagebuilder.config import Config
from imagebuilder.registry import Registry
from imagebuilder.runtime import PipRuntime, module_name_for

logger = logging.getLogger(__name__)


class State(enum.Enum):
    IDLE = "idle"
    CONFIG_LOADED = "config-loaded"
    ENVIRONMENT_READY = "environment-ready"
    DEPENDENCIES_PRESENT = "dependencies-present"
    PACKAGES_LOADED = "packages-loaded"
    RELOADED_SOURCE = "reloaded-source"
    SERIALIZED = "serialized"
    FAILED = "failed"


class Orchestrator:
    def __init__(
        self,
        config: Config,
        *,
        runtime: PipRuntime | None = None,
        registry: Registry | None = None,
    ) -> None:
        self.state = State.IDLE
        self.config = config
        self.runtime = runtime or PipRuntime.for_config(config)
        self.registry = registry or Registry()
        self.state = State.CONFIG_LOADED

    def _advance(self, state: State, step: Callable[[], object]) -> object:
        try:
            result = step()
        except Exception:
            self.state = State.FAILED
            raise
        self.state = state
        logger.debug("-> %s", state.value)
        return result

    @property
    def default_module(self) -> str | None:
        if not self.config.packages:
            return None
        return module_name_for(self.config.packages[0])

    def _write_image(self) -> Path:
        return image.write_image(
            self.registry,
            self.config.entry_point,
            self.config.output_base,
            self.config.options,
            site_dir=self.config.site_dir,
            default_module=self.default_module,
        )

    def build(self) -> Path:
        cfg = self.config
        self._advance(
            State.ENVIRONMENT_READY,
            lambda: bootstrap.ensure_environment(cfg.build_path, cfg.bootstrap_url, self.runtime),
        )
        self._advance(
            State.DEPENDENCIES_PRESENT,
            lambda: fetcher.fetch_all(cfg.external_sources, cfg.local_projects_dir),
        )
        self._advance(
            State.PACKAGES_LOADED,
            lambda: loader.load_packages(cfg.packages, self.runtime, self.registry),
        )
        return self._advance(State.SERIALIZED, self._write_image)

    def _reload(self, verbose: bool, echo: Callable[[str], None]) -> list[planner.PlanEntry]:
        # Installed dependencies from the previous build stay importable; nothing is re-installed.
        if self.runtime.is_set_up():
            self.runtime.load_setup()
        return planner.upgrade_load(
            self.config.packages,
            self.runtime,
            self.registry,
            verbose=verbose,
            echo=echo,
        )

    def upgrade(self, *, verbose: bool = False, echo: Callable[[str], None] = print) -> Path:
        self._advance(State.RELOADED_SOURCE, lambda: self._reload(verbose, echo))
        return self._advance(State.SERIALIZED, self._write_image)
