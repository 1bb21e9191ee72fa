"""
imagebuilder package

Turns a declarative build description into a standalone, re-runnable
application image, and refreshes an existing image with newer source.

Key responsibilities are split across modules:
- `config.py`: parse the build description into a `Config`
- `bootstrap.py`: install pip into the build directory (once)
- `fetcher.py`: clone external sources into `local-projects`
- `loader.py`: install and import the configured packages
- `planner.py`: dependency-ordered source reload for `upgrade`
- `image.py`: write the image file and its restart hook
- `orchestrator.py`: sequence the stages for `build` and `upgrade`
- `cli.py`: CLI entrypoint and error-to-exit-code translation
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
