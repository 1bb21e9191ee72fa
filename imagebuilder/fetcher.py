"""
fetcher.py

Responsibility: clone external source repositories into `local-projects`.

A checkout directory that already exists is never touched again, so re-running
a build is cheap. The flip side: a half-finished clone from an interrupted run
is also treated as present.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Iterable
from urllib.parse import urlparse

from imagebuilder.config import ExternalSource
from imagebuilder.errors import FetchError
from imagebuilder.process import CommandError, run

logger = logging.getLogger(__name__)


def checkout_name(url: str) -> str:
    """
    Final path segment of the URL, without a trailing `.git`.
    Works for scp-style remotes (git@host:owner/name.git) too.
    """
    path = urlparse(url).path if "://" in url else url.split(":", 1)[-1]
    name = path.rstrip("/").rsplit("/", 1)[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    if not name:
        raise FetchError(f"Cannot derive a checkout name from {url!r}")
    return name


def fetch_git(source: ExternalSource, target_dir: Path, *, runner: Callable[..., str] = run) -> bool:
    """Clone one source. Returns False when the checkout already existed."""
    dest = Path(target_dir) / checkout_name(source.url)
    if dest.exists():
        logger.debug("Skipping %s: %s already exists", source.url, dest)
        return False

    cmd = ["git", "clone"]
    if source.branch:
        cmd += ["--branch", source.branch]
    cmd += [source.url, str(dest)]

    logger.info("Cloning %s into %s", source.url, dest)
    try:
        runner(cmd, cwd=Path(target_dir))
    except CommandError as e:
        raise FetchError(f"Cloning {source.url} failed: {e}") from e
    return True


_FETCHERS: dict[str, Callable[..., bool]] = {
    "git": fetch_git,
}


def fetch_all(
    sources: Iterable[ExternalSource],
    target_dir: Path,
    *,
    runner: Callable[..., str] = run,
) -> list[Path]:
    """
    Fetch every source, in order. Returns the checkouts created by this call.
    Sources with an unrecognized method are skipped.
    """
    target_dir = Path(target_dir)
    created: list[Path] = []
    for source in sources:
        fetcher = _FETCHERS.get(source.method)
        if fetcher is None:
            logger.warning("Skipping %s: unsupported fetch method %r", source.url, source.method)
            continue
        target_dir.mkdir(parents=True, exist_ok=True)
        if fetcher(source, target_dir, runner=runner):
            created.append(target_dir / checkout_name(source.url))
    return created
