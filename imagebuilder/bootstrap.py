"""
bootstrap.py

Responsibility: make sure the package manager is installed in the build directory.

The setup marker is the idempotence probe: once it exists, later runs only
load the existing install and never download or install again.
"""

from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import urlparse

import requests

from imagebuilder.errors import EnvironmentSetupError, LoadError
from imagebuilder.runtime import PipRuntime

logger = logging.getLogger(__name__)

AUXILIARY_PACKAGE = "pip"
DEFAULT_PAYLOAD_NAME = "get-pip.py"
DOWNLOAD_TIMEOUT = 60


def payload_name(url: str) -> str:
    name = urlparse(url).path.rstrip("/").rsplit("/", 1)[-1]
    return name or DEFAULT_PAYLOAD_NAME


def download(url: str, dest: Path, *, timeout: int = DOWNLOAD_TIMEOUT) -> Path:
    """Stream `url` into `dest`, raising EnvironmentSetupError on any failure."""
    try:
        r = requests.get(url, stream=True, timeout=timeout, headers={"User-Agent": "imagebuilder"})
        r.raise_for_status()
        with dest.open("wb") as fh:
            for chunk in r.iter_content(chunk_size=64 * 1024):
                fh.write(chunk)
    except (requests.RequestException, OSError) as e:
        raise EnvironmentSetupError(f"Downloading {url} failed: {e}") from e
    return dest


def _require_auxiliary(runtime: PipRuntime) -> None:
    try:
        runtime.require(AUXILIARY_PACKAGE)
    except LoadError as e:
        raise EnvironmentSetupError(str(e)) from e


def ensure_environment(build_dir: Path, url: str, runtime: PipRuntime) -> PipRuntime:
    """
    Return a runtime whose install is present on disk and loaded in this process.
    """
    if runtime.is_set_up():
        logger.info("Using existing environment in %s", build_dir)
        runtime.load_setup()
        _require_auxiliary(runtime)
        return runtime

    logger.info("Bootstrapping package manager into %s", build_dir)
    try:
        Path(build_dir).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise EnvironmentSetupError(f"Cannot create build directory {build_dir}: {e}") from e

    payload = download(url, Path(build_dir) / payload_name(url))
    runtime.install_self(payload)
    runtime.write_setup()
    runtime.load_setup()
    _require_auxiliary(runtime)
    return runtime
