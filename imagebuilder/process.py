"""
process.py

Responsibility: run external commands (pip, git, the bootstrap payload) and block
until they finish. Callers decide which error type a failure becomes.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)


class CommandError(RuntimeError):
    def __init__(self, cmd: list[str], returncode: int, output: str) -> None:
        self.cmd = cmd
        self.returncode = returncode
        self.output = output
        super().__init__(f"Command failed ({returncode}): {' '.join(cmd)}\n\n{output}".rstrip())


def run(cmd: list[str], *, cwd: Path | None = None, env: dict[str, str] | None = None) -> str:
    """
    Run a subprocess command, raising a CommandError on failure.
    Returns the combined stdout/stderr text.
    """
    logger.debug("$ %s", " ".join(cmd))
    try:
        proc = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd is not None else None,
            env=env,
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        raise CommandError(cmd, e.returncode, e.stdout or "") from e
    except OSError as e:
        raise CommandError(cmd, -1, str(e)) from e
    return proc.stdout or ""
