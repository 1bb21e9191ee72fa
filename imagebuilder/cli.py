"""
cli.py

Responsibility: CLI entrypoint for imagebuilder.

Commands:
- build:   bootstrap pip, fetch external sources, install packages, write the image
- upgrade: reload project sources in dependency order, rewrite the image
- plan:    print the upgrade load order without loading anything

This module parses arguments and turns pipeline errors into exit codes; the
stages themselves live in `orchestrator.py`.
"""

from __future__ import annotations

import argparse
import logging
import pdb
import sys
import traceback

from imagebuilder import __version__
from imagebuilder.config import Config, parse_config
from imagebuilder.errors import ImageBuilderError
from imagebuilder.orchestrator import Orchestrator
from imagebuilder.planner import plan_upgrade
from imagebuilder.runtime import PipRuntime


_LOG_LEVELS = {-2: logging.ERROR, -1: logging.WARNING, 0: logging.INFO, 1: logging.DEBUG}


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """
    Send the `imagebuilder` logger to stderr. Each -v raises and each -q lowers
    the level by one step from INFO; debug output also names the stage module.
    """
    step = max(-2, min(1, verbose - quiet))
    fmt = "%(name)s: %(message)s" if step > 0 else "%(message)s"

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt))

    logger = logging.getLogger("imagebuilder")
    logger.handlers[:] = [handler]
    logger.setLevel(_LOG_LEVELS[step])
    logger.propagate = False
    return logger


def _load_config(args: argparse.Namespace) -> Config:
    config = parse_config(args.config)
    return config.with_overrides(build_dir=args.build_dir, output_base=args.output)


def build_cmd(args: argparse.Namespace) -> int:
    path = Orchestrator(_load_config(args)).build()
    print(path)
    return 0


def upgrade_cmd(args: argparse.Namespace) -> int:
    path = Orchestrator(_load_config(args)).upgrade(verbose=args.verbose > 0)
    print(path)
    return 0


def plan_cmd(args: argparse.Namespace) -> int:
    config = _load_config(args)
    for entry in plan_upgrade(config.packages, PipRuntime.for_config(config)):
        print(f"{entry.module}\t{entry.path}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("config", help="Path to the build description (YAML, or markdown with YAML frontmatter)")
    common.add_argument("--build-dir", default=None, help="Build directory (overrides build-dir)")
    common.add_argument("-o", "--output", default=None, help="Image base name (overrides output-file)")
    common.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging; upgrade also prints each file as it loads",
    )
    common.add_argument("-q", "--quiet", action="count", default=0, help="Reduce logging. Pass twice for errors only.")
    common.add_argument(
        "--debug",
        action="store_true",
        help="On failure, print the traceback and open the debugger; the exit code is returned once it is left",
    )

    p = argparse.ArgumentParser(prog="imagebuilder", description="Build and upgrade standalone Python application images")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = p.add_subparsers(dest="command", required=True)

    b = sub.add_parser("build", parents=[common], help="Bootstrap, fetch, install and write the image")
    b.set_defaults(func=build_cmd)

    u = sub.add_parser("upgrade", parents=[common], help="Reload project sources and rewrite the image")
    u.set_defaults(func=upgrade_cmd)

    pl = sub.add_parser("plan", parents=[common], help="Print the source load order used by upgrade")
    pl.set_defaults(func=plan_cmd)
    return p


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(verbose=args.verbose, quiet=args.quiet)
    try:
        return int(args.func(args))
    except ImageBuilderError as e:
        if args.debug:
            # The traceback and the debugger replace the one-line error report.
            traceback.print_exc()
            pdb.post_mortem(e.__traceback__)
            return e.exit_code
        print(f"error: {e}", file=sys.stderr)
        return e.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
