"""
errors.py

Responsibility: the error taxonomy shared by every pipeline stage.

Each stage raises its own subclass; `cli.main` catches `ImageBuilderError`
exactly once and turns it into the subclass's exit code.
"""

from __future__ import annotations


class ImageBuilderError(RuntimeError):
    exit_code = 1


class ConfigError(ImageBuilderError, ValueError):
    """The configuration file is unreadable or does not describe a valid build."""

    exit_code = 3


class EnvironmentSetupError(ImageBuilderError):
    """Bootstrapping the package manager into the build directory failed."""

    exit_code = 4


class FetchError(ImageBuilderError):
    """Cloning an external source failed."""

    exit_code = 5


class LoadError(ImageBuilderError):
    """A package or an upgrade source file could not be loaded."""

    exit_code = 6


class NameNotFoundError(LoadError, LookupError):
    """An identifier did not resolve to a loaded callable."""

    exit_code = 8


class SerializationError(ImageBuilderError):
    """Writing the image file failed."""

    exit_code = 7
