from __future__ import annotations

from typing import Optional


class ForitError(Exception):
    """Base class for errors raised by forit."""


class ConfigError(ForitError):
    """Invalid playbook file, config file or command line parameter."""


class TransportError(ForitError):
    """The control channel failed: network error or unexpected HTTP status."""

    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class PredicateError(ForitError):
    """A host glob could not be compiled."""


class ExecutionError(ForitError):
    """A shell command exited non-zero or could not be started."""

    def __init__(self, message: str, *, output: str = "", returncode: Optional[int] = None):
        super().__init__(message)
        self.output = output
        self.returncode = returncode


class FilesystemError(ForitError):
    """The playbook root or the inventory file is unusable."""
