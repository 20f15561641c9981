"""Guardrails and race-aware git tooling for agents sharing one repository through issue worktrees."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("cathooks")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = ["__version__"]
