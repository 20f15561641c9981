"""Helpers shared by the CLI entry points."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

from cathooks import __version__
from cathooks.core.worktrees import find_main_worktree


def add_version_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")


def resolve_project_dir(explicit: str | None = None, cwd: str | None = None) -> Path:
    """Pick the project directory: explicit argument, `CLAUDE_PROJECT_DIR`, the main checkout above cwd, else cwd."""
    if explicit:
        return Path(explicit).absolute()
    from_env = os.environ.get("CLAUDE_PROJECT_DIR")
    if from_env:
        return Path(from_env).absolute()
    start = Path(cwd or os.getcwd())
    return find_main_worktree(start) or start.absolute()


def emit(data: object) -> None:
    """Write a result as JSON on stdout."""
    sys.stdout.write(json.dumps(data, indent=2) + "\n")
    sys.stdout.flush()


def emit_error(message: str) -> int:
    emit({"status": "error", "message": message})
    return 1
