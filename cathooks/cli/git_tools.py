"""`cat-git`: race-aware amend, rebase and merge-and-cleanup."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from instrukt_ai_logging import get_logger
from pydantic import ValidationError

from cathooks.cli.common import add_version_argument, emit, emit_error, resolve_project_dir
from cathooks.config import load_project_config
from cathooks.constants import DEFAULT_REMOTE, MERGE_CLEANUP_COMMAND
from cathooks.core.git_safety import GitResult, amend_safe, rebase_safe
from cathooks.core.merge import merge_and_cleanup
from cathooks.errors import CatError
from cathooks.logging_config import setup_logging

logger = get_logger(__name__)


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="cat-git", description="Git operations with race detection")
    add_version_argument(parser)
    parser.add_argument("--log-level", default=None, help="Override CATHOOKS_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    amend = sub.add_parser("amend", help="Amend HEAD unless it is already pushed")
    amend.add_argument("-m", "--message", default=None, help="New commit message (default: keep)")
    amend.add_argument("-C", "--directory", default=None, help="Checkout to operate in (default: cwd)")

    rebase = sub.add_parser("rebase", help="Rebase behind a backup branch")
    rebase.add_argument("target", nargs="?", default=None, help="Target (default: the worktree's fork point)")
    rebase.add_argument("-C", "--directory", default=None, help="Checkout to operate in (default: cwd)")

    merge = sub.add_parser(MERGE_CLEANUP_COMMAND, help="Fast-forward an issue into its base branch and clean up")
    merge.add_argument("issue_id")
    merge.add_argument("session_id", nargs="?", default="")
    merge.add_argument("--worktree", default=None, help="Issue worktree (default: found via git worktree list)")
    merge.add_argument("--base-branch", default=None, help="Override the worktree's cat-base metadata")
    merge.add_argument("--remote", default=DEFAULT_REMOTE)
    merge.add_argument("--project-dir", default=None, help="Project directory (default: CLAUDE_PROJECT_DIR or cwd)")
    return parser.parse_args(argv)


def _auto_remove_worktrees(project_dir: Path) -> bool:
    try:
        return load_project_config(project_dir).auto_remove_worktrees
    except ValidationError as e:
        logger.warning("Invalid cat-config.json, removing worktree by default: %s", e)
        return True


def run(args: argparse.Namespace) -> GitResult:
    if args.command == "amend":
        return amend_safe(args.directory or os.getcwd(), args.message)
    if args.command == "rebase":
        return rebase_safe(args.directory or os.getcwd(), args.target)

    project_dir = resolve_project_dir(args.project_dir)
    return merge_and_cleanup(
        project_dir,
        args.issue_id,
        session_id=args.session_id,
        worktree=args.worktree,
        base_branch=args.base_branch,
        remote=args.remote,
        remove_worktree=_auto_remove_worktrees(project_dir),
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    setup_logging(args.log_level)
    try:
        result = run(args)
    except CatError as e:
        logger.warning("cat-git %s failed: %s", args.command, e)
        return emit_error(str(e))
    logger.info("cat-git %s -> %s", args.command, result.status.value)
    emit(result.to_dict())
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
