"""`cat-work`: list the next claimable issue, or prepare a workspace for it."""

from __future__ import annotations

import argparse
import sys
from typing import Optional, Sequence

from instrukt_ai_logging import get_logger

from cathooks.cli.common import add_version_argument, emit, emit_error, resolve_project_dir
from cathooks.core.discovery import IssueResolver
from cathooks.core.work_prepare import WorkPreparer, parse_scope
from cathooks.errors import CatError, NotACatProjectError
from cathooks.logging_config import setup_logging
from cathooks.paths import is_cat_project

logger = get_logger(__name__)


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="cat-work", description="Find and prepare CAT issues")
    add_version_argument(parser)
    parser.add_argument("--project-dir", default=None, help="Project directory (default: CLAUDE_PROJECT_DIR or cwd)")
    parser.add_argument("--log-level", default=None, help="Override CATHOOKS_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    nxt = sub.add_parser("next", help="Show the next claimable issue without claiming it")
    nxt.add_argument("target", nargs="?", default="", help="Issue id, version (2 or 2.1) or bare issue name")
    nxt.add_argument("--exclude", default="", help="Glob of issue names to skip")
    nxt.add_argument("--override-postconditions", action="store_true", help="Ignore post-condition gating")

    prepare = sub.add_parser("prepare", help="Claim the next issue and create its worktree")
    prepare.add_argument("session_id")
    prepare.add_argument("target", nargs="?", default="", help="Issue id, version (2 or 2.1) or bare issue name")
    prepare.add_argument("--exclude", default="", help="Glob of issue names to skip")
    return parser.parse_args(argv)


def run(args: argparse.Namespace) -> dict[str, object]:
    project_dir = resolve_project_dir(args.project_dir)
    if args.command == "prepare":
        return WorkPreparer(project_dir).prepare(args.session_id, args.target, exclude_pattern=args.exclude)

    if not is_cat_project(project_dir):
        raise NotACatProjectError(str(project_dir))
    scope, target = parse_scope(args.target)
    result = IssueResolver(project_dir).find_next_issue(
        scope,
        target,
        exclude_pattern=args.exclude,
        override_postconditions=args.override_postconditions,
    )
    return result.to_dict()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    setup_logging(args.log_level)
    try:
        data = run(args)
    except CatError as e:
        logger.warning("cat-work %s failed: %s", args.command, e)
        return emit_error(str(e))
    emit(data)
    return 1 if str(data.get("status", "")).lower() == "error" else 0


if __name__ == "__main__":
    sys.exit(main())
