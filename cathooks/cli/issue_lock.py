"""`cat-issue-lock`: manage per-issue locks from the shell."""

from __future__ import annotations

import argparse
import sys
from typing import Optional, Sequence

from instrukt_ai_logging import get_logger

from cathooks.cli.common import add_version_argument, emit, emit_error, resolve_project_dir
from cathooks.core.locks import LockStore
from cathooks.errors import CatError
from cathooks.logging_config import setup_logging

logger = get_logger(__name__)


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="cat-issue-lock", description="Manage CAT issue locks")
    add_version_argument(parser)
    parser.add_argument("--project-dir", default=None, help="Project directory (default: CLAUDE_PROJECT_DIR or cwd)")
    parser.add_argument("--log-level", default=None, help="Override CATHOOKS_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    acquire = sub.add_parser("acquire", help="Claim an issue for a session")
    acquire.add_argument("issue_id")
    acquire.add_argument("session_id")
    acquire.add_argument("worktree", nargs="?", default="")
    acquire.add_argument("--agent-id", default="", help="Agent identity recorded for the worktree")

    update = sub.add_parser("update", help="Record a worktree on a held lock")
    update.add_argument("issue_id")
    update.add_argument("session_id")
    update.add_argument("worktree")
    update.add_argument("--agent-id", default="")

    release = sub.add_parser("release", help="Release a lock held by the session")
    release.add_argument("issue_id")
    release.add_argument("session_id")

    force = sub.add_parser("force-release", help="Release a lock regardless of owner")
    force.add_argument("issue_id")

    check = sub.add_parser("check", help="Show the lock of one issue")
    check.add_argument("issue_id")

    sub.add_parser("list", help="List all locks")
    return parser.parse_args(argv)


def run(args: argparse.Namespace) -> tuple[object, int]:
    store = LockStore(resolve_project_dir(args.project_dir))
    if args.command == "acquire":
        result = store.acquire(args.issue_id, args.session_id, args.worktree, args.agent_id)
    elif args.command == "update":
        result = store.update(args.issue_id, args.session_id, args.worktree, args.agent_id)
    elif args.command == "release":
        result = store.release(args.issue_id, args.session_id)
    elif args.command == "force-release":
        result = store.force_release(args.issue_id)
    elif args.command == "check":
        return store.check(args.issue_id), 0
    else:
        return [entry.to_dict() for entry in store.list_locks()], 0
    return result.to_dict(), 0 if result.status in ("acquired", "updated", "released") else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    setup_logging(args.log_level)
    try:
        data, code = run(args)
    except CatError as e:
        logger.warning("cat-issue-lock %s failed: %s", args.command, e)
        return emit_error(str(e))
    emit(data)
    return code


if __name__ == "__main__":
    sys.exit(main())
