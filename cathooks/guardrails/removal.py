"""Block recursive deletes that would destroy a shell's cwd, the main checkout, or another agent's worktree."""

from __future__ import annotations

import os
import re
from enum import Enum
from pathlib import Path

from instrukt_ai_logging import get_logger

from cathooks.constants import AGENT_ID_PREFIX_RE, LOG_COMMAND_MAX_CHARS
from cathooks.core.locks import Lock, LockStore, is_owned_by, is_stale
from cathooks.core.shell import is_within, program_name, resolve_path, split_commands
from cathooks.core.worktrees import find_main_worktree
from cathooks.guardrails.base import GuardContext, GuardResult
from cathooks.paths import worktrees_dir

logger = get_logger(__name__)

_RECURSIVE_FLAG_RE = re.compile(r"(?:^|\s)-[^\s-]*[rR]")
# git global options that consume the next argument
_GIT_OPTIONS_WITH_VALUE = frozenset({"-C", "-c", "--git-dir", "--work-tree", "--namespace", "--config-env"})


class Protection(str, Enum):
    WORKING_DIRECTORY = "working_directory"
    MAIN_WORKTREE = "main_worktree"
    LOCKED = "locked"


def parse_agent_prefix(command: str) -> tuple[str, str]:
    """Split a leading `CAT_AGENT_ID=<id>` assignment off a command."""
    match = AGENT_ID_PREFIX_RE.match(command)
    if match:
        return match.group(1), match.group(2)
    return "", command


def has_recursive_flag(args: list[str]) -> bool:
    for arg in args:
        if arg == "--":
            return False
        if arg == "--recursive":
            return True
        if _RECURSIVE_FLAG_RE.match(arg):
            return True
    return False


def extract_rm_targets(command: str) -> list[str]:
    """Paths passed to recursive `rm` invocations. Flags may precede or follow paths."""
    targets: list[str] = []
    for tokens in split_commands(command):
        if program_name(tokens[0]) != "rm":
            continue
        args = tokens[1:]
        if not has_recursive_flag(args):
            continue
        end_of_options = False
        for arg in args:
            if arg == "--" and not end_of_options:
                end_of_options = True
                continue
            if not end_of_options and arg.startswith("-"):
                continue
            targets.append(arg)
    return targets


def extract_worktree_remove_targets(command: str) -> list[tuple[str, str | None]]:
    """Paths passed to `git worktree remove`, each paired with the `-C` directory it is relative to."""
    targets: list[tuple[str, str | None]] = []
    for tokens in split_commands(command):
        if program_name(tokens[0]) != "git":
            continue
        args = tokens[1:]
        base_dir: str | None = None
        i = 0
        while i < len(args) and args[i].startswith("-"):
            option = args[i]
            if option in _GIT_OPTIONS_WITH_VALUE and i + 1 < len(args):
                if option == "-C":
                    base_dir = args[i + 1] if base_dir is None else os.path.join(base_dir, args[i + 1])
                i += 2
            else:
                i += 1
        if args[i : i + 2] != ["worktree", "remove"]:
            continue
        for arg in args[i + 2 :]:
            if not arg.startswith("-"):
                targets.append((arg, base_dir))
                break
    return targets


def _real(path: Path) -> Path:
    try:
        return Path(os.path.realpath(path))
    except (OSError, ValueError):
        return path


def _lock_worktrees(lock: Lock, project_root: Path) -> list[Path]:
    paths = [Path(p) for p in lock.worktrees]
    paths.append(worktrees_dir(project_root) / lock.issue_id)
    return [p for p in paths if p.is_dir()]


def protected_paths(
    ctx: GuardContext, agent_id: str, store: LockStore | None = None
) -> list[tuple[Path, Protection, Lock | None]]:
    """Paths that must survive, in priority order: cwd, main checkout, foreign locked worktrees."""
    protected: list[tuple[Path, Protection, Lock | None]] = []
    seen: set[Path] = set()

    def add(path: Path, reason: Protection, lock: Lock | None = None) -> None:
        real = _real(path)
        if real not in seen:
            seen.add(real)
            protected.append((real, reason, lock))

    if not ctx.working_directory:
        return protected
    cwd = Path(ctx.working_directory)
    if cwd.exists():
        add(cwd, Protection.WORKING_DIRECTORY)

    main = find_main_worktree(cwd) or (find_main_worktree(ctx.project_dir) if ctx.project_dir else None)
    if main is None:
        return protected
    add(main, Protection.MAIN_WORKTREE)

    store = store or LockStore(main, clock=ctx.clock)
    now = ctx.clock()
    for lock in store.iter_locks():
        if is_stale(lock, now):
            continue
        for worktree in _lock_worktrees(lock, main):
            if is_owned_by(lock, str(worktree), ctx.session_id, agent_id):
                continue
            add(worktree, Protection.LOCKED, lock)
    return protected


def _lock_owner(lock: Lock | None) -> str:
    if lock is None:
        return "(unknown)"
    for agent_id in lock.worktrees.values():
        if agent_id:
            return agent_id
    return lock.session_id or "(unknown)"


def _block_message(
    reason: Protection,
    command_type: str,
    target: str,
    target_path: Path,
    ctx: GuardContext,
    agent_id: str,
    protected: Path,
    lock: Lock | None,
) -> str:
    if reason == Protection.WORKING_DIRECTORY:
        return (
            "UNSAFE DIRECTORY REMOVAL BLOCKED\n"
            "\n"
            f"Attempted: {command_type} {target}\n"
            "Problem:   Your shell's working directory is inside the deletion target\n"
            f"Working directory: {ctx.working_directory}\n"
            f"Target:    {target_path}\n"
            "\n"
            "WHY THIS IS BLOCKED:\n"
            "- Deleting a directory containing your current location corrupts the shell session\n"
            '- All subsequent Bash commands will fail with "Exit code 1"\n'
            "\n"
            "WHAT TO DO:\n"
            "1. Change directory first: cd /workspace\n"
            f"2. Then retry: {command_type} {target}\n"
        )
    if reason == Protection.MAIN_WORKTREE:
        return (
            "UNSAFE DIRECTORY REMOVAL BLOCKED\n"
            "\n"
            f"Attempted: {command_type} {target}\n"
            "Problem:   Target is the main git worktree\n"
            f"Target:    {target_path}\n"
            "\n"
            "WHY THIS IS BLOCKED:\n"
            "- Deleting the main git worktree would destroy the entire repository\n"
            "\n"
            "WHAT TO DO:\n"
            "- This operation is not allowed. Use a more specific target path.\n"
        )
    issue_id = lock.issue_id if lock is not None else protected.name
    return (
        "UNSAFE DIRECTORY REMOVAL BLOCKED\n"
        "\n"
        f"Attempted: {command_type} {target}\n"
        "Problem:   Worktree is locked by another agent\n"
        f"Lock owner: {_lock_owner(lock)}\n"
        f"Your ID:    {agent_id or '(not provided)'}\n"
        f"Target:     {target_path}\n"
        f"Protected:  {protected}\n"
        "\n"
        "WHY THIS IS BLOCKED:\n"
        "- Another agent may be actively using this worktree\n"
        "- Deleting it could corrupt that agent's shell and lose uncommitted work\n"
        "\n"
        "WHAT TO DO:\n"
        "1. If you own this worktree, prefix your command:\n"
        f"   CAT_AGENT_ID=<your-agent-id> {command_type} {target}\n"
        "2. If another agent owns it, release the lock first:\n"
        f"   issue-lock force-release {issue_id}\n"
        "3. Or use /cat:cleanup to release all stale locks\n"
    )


def _check_target(
    target: str,
    command_type: str,
    ctx: GuardContext,
    agent_id: str,
    protected: list[tuple[Path, Protection, Lock | None]],
    base_dir: str | Path,
) -> GuardResult | None:
    try:
        target_path = Path(os.path.realpath(resolve_path(target, base_dir)))
    except (OSError, ValueError) as e:
        logger.warning("Blocked %s of unresolvable path %r: %s", command_type, target[:LOG_COMMAND_MAX_CHARS], e)
        return GuardResult.block(
            "UNSAFE DIRECTORY REMOVAL BLOCKED\n"
            "\n"
            f"Attempted: {command_type} {target!r}\n"
            "Problem:   Target path cannot be resolved\n"
            "\n"
            "WHAT TO DO:\n"
            "- Pass a plain path without control characters.\n"
        )
    for path, reason, lock in protected:
        if is_within(path, target_path):
            logger.info("Blocked %s of %s: %s", command_type, target_path, reason.value)
            return GuardResult.block(
                _block_message(reason, command_type, target, target_path, ctx, agent_id, path, lock)
            )
    return None


def check_unsafe_removal(command: str, ctx: GuardContext, store: LockStore | None = None) -> GuardResult:
    """Vet `rm -r` and `git worktree remove` against the paths that must survive.

    The caller's agent identity comes from a `CAT_AGENT_ID=` prefix on the
    command; without it, worktrees locked with an agent identity are foreign.
    """
    agent_id, raw_command = parse_agent_prefix(command)
    rm_targets = extract_rm_targets(raw_command)
    worktree_targets = extract_worktree_remove_targets(raw_command)
    if not rm_targets and not worktree_targets:
        return GuardResult.allow()

    protected = protected_paths(ctx, agent_id, store)
    if not protected:
        return GuardResult.allow()

    logger.debug("Checking removal: %s", raw_command[:LOG_COMMAND_MAX_CHARS])
    cwd = ctx.working_directory or "/"
    for target in rm_targets:
        result = _check_target(target, "rm (recursive)", ctx, agent_id, protected, cwd)
        if result is not None:
            return result
    for target, chdir in worktree_targets:
        base_dir = resolve_path(chdir, cwd) if chdir else cwd
        result = _check_target(target, "git worktree remove", ctx, agent_id, protected, base_dir)
        if result is not None:
            return result
    return GuardResult.allow()
