"""Keep a session's writes inside its issue worktree.

Isolation only governs the project tree: writes outside the project are
allowed, and a session with no worktree on disk yet has no boundary.
"""

from __future__ import annotations

import os
from pathlib import Path

from instrukt_ai_logging import get_logger

from cathooks.constants import LOG_COMMAND_MAX_CHARS
from cathooks.core.locks import LockStore
from cathooks.core.shell import (
    has_shell_expansion,
    program_name,
    redirect_targets,
    resolve_path,
    split_commands,
    tokenize,
)
from cathooks.core.worktrees import WorktreeContext
from cathooks.guardrails.base import GuardContext, GuardResult

logger = get_logger(__name__)

FILE_WRITE_TOOLS = frozenset({"Edit", "Write", "MultiEdit", "NotebookEdit"})

_TEE_FLAGS = frozenset({"-a", "-A", "--append", "-i", "--ignore-interrupts", "-p"})


def _real(path: str | Path) -> Path:
    return Path(os.path.realpath(path))


def _cp_mv_destination(args: list[str]) -> list[str]:
    """Destination of a cp/mv invocation: `-t DIR`, `--target-directory=DIR`, else the last operand."""
    operands: list[str] = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--":
            operands.extend(args[i + 1 :])
            break
        if arg in ("-t", "--target-directory") and i + 1 < len(args):
            return [args[i + 1]]
        if arg.startswith("--target-directory="):
            return [arg.split("=", 1)[1]]
        if arg.startswith("-") and arg != "-":
            i += 1
            continue
        operands.append(arg)
        i += 1
    if len(operands) < 2:
        return []
    return [operands[-1]]


def extract_write_targets(command: str) -> list[tuple[str, str]]:
    """File-write sinks of a command as (raw text, unquoted value) pairs.

    Sinks: `>`/`>>`/`&>` redirections, every `tee` operand, and the
    destination of `cp`/`mv`.
    """
    targets: list[tuple[str, str]] = []
    for raw in redirect_targets(command):
        unquoted = tokenize(raw)
        targets.append((raw, unquoted[0] if unquoted else raw))

    for tokens in split_commands(command):
        program = program_name(tokens[0])
        args = tokens[1:]
        if program == "tee":
            targets.extend((arg, arg) for arg in args if arg not in _TEE_FLAGS and not arg.startswith("-"))
        elif program in ("cp", "mv"):
            targets.extend((dest, dest) for dest in _cp_mv_destination(args))
    return targets


def _expansion_block(raw: str, context: WorktreeContext) -> GuardResult:
    return GuardResult.block(
        f"WARNING: Cannot verify Bash redirect to variable-expanded path: {raw}\n"
        "\n"
        "If this targets a path outside your worktree, it bypasses worktree isolation.\n"
        "Use the Edit or Write tools with an explicit absolute path instead:\n"
        f"  Use: {context.worktree_path}/plugin/file.txt\n"
        "  Not: $CLAUDE_PROJECT_DIR/plugin/file.txt"
    )


def _classify(path: Path, context: WorktreeContext) -> Path | None:
    """Return the corrected path when `path` violates isolation, else None."""
    real = _real(path)
    worktree = _real(context.worktree_path)
    project = _real(context.project_dir)
    real_context = WorktreeContext(context.issue_id, worktree, project)
    if real_context.contains(real):
        return None
    if not real_context.in_project(real):
        return None
    return real_context.corrected_path(real)


def _unresolvable_block(raw: str, context: WorktreeContext) -> GuardResult:
    return GuardResult.block(
        f"ERROR: Cannot resolve write target: {raw!r}\n"
        "\n"
        f"You are working in worktree: {context.worktree_path}\n"
        "Use the Edit or Write tools with a plain absolute path inside it."
    )


def _session_context(ctx: GuardContext, store: LockStore | None) -> WorktreeContext | None:
    return WorktreeContext.for_session(ctx.project_root, ctx.session_id, store)


def check_worktree_isolation(command: str, ctx: GuardContext, store: LockStore | None = None) -> GuardResult:
    """Block Bash writes that land in the project but outside the session's worktree."""
    targets = extract_write_targets(command)
    if not targets:
        return GuardResult.allow()
    context = _session_context(ctx, store)
    if context is None:
        return GuardResult.allow()

    for raw, value in targets:
        if has_shell_expansion(raw):
            logger.info("Blocked unverifiable write target: %s", raw[:LOG_COMMAND_MAX_CHARS])
            return _expansion_block(raw, context)

        target = resolve_path(value, ctx.working_directory or context.worktree_path)
        try:
            corrected = _classify(target, context)
        except (OSError, ValueError) as e:
            logger.warning("Blocked unresolvable write target %r: %s", raw[:LOG_COMMAND_MAX_CHARS], e)
            return _unresolvable_block(raw, context)
        if corrected is None:
            continue
        logger.info("Blocked Bash write outside worktree: %s", target)
        return GuardResult.block(
            "ERROR: Worktree isolation violation (Bash file write)\n"
            "\n"
            f"You are working in worktree: {context.worktree_path}\n"
            f"But attempting to write outside it via Bash: {target}\n"
            "\n"
            "Use the corrected worktree path instead:\n"
            f"  {corrected}\n"
            "\n"
            "Do NOT use shell redirects, tee, cp, or mv to write files outside the worktree. "
            "Use the Edit or Write tools with the corrected path."
        )
    return GuardResult.allow()


def check_file_write(file_path: str, ctx: GuardContext, store: LockStore | None = None) -> GuardResult:
    """Block Edit/Write tool calls that target the project outside the session's worktree."""
    if not file_path:
        return GuardResult.allow()
    context = _session_context(ctx, store)
    if context is None:
        return GuardResult.allow()

    target = resolve_path(file_path, ctx.working_directory or context.worktree_path)
    try:
        corrected = _classify(target, context)
    except (OSError, ValueError) as e:
        logger.warning("Blocked unresolvable file path %r: %s", file_path[:LOG_COMMAND_MAX_CHARS], e)
        return _unresolvable_block(file_path, context)
    if corrected is None:
        return GuardResult.allow()
    logger.info("Blocked file write outside worktree: %s", target)
    return GuardResult.block(
        "ERROR: Worktree isolation violation\n"
        "\n"
        f"You are working in worktree: {context.worktree_path}\n"
        f"But attempting to edit outside it: {target}\n"
        "\n"
        "Use the corrected worktree path instead:\n"
        f"  {corrected}\n"
        "\n"
        "Do NOT bypass this hook using Bash (cat, echo, tee, etc.) to write the file directly. "
        "The worktree exists to isolate changes from the main workspace until merge."
    )
