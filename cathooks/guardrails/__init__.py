"""Guardrail engine: vet proposed tool calls before they run.

Every check is a pure function of the proposed action, a GuardContext and the
lock files on disk, and returns a GuardResult. Policy blocks are values,
never exceptions.
"""

from __future__ import annotations

from typing import Callable, Mapping

from instrukt_ai_logging import get_logger

from cathooks.guardrails.approval import check_merge_cleanup_approval, check_task_approval
from cathooks.guardrails.base import GuardContext, GuardResult
from cathooks.guardrails.isolation import FILE_WRITE_TOOLS, check_file_write, check_worktree_isolation
from cathooks.guardrails.removal import check_unsafe_removal

logger = get_logger(__name__)

BashCheck = Callable[[str, GuardContext], GuardResult]

BASH_CHECKS: tuple[BashCheck, ...] = (
    check_unsafe_removal,
    check_worktree_isolation,
    check_merge_cleanup_approval,
)


def check_bash_command(command: str, ctx: GuardContext) -> GuardResult:
    """Run every Bash check in order; the first block wins."""
    for check in BASH_CHECKS:
        result = check(command, ctx)
        if result.blocked:
            return result
    return GuardResult.allow()


def check_tool_call(tool_name: str, tool_input: Mapping[str, object], ctx: GuardContext) -> GuardResult:
    """Dispatch a PreToolUse call to the checks for its tool."""
    if tool_name == "Bash":
        command = tool_input.get("command")
        return check_bash_command(command, ctx) if isinstance(command, str) else GuardResult.allow()
    if tool_name in FILE_WRITE_TOOLS:
        file_path = tool_input.get("file_path") or tool_input.get("notebook_path")
        return check_file_write(file_path, ctx) if isinstance(file_path, str) else GuardResult.allow()
    if tool_name == "Task":
        return check_task_approval(tool_input, ctx)
    return GuardResult.allow()


__all__ = [
    "BASH_CHECKS",
    "GuardContext",
    "GuardResult",
    "check_bash_command",
    "check_file_write",
    "check_merge_cleanup_approval",
    "check_task_approval",
    "check_tool_call",
    "check_unsafe_removal",
    "check_worktree_isolation",
]
