"""Require recorded user approval before a merge is started.

Two entry points reach the merge: the `merge-and-cleanup` command run through
Bash, and the merge subagent spawned through the Task tool. Both are gated on
evidence in the session transcript unless the project trusts the agent fully.
"""

from __future__ import annotations

from pathlib import Path
from typing import Mapping

from instrukt_ai_logging import get_logger

from cathooks.config.schema import TrustLevel
from cathooks.constants import APPROVAL_STEP, MERGE_CLEANUP_COMMAND, MERGE_SUBAGENT_TYPE
from cathooks.guardrails.base import GuardContext, GuardResult
from cathooks.paths import session_transcript_path
from cathooks.utils.transcript import find_approval

logger = get_logger(__name__)

_NOT_VERIFIABLE_TAIL = (
    "\n"
    "Trust level requires explicit approval before merge.\n"
    "\n"
    "BLOCKING: This merge attempt is blocked until user approval can be verified."
)


def _missing_approval_message(entry_point: str) -> str:
    return (
        "FAIL: Explicit user approval required before merge\n"
        "\n"
        f"Invoking {entry_point} directly bypasses the {APPROVAL_STEP}.\n"
        "\n"
        "BLOCKING: No approval detected in session history.\n"
        "\n"
        "The correct merge path is:\n"
        f"1. Complete {APPROVAL_STEP} - present AskUserQuestion to the user\n"
        '2. After user selects "Approve and merge", invoke merge via Task tool '
        f"(subagent_type: {MERGE_SUBAGENT_TYPE})\n"
        "\n"
        "Fail-fast principle: Unknown consent = No consent = STOP"
    )


def transcript_for(ctx: GuardContext) -> Path | None:
    if ctx.transcript_path is not None:
        return ctx.transcript_path
    if not ctx.session_id:
        return None
    return session_transcript_path(ctx.project_root, ctx.session_id)


def _require_approval(ctx: GuardContext, entry_point: str) -> GuardResult:
    if ctx.trust == TrustLevel.HIGH:
        return GuardResult.allow()

    if not ctx.session_id and ctx.transcript_path is None:
        return GuardResult.block("FAIL: Cannot verify user approval - session ID not available.\n" + _NOT_VERIFIABLE_TAIL)

    transcript = transcript_for(ctx)
    if transcript is None or not transcript.is_file():
        return GuardResult.block("FAIL: Cannot verify user approval - session file not found.\n" + _NOT_VERIFIABLE_TAIL)

    try:
        evidence = find_approval(transcript)
    except OSError as e:
        logger.warning("Cannot read transcript %s: %s", transcript, e)
        evidence = None

    if evidence is None:
        logger.info("Blocked %s: no approval in transcript", entry_point)
        return GuardResult.block(_missing_approval_message(entry_point))
    logger.info("Merge approved via %s", evidence)
    return GuardResult.allow()


def check_merge_cleanup_approval(command: str, ctx: GuardContext) -> GuardResult:
    """Gate Bash invocations of merge-and-cleanup on transcript approval."""
    if MERGE_CLEANUP_COMMAND not in command:
        return GuardResult.allow()
    return _require_approval(ctx, MERGE_CLEANUP_COMMAND)


def check_task_approval(tool_input: Mapping[str, object], ctx: GuardContext) -> GuardResult:
    """Gate spawning the merge subagent on transcript approval."""
    if tool_input.get("subagent_type") != MERGE_SUBAGENT_TYPE:
        return GuardResult.allow()
    return _require_approval(ctx, f"the {MERGE_SUBAGENT_TYPE} subagent")
