"""PreToolUse hook receiver: vet one proposed tool call read from stdin."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional, Sequence, cast

from instrukt_ai_logging import get_logger
from pydantic import ValidationError

from cathooks.cli.common import add_version_argument, emit, resolve_project_dir
from cathooks.config import TrustLevel, load_project_config
from cathooks.constants import LOG_COMMAND_MAX_CHARS
from cathooks.guardrails import GuardContext, GuardResult, check_tool_call
from cathooks.logging_config import setup_logging

logger = get_logger(__name__)

PRE_TOOL_USE = "PreToolUse"


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="cat-hook", description="cathooks PreToolUse guardrail hook")
    add_version_argument(parser)
    parser.add_argument("--project-dir", default=None, help="Project directory (default: CLAUDE_PROJECT_DIR or cwd)")
    parser.add_argument("--log-level", default=None, help="Override CATHOOKS_LOG_LEVEL")
    return parser.parse_args(argv)


# Raw stdin JSON payload at process boundary.
def _read_stdin() -> dict[str, object]:
    data: dict[str, object] = {}
    if not sys.stdin.isatty():
        raw_input = sys.stdin.read()
        if raw_input.strip():
            parsed = json.loads(raw_input)
            if not isinstance(parsed, dict):
                raise ValueError("Hook stdin payload must be a JSON object")
            data = cast(dict[str, object], parsed)
    return data


def build_context(payload: dict[str, object], project_dir: Path) -> GuardContext:
    cwd = payload.get("cwd")
    session_id = payload.get("session_id")
    transcript = payload.get("transcript_path")
    try:
        trust = load_project_config(project_dir).trust
    except ValidationError as e:
        logger.warning("Invalid cat-config.json in %s, using default trust: %s", project_dir, e)
        trust = TrustLevel.MEDIUM
    return GuardContext(
        working_directory=cwd if isinstance(cwd, str) and cwd else str(project_dir),
        session_id=session_id if isinstance(session_id, str) else "",
        project_dir=str(project_dir),
        trust=trust,
        transcript_path=Path(transcript) if isinstance(transcript, str) and transcript else None,
    )


def deny_output(result: GuardResult, event_name: str = PRE_TOOL_USE) -> dict[str, object]:
    return {
        "hookSpecificOutput": {
            "hookEventName": event_name,
            "permissionDecision": "deny",
            "permissionDecisionReason": result.reason,
        }
    }


def handle_payload(payload: dict[str, object], project_dir: Path) -> GuardResult:
    tool_name = payload.get("tool_name")
    tool_input = payload.get("tool_input")
    if not isinstance(tool_name, str) or not isinstance(tool_input, dict):
        return GuardResult.allow()

    ctx = build_context(payload, project_dir)
    result = check_tool_call(tool_name, tool_input, ctx)
    if result.blocked:
        summary = str(tool_input.get("command") or tool_input.get("file_path") or "")[:LOG_COMMAND_MAX_CHARS]
        logger.info("Blocked %s call: %s", tool_name, summary)
    return result


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    setup_logging(args.log_level)

    try:
        payload = _read_stdin()
    except (json.JSONDecodeError, ValueError) as e:
        logger.warning("Ignoring unparseable hook payload: %s", e)
        return 0

    cwd = payload.get("cwd")
    project_dir = resolve_project_dir(args.project_dir, cwd if isinstance(cwd, str) else None)
    try:
        result = handle_payload(payload, project_dir)
    except Exception as e:  # noqa: BLE001 - deny on unexpected faults
        logger.exception("Guardrail check failed")
        result = GuardResult.block(f"Guardrail check failed ({type(e).__name__}: {e}); refusing the tool call.")
    if result.blocked:
        event_name = payload.get("hook_event_name")
        emit(deny_output(result, event_name if isinstance(event_name, str) and event_name else PRE_TOOL_USE))
    return 0


if __name__ == "__main__":
    sys.exit(main())
