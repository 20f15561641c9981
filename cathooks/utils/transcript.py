"""Scan agent session transcripts (JSONL) for user approval.

Transcripts are append-only, one JSON object per line, and may be written
while we read them. Only the most recent lines are consulted, so approval
given long ago in a session does not authorize a later merge. Malformed
lines are skipped.
"""

import json
import re
from collections import deque
from pathlib import Path
from typing import Iterator, Optional

from instrukt_ai_logging import get_logger

from cathooks.constants import ASK_USER_TOOL, TRANSCRIPT_RECENT_LINES

logger = get_logger(__name__)

APPROVAL_PHRASES = (
    "approve and merge",
    "approve merge",
    "approved merge",
    "approved and merge",
    "merge and approve",
    "merge approved",
)

# Answers picked in an AskUserQuestion wizard
_WIZARD_APPROVAL_RE = re.compile(r"\b(approved?|yes|proceed)\b")
# `"<question>"="<answer>"` pairs in AskUserQuestion results
_ANSWER_PAIR_RE = re.compile(r'"[^"]*"="([^"]*)"')


def iter_transcript_entries(transcript_path: Path, recent_lines: Optional[int] = None) -> Iterator[dict[str, object]]:
    """Yield transcript entries, skipping blank and malformed lines.

    With `recent_lines`, only the last that many lines of the file are read.
    """
    with open(transcript_path, encoding="utf-8", errors="replace") as f:
        lines = deque(f, maxlen=recent_lines) if recent_lines is not None else f
        for line in lines:
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(entry, dict):
                yield entry


def _role(entry: dict[str, object]) -> Optional[str]:
    message = entry.get("message")
    if isinstance(message, dict) and isinstance(message.get("role"), str):
        return str(message["role"])
    entry_type = entry.get("type")
    return entry_type if isinstance(entry_type, str) else None


def _content_blocks(entry: dict[str, object]) -> list[object]:
    message = entry.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        return content
    return []


def _block_text(value: object) -> str:
    """Flatten a tool_result content value (string or list of text blocks)."""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = []
        for item in value:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
            elif isinstance(item, str):
                parts.append(item)
        return " ".join(parts)
    return ""


def has_approval_phrase(text: str) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in APPROVAL_PHRASES)


def is_wizard_approval(result_text: str) -> bool:
    """True when an AskUserQuestion answer approves.

    Only the selected answers are inspected when the result lists them, so a
    question that merely mentions approval does not count.
    """
    answers = _ANSWER_PAIR_RE.findall(result_text)
    candidates = answers if answers else [result_text]
    return any(has_approval_phrase(answer) or _WIZARD_APPROVAL_RE.search(answer.lower()) for answer in candidates)


def find_approval(transcript_path: Path, recent_lines: Optional[int] = TRANSCRIPT_RECENT_LINES) -> Optional[str]:
    """Return a short description of the first approval evidence in recent history, or None.

    Evidence is either a user text block with approval phrasing, or an
    assistant AskUserQuestion tool_use whose matching user tool_result
    (by tool_use_id) carries an approving answer.
    """
    pending_questions: set[str] = set()
    for entry in iter_transcript_entries(transcript_path, recent_lines):
        role = _role(entry)
        for block in _content_blocks(entry):
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if role == "assistant" and block_type == "tool_use" and block.get("name") == ASK_USER_TOOL:
                tool_use_id = block.get("id")
                if isinstance(tool_use_id, str):
                    pending_questions.add(tool_use_id)
            elif role == "user" and block_type == "tool_result":
                tool_use_id = block.get("tool_use_id")
                if tool_use_id in pending_questions:
                    pending_questions.discard(str(tool_use_id))
                    if is_wizard_approval(_block_text(block.get("content"))):
                        return f"{ASK_USER_TOOL} answer ({tool_use_id})"
            elif role == "user" and block_type == "text":
                text = block.get("text")
                if isinstance(text, str) and has_approval_phrase(text):
                    return "user message"
    return None
