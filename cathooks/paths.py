"""Project-layout path helpers.

Every path under `.claude/cat` is derived here so the lock store, the issue
resolver and the guardrails agree on where shared state lives.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

from cathooks.constants import (
    CAT_DIR,
    CONFIG_FILE_NAME,
    ISSUES_DIR_NAME,
    LOCK_FILE_SUFFIX,
    LOCKS_DIR_NAME,
    WORKTREES_DIR_NAME,
)


def cat_dir(project_dir: str | Path) -> Path:
    return Path(project_dir) / CAT_DIR


def is_cat_project(project_dir: str | Path) -> bool:
    """Return True when the directory carries a `.claude/cat` directory."""
    return cat_dir(project_dir).is_dir()


def locks_dir(project_dir: str | Path) -> Path:
    return cat_dir(project_dir) / LOCKS_DIR_NAME


def worktrees_dir(project_dir: str | Path) -> Path:
    return cat_dir(project_dir) / WORKTREES_DIR_NAME


def issues_dir(project_dir: str | Path) -> Path:
    return cat_dir(project_dir) / ISSUES_DIR_NAME


def config_path(project_dir: str | Path) -> Path:
    return cat_dir(project_dir) / CONFIG_FILE_NAME


def sanitize_issue_id(issue_id: str) -> str:
    """Make an issue id safe to use as a single path component."""
    return issue_id.replace("..", "-").replace("/", "-").replace("\\", "-")


def lock_path(project_dir: str | Path, issue_id: str) -> Path:
    return locks_dir(project_dir) / f"{sanitize_issue_id(issue_id)}{LOCK_FILE_SUFFIX}"


def worktree_path(project_dir: str | Path, issue_id: str) -> Path:
    return worktrees_dir(project_dir) / sanitize_issue_id(issue_id)


def claude_config_dir() -> Path:
    """Return the agent CLI's config dir (`CLAUDE_CONFIG_DIR`, default `~/.claude`)."""
    configured = os.environ.get("CLAUDE_CONFIG_DIR")
    if configured:
        return Path(configured).expanduser()
    return Path("~/.claude").expanduser()


def encode_project_dir(project_dir: str | Path) -> str:
    """Encode a project path the way session transcripts are bucketed on disk."""
    return re.sub(r"[/.]", "-", str(Path(project_dir).absolute()))


def session_transcript_path(project_dir: str | Path, session_id: str) -> Path:
    return claude_config_dir() / "projects" / encode_project_dir(project_dir) / f"{session_id}.jsonl"
