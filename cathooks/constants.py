"""Constants shared across cathooks.

Directory and file names here define the on-disk contract with agents and with
other tooling that reads the same project tree; do not rename casually.
"""

import re

# Project layout (relative to the project root)
CAT_DIR = ".claude/cat"
LOCKS_DIR_NAME = "locks"
WORKTREES_DIR_NAME = "worktrees"
ISSUES_DIR_NAME = "issues"
CONFIG_FILE_NAME = "cat-config.json"
LOCK_FILE_SUFFIX = ".lock"

# Per-worktree metadata, stored in the worktree's private git dir
BRANCH_POINT_FILE = "cat-branch-point"
BASE_BRANCH_FILE = "cat-base"

# Issue files
STATE_FILE_NAME = "STATE.md"
PLAN_FILE_NAME = "PLAN.md"

# Locks
LOCK_STALE_SECONDS = 4 * 60 * 60
MAX_LOCK_FILES = 1000
LOCK_ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Agent identity prefix on Bash commands: CAT_AGENT_ID=<id> <command>
AGENT_ID_ENV = "CAT_AGENT_ID"
AGENT_ID_PREFIX_RE = re.compile(r"^\s*CAT_AGENT_ID=(\S+)\s+(.*)$", re.DOTALL)
SUBAGENT_SEPARATOR = "/subagents/"

# Git
DEFAULT_REMOTE = "origin"
DEFAULT_BASE_BRANCH = "main"
BACKUP_BRANCH_PREFIX = "backup-before-rebase-"
INDEX_LOCK_RETRIES = 3
INDEX_LOCK_RETRY_DELAY_SECONDS = 0.2

# Approval gate
MERGE_CLEANUP_COMMAND = "merge-and-cleanup"
MERGE_SUBAGENT_TYPE = "cat:work-merge"
ASK_USER_TOOL = "AskUserQuestion"
# Transcript lines scanned for approval; older approvals do not count
TRANSCRIPT_RECENT_LINES = 75
APPROVAL_STEP = "Step 8 (Approval Gate) in work-with-issue"

# Output truncation for log lines carrying command text
LOG_COMMAND_MAX_CHARS = 200
