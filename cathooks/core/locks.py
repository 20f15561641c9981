"""Per-issue lock files.

A lock is advisory: nothing here stops a process from touching a worktree.
Its safety comes from the guardrails and the git wrappers consulting it before
destructive actions, so every predicate fails toward "protected" and "not
mine" when the file is incomplete.

Lock file shape (`.claude/cat/locks/<issue-id>.lock`):

    {
      "session_id": "<uuid>",
      "worktrees": {"/abs/worktree/path": "<session>/subagents/<name>" | ""},
      "created_at": 1700000000,
      "created_iso": "2023-11-14T22:13:20Z"
    }
"""

from __future__ import annotations

import json
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator

from instrukt_ai_logging import get_logger

from cathooks.constants import LOCK_FILE_SUFFIX, LOCK_ISO_FORMAT, LOCK_STALE_SECONDS, MAX_LOCK_FILES
from cathooks.errors import InvalidIssueIdError, InvalidSessionIdError
from cathooks.paths import lock_path, locks_dir, sanitize_issue_id

logger = get_logger(__name__)

_UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")

LOCKED_GUIDANCE = (
    "Do NOT investigate, remove, or question this lock. Execute a different issue instead. "
    "If you believe this is a stale lock from a crashed session, ask the USER to run /cat:cleanup."
)


@dataclass
class Lock:
    """Parsed lock file. Absent or malformed fields stay None/empty."""

    issue_id: str
    session_id: str | None = None
    worktrees: dict[str, str] = field(default_factory=dict)
    created_at: int | None = None
    created_iso: str | None = None

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {"worktrees": dict(self.worktrees)}
        if self.session_id is not None:
            data["session_id"] = self.session_id
        if self.created_at is not None:
            data["created_at"] = self.created_at
        if self.created_iso is not None:
            data["created_iso"] = self.created_iso
        return data

    def age_seconds(self, now: float) -> int | None:
        if self.created_at is None:
            return None
        return int(now - self.created_at)


def is_stale(lock: Lock, now: float) -> bool:
    """True when the lock is older than four hours. A lock without `created_at` is never stale."""
    if lock.created_at is None:
        return False
    return now - lock.created_at > LOCK_STALE_SECONDS


def _stored_agent_id(lock: Lock, worktree_path: str | Path | None) -> str:
    if worktree_path is not None:
        stored = lock.worktrees.get(str(worktree_path))
        if stored:
            return stored
    for agent_id in lock.worktrees.values():
        if agent_id:
            return agent_id
    return ""


def is_owned_by(lock: Lock, worktree_path: str | Path | None, session_id: str | None, agent_id: str | None) -> bool:
    """Decide whether the caller owns the lock.

    When the lock records an agent identity for the worktree, only that exact
    identity owns it; a caller without one is foreign. Locks recorded at
    session granularity fall back to comparing session ids. Missing data on
    either side means not owned.
    """
    stored_agent = _stored_agent_id(lock, worktree_path)
    if stored_agent:
        return bool(agent_id) and agent_id == stored_agent
    if not lock.session_id or not session_id:
        return False
    return lock.session_id == session_id


def parse_lock(issue_id: str, raw: str) -> Lock:
    """Parse lock JSON, keeping only well-typed fields.

    Corrupt content yields a Lock with no owner and no timestamp, which every
    predicate treats as fresh and foreign.
    """
    lock = Lock(issue_id=issue_id)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Malformed lock file for %s; treating as protected", issue_id)
        return lock
    if not isinstance(data, dict):
        return lock

    session_id = data.get("session_id")
    if isinstance(session_id, str) and session_id:
        lock.session_id = session_id

    created_at = data.get("created_at")
    if isinstance(created_at, (int, float)) and not isinstance(created_at, bool):
        lock.created_at = int(created_at)

    created_iso = data.get("created_iso")
    if isinstance(created_iso, str):
        lock.created_iso = created_iso

    worktrees = data.get("worktrees")
    if isinstance(worktrees, dict):
        lock.worktrees = {str(k): v for k, v in worktrees.items() if isinstance(v, str)}
    else:
        # Older lock files carried a single "worktree" path without agent identity.
        legacy = data.get("worktree")
        if isinstance(legacy, str) and legacy:
            lock.worktrees = {legacy: ""}
    return lock


def validate_session_id(session_id: str) -> None:
    if not _UUID_RE.match(session_id or ""):
        raise InvalidSessionIdError(
            f"Invalid session_id format: '{session_id}'. Expected UUID. "
            "Did you swap issue_id and session_id arguments?"
        )


def _validate_issue_id(issue_id: str) -> None:
    if not issue_id or not issue_id.strip():
        raise InvalidIssueIdError("issue_id must not be blank")


@dataclass(frozen=True)
class LockResult:
    """Outcome of a lock operation, serialized as flat JSON."""

    status: str
    message: str
    details: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {"status": self.status, "message": self.message, **self.details}


@dataclass(frozen=True)
class LockListEntry:
    issue_id: str
    session_id: str | None
    age_seconds: int | None
    worktrees: dict[str, str]

    def to_dict(self) -> dict[str, object]:
        return {
            "issue": self.issue_id,
            "session": self.session_id,
            "age_seconds": self.age_seconds,
            "worktrees": self.worktrees,
        }


class LockStore:
    """Reads and writes the lock directory of one project.

    `clock` returns epoch seconds and is injectable for tests.
    """

    def __init__(self, project_dir: str | Path, clock: Callable[[], float] = time.time) -> None:
        self.project_dir = Path(project_dir)
        self.lock_dir = locks_dir(self.project_dir)
        self.clock = clock

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _is_safe_lock_file(self, path: Path) -> bool:
        """Reject symlinks and anything resolving outside the lock directory."""
        if path.is_symlink():
            logger.warning("Ignoring symlinked lock file %s", path)
            return False
        try:
            path.resolve().relative_to(self.lock_dir.resolve())
        except (OSError, ValueError):
            logger.warning("Ignoring lock file outside %s: %s", self.lock_dir, path)
            return False
        return True

    def read(self, issue_id: str) -> Lock | None:
        """Return the lock for an issue, or None when no lock file exists.

        An unreadable or corrupt file still returns a (protected) Lock.
        """
        path = lock_path(self.project_dir, issue_id)
        if not path.exists():
            return None
        if not self._is_safe_lock_file(path):
            return Lock(issue_id=sanitize_issue_id(issue_id))
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("Cannot read lock file %s: %s", path, e)
            return Lock(issue_id=sanitize_issue_id(issue_id))
        return parse_lock(sanitize_issue_id(issue_id), raw)

    def iter_locks(self) -> Iterator[Lock]:
        """Yield every readable lock, skipping malformed files. Capped at MAX_LOCK_FILES."""
        if not self.lock_dir.is_dir():
            return
        count = 0
        for path in sorted(self.lock_dir.iterdir()):
            if path.suffix != LOCK_FILE_SUFFIX:
                continue
            if count >= MAX_LOCK_FILES:
                logger.warning("More than %d lock files in %s; ignoring the rest", MAX_LOCK_FILES, self.lock_dir)
                return
            if not self._is_safe_lock_file(path):
                continue
            try:
                raw = path.read_text(encoding="utf-8")
                data = json.loads(raw)
            except (OSError, json.JSONDecodeError) as e:
                logger.debug("Skipping malformed lock file %s: %s", path, e)
                continue
            if not isinstance(data, dict):
                continue
            count += 1
            yield parse_lock(path.stem, raw)

    def find_issue_for_session(self, session_id: str) -> Lock | None:
        """Return the lock held by a session, if any."""
        if not session_id:
            return None
        for lock in self.iter_locks():
            if lock.session_id == session_id:
                return lock
        return None

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def _write_atomic(self, path: Path, data: dict[str, object], *, exclusive: bool) -> bool:
        """Write JSON via a temp file.

        With `exclusive`, the final name is created with a hard link so an
        existing lock is never overwritten; returns False if one appeared.
        """
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        try:
            if exclusive:
                try:
                    os.link(tmp, path)
                except FileExistsError:
                    return False
            else:
                os.replace(tmp, path)
                return True
        finally:
            tmp.unlink(missing_ok=True)
        return True

    def _locked_result(self, lock: Lock) -> LockResult:
        now = self.clock()
        return LockResult(
            "locked",
            "Issue locked by another session",
            {
                "owner": lock.session_id or "unknown",
                "stale": is_stale(lock, now),
                "action": "FIND_ANOTHER_ISSUE",
                "guidance": LOCKED_GUIDANCE,
            },
        )

    def acquire(self, issue_id: str, session_id: str, worktree: str = "", agent_id: str = "") -> LockResult:
        """Claim an issue for a session.

        Idempotent for the owning session. A competing writer that wins the
        create race is reported as the owner.
        """
        _validate_issue_id(issue_id)
        validate_session_id(session_id)

        existing = self.read(issue_id)
        if existing is not None:
            if existing.session_id == session_id:
                return LockResult("acquired", "Lock already held by this session")
            return self._locked_result(existing)

        now = self.clock()
        lock = Lock(
            issue_id=sanitize_issue_id(issue_id),
            session_id=session_id,
            worktrees={worktree: agent_id} if worktree else {},
            created_at=int(now),
            created_iso=datetime.fromtimestamp(now, tz=timezone.utc).strftime(LOCK_ISO_FORMAT),
        )
        path = lock_path(self.project_dir, issue_id)
        if not self._write_atomic(path, lock.to_dict(), exclusive=True):
            winner = self.read(issue_id)
            if winner is not None and winner.session_id == session_id:
                return LockResult("acquired", "Lock already held by this session")
            logger.info("Lost lock race for %s", issue_id)
            return self._locked_result(winner or Lock(issue_id=lock.issue_id))

        logger.info("Lock acquired: issue=%s session=%s", issue_id, session_id[:8])
        return LockResult("acquired", "Lock acquired successfully")

    def update(self, issue_id: str, session_id: str, worktree: str, agent_id: str = "") -> LockResult:
        """Record a worktree (and optional agent identity) on a lock the session owns."""
        _validate_issue_id(issue_id)
        validate_session_id(session_id)

        existing = self.read(issue_id)
        if existing is None:
            return LockResult("error", f"No lock exists for issue {issue_id}")
        if existing.session_id != session_id:
            return LockResult("error", f"Lock owned by different session: {existing.session_id or 'unknown'}")

        existing.worktrees[worktree] = agent_id
        self._write_atomic(lock_path(self.project_dir, issue_id), existing.to_dict(), exclusive=False)
        logger.info("Lock updated: issue=%s worktree=%s", issue_id, worktree)
        return LockResult("updated", "Lock updated with worktree", {"worktree": worktree})

    def release(self, issue_id: str, session_id: str) -> LockResult:
        """Delete the lock if the session owns it."""
        _validate_issue_id(issue_id)
        validate_session_id(session_id)

        existing = self.read(issue_id)
        if existing is None:
            return LockResult("released", "No lock exists")
        if existing.session_id != session_id:
            return LockResult("error", f"Lock owned by different session: {existing.session_id or 'unknown'}")

        lock_path(self.project_dir, issue_id).unlink(missing_ok=True)
        logger.info("Lock released: issue=%s session=%s", issue_id, session_id[:8])
        return LockResult("released", "Lock released successfully")

    def force_release(self, issue_id: str) -> LockResult:
        """Delete the lock regardless of owner. A user action for crashed sessions."""
        _validate_issue_id(issue_id)

        existing = self.read(issue_id)
        if existing is None:
            return LockResult("released", "No lock exists")

        lock_path(self.project_dir, issue_id).unlink(missing_ok=True)
        owner = existing.session_id or "unknown"
        logger.warning("Lock force-released: issue=%s former_owner=%s", issue_id, owner)
        return LockResult("released", f"Lock forcibly released (was owned by {owner})")

    def check(self, issue_id: str) -> dict[str, object]:
        _validate_issue_id(issue_id)

        existing = self.read(issue_id)
        if existing is None:
            return {"locked": False, "message": "Issue not locked"}
        now = self.clock()
        return {
            "locked": True,
            "session_id": existing.session_id,
            "age_seconds": existing.age_seconds(now),
            "stale": is_stale(existing, now),
            "worktrees": existing.worktrees,
        }

    def list_locks(self) -> list[LockListEntry]:
        now = self.clock()
        return [
            LockListEntry(lock.issue_id, lock.session_id, lock.age_seconds(now), lock.worktrees)
            for lock in self.iter_locks()
        ]
