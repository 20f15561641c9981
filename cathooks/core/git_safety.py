"""History-rewriting git operations with race detection.

Each wrapper runs PRECHECK -> MUTATE -> POSTCHECK and ends in one terminal
status. Postchecks re-validate assumptions after the mutation so a competitor
acting during the window is reported, never papered over: a completed amend
or a backup branch is left in place for manual recovery, and nothing here
retries a history-rewriting command.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError
from instrukt_ai_logging import get_logger

from cathooks.constants import BACKUP_BRANCH_PREFIX, BRANCH_POINT_FILE
from cathooks.core.worktrees import git_dir, read_fork_point

logger = get_logger(__name__)

# Test seam: runs between MUTATE and POSTCHECK.
AfterMutation = Optional[Callable[[], None]]


class GitStatus(str, Enum):
    OK = "OK"
    CONFLICT = "CONFLICT"
    RACE_DETECTED = "RACE_DETECTED"
    ERROR = "ERROR"
    ALREADY_PUSHED = "ALREADY_PUSHED"


@dataclass(frozen=True)
class GitResult:
    status: GitStatus
    fields: dict[str, object] = field(default_factory=dict)

    @classmethod
    def error(cls, message: str, **fields: object) -> GitResult:
        return cls(GitStatus.ERROR, {"message": message, **fields})

    @property
    def ok(self) -> bool:
        return self.status == GitStatus.OK

    def to_dict(self) -> dict[str, object]:
        return {"status": self.status.value, **self.fields}


def git_error_text(exc: GitCommandError) -> str:
    """Best human-readable text of a failed git command."""
    for stream in (exc.stderr, exc.stdout):
        text = str(stream or "").strip()
        if text.startswith("stderr:") or text.startswith("stdout:"):
            text = text.split(":", 1)[1].strip().strip("'").strip()
        if text:
            return text
    return str(exc)


def open_repo(directory: str | Path) -> Repo:
    """Open the repository containing `directory`.

    Raises:
        InvalidGitRepositoryError, NoSuchPathError: When it is not a git checkout.
    """
    return Repo(directory, search_parent_directories=True)


def rev_parse(repo: Repo, rev: str) -> str:
    return repo.git.rev_parse(rev).strip()


def commit_exists(repo: Repo, rev: str) -> bool:
    try:
        repo.git.rev_parse("--verify", "--quiet", f"{rev}^{{commit}}")
    except GitCommandError:
        return False
    return True


def is_ancestor(repo: Repo, ancestor: str, descendant: str) -> bool:
    """`git merge-base --is-ancestor`: exit 1 means no, anything else non-zero is a failure."""
    try:
        repo.git.merge_base("--is-ancestor", ancestor, descendant)
    except GitCommandError as e:
        if e.status == 1:
            return False
        raise
    return True


def tracking_ref(repo: Repo) -> str | None:
    """Remote tracking ref of the current branch (`@{push}`, else `@{upstream}`), e.g. `origin/main`."""
    for spec in ("@{push}", "@{upstream}"):
        try:
            ref = repo.git.rev_parse("--abbrev-ref", "--symbolic-full-name", spec).strip()
        except GitCommandError:
            continue
        if ref and ref != spec:
            return ref
    return None


def refresh_tracking_ref(repo: Repo, ref: str) -> None:
    """Fetch the branch behind a tracking ref so postchecks see pushes made elsewhere.

    Fetch failures (offline, no remote) leave the local ref as the best
    available evidence.
    """
    remote, _, branch = ref.partition("/")
    if not branch or remote not in [r.name for r in repo.remotes]:
        return
    try:
        repo.git.fetch("--quiet", remote, branch)
    except GitCommandError as e:
        logger.debug("Fetch of %s failed; using local tracking ref: %s", ref, git_error_text(e))


# =============================================================================
# Amend
# =============================================================================


def amend_safe(directory: str | Path, message: str | None = None, after_amend: AfterMutation = None) -> GitResult:
    """Amend HEAD only if it has not been published, and detect a publish during the amend.

    Args:
        directory: Any path inside the checkout.
        message: New commit message; None keeps the current one.
        after_amend: Test seam run between the amend and the postcheck.

    Returns:
        ALREADY_PUSHED before any mutation when HEAD is reachable from the
        tracking ref; RACE_DETECTED (amend kept) when the old HEAD became
        reachable during the amend; OK otherwise.
    """
    try:
        repo = open_repo(directory)
        old_head = rev_parse(repo, "HEAD")
    except (InvalidGitRepositoryError, NoSuchPathError) as e:
        return GitResult.error(f"Not a git repository: {directory} ({e})")
    except GitCommandError as e:
        return GitResult.error(f"Cannot resolve HEAD: {git_error_text(e)}")

    remote_ref = tracking_ref(repo)
    if remote_ref:
        refresh_tracking_ref(repo, remote_ref)
        try:
            pushed = is_ancestor(repo, old_head, remote_ref)
        except GitCommandError as e:
            return GitResult.error(f"Cannot compare HEAD with {remote_ref}: {git_error_text(e)}")
        if pushed:
            logger.info("Refusing amend: %s already on %s", old_head[:8], remote_ref)
            return GitResult(
                GitStatus.ALREADY_PUSHED,
                {
                    "head": old_head,
                    "remote_ref": remote_ref,
                    "message": "Commit already pushed to remote. Amend would create divergent history.",
                },
            )

    args = ["--amend", "--no-edit"] if message is None else ["--amend", "-m", message]
    try:
        repo.git.commit(*args)
        new_head = rev_parse(repo, "HEAD")
    except GitCommandError as e:
        return GitResult.error(f"Amend failed: {git_error_text(e)}", old_head=old_head)

    if after_amend is not None:
        after_amend()

    remote_ref = remote_ref or tracking_ref(repo)
    if remote_ref:
        refresh_tracking_ref(repo, remote_ref)
        try:
            raced = commit_exists(repo, remote_ref) and is_ancestor(repo, old_head, remote_ref)
        except GitCommandError as e:
            return GitResult.error(
                f"Amend completed but {remote_ref} could not be re-checked: {git_error_text(e)}",
                old_head=old_head,
                new_head=new_head,
            )
        if raced:
            logger.warning("Race: %s was pushed to %s during amend", old_head[:8], remote_ref)
            return GitResult(
                GitStatus.RACE_DETECTED,
                {
                    "old_head": old_head,
                    "new_head": new_head,
                    "remote_ref": remote_ref,
                    "message": "Original commit was pushed during amend. Force-with-lease push needed.",
                    "recovery": "git push --force-with-lease",
                },
            )

    logger.info("Amended %s -> %s", old_head[:8], new_head[:8])
    return GitResult(GitStatus.OK, {"old_head": old_head, "new_head": new_head, "race_detected": False})


# =============================================================================
# Rebase
# =============================================================================


def _backup_branch_name(repo: Repo) -> str:
    base = BACKUP_BRANCH_PREFIX + datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    existing = {head.name for head in repo.heads}
    name = base
    suffix = 2
    while name in existing:
        name = f"{base}-{suffix}"
        suffix += 1
    return name


def _diff_signature(repo: Repo, a: str, b: str) -> list[str]:
    """Changed lines of `a..b`, without hunk positions or blob ids."""
    diff = repo.git.diff("--no-color", "--no-ext-diff", "--no-renames", a, b)
    return [
        line
        for line in diff.splitlines()
        if line.startswith(("diff --git", "+", "-")) and not line.startswith("index ")
    ]


def _conflicting_files(repo: Repo) -> list[str]:
    try:
        output = repo.git.diff("--name-only", "--diff-filter=U")
    except GitCommandError:
        return []
    return [line.strip() for line in output.splitlines() if line.strip()]


def _abort_rebase(repo: Repo) -> None:
    try:
        repo.git.rebase("--abort")
    except GitCommandError as e:
        logger.debug("rebase --abort: %s", git_error_text(e))


def rebase_safe(directory: str | Path, target: str | None = None) -> GitResult:
    """Rebase the current branch onto `target` (default: the worktree's fork point) behind a backup branch.

    Returns:
        CONFLICT (rebase aborted, backup kept) with the conflicting files;
        ERROR for a missing fork point or target, or when the branch's own
        changes differ after the rebase (backup kept); OK with
        `commits_rebased` and `backup_cleaned` otherwise.
    """
    try:
        repo = open_repo(directory)
    except (InvalidGitRepositoryError, NoSuchPathError) as e:
        return GitResult.error(f"Not a git repository: {directory} ({e})")

    if not target:
        target = read_fork_point(directory)
        if not target:
            try:
                expected = git_dir(directory) / BRANCH_POINT_FILE
            except GitCommandError:
                expected = Path(directory) / ".git" / BRANCH_POINT_FILE
            return GitResult.error(
                f"{BRANCH_POINT_FILE} file not found: {expected}. "
                "Recreate the worktree with work-prepare, or pass the target branch explicitly."
            )

    if not commit_exists(repo, target):
        return GitResult.error(f"Target branch does not exist: {target}", target_branch=target)

    try:
        merge_base = repo.git.merge_base(target, "HEAD").strip()
    except GitCommandError as e:
        return GitResult.error(
            f"HEAD shares no history with {target}: {git_error_text(e)}",
            target_branch=target,
        )

    # PRECHECK: backup at current HEAD
    backup = _backup_branch_name(repo)
    try:
        repo.git.branch(backup, "HEAD")
        repo.git.show_ref("--verify", "--quiet", f"refs/heads/{backup}")
    except GitCommandError as e:
        return GitResult.error(f"Failed to create backup branch {backup}: {git_error_text(e)}")

    # MUTATE
    try:
        repo.git.rebase(target)
    except GitCommandError as e:
        conflicts = _conflicting_files(repo)
        _abort_rebase(repo)
        if conflicts:
            logger.info("Rebase onto %s conflicted in %d files; backup %s kept", target, len(conflicts), backup)
            return GitResult(
                GitStatus.CONFLICT,
                {
                    "target_branch": target,
                    "backup_branch": backup,
                    "conflicting_files": conflicts,
                    "message": f"Rebase conflict - backup preserved at {backup}",
                },
            )
        return GitResult.error(
            f"Rebase onto {target} failed: {git_error_text(e)}",
            target_branch=target,
            backup_branch=backup,
        )

    # POSTCHECK: the branch's own changes must survive the replay
    try:
        content_changed = _diff_signature(repo, merge_base, backup) != _diff_signature(repo, target, "HEAD")
        diff_stat = repo.git.diff("--stat", backup, "HEAD") if content_changed else ""
        commits_rebased = int(repo.git.rev_list("--count", f"{target}..HEAD").strip() or 0)
    except GitCommandError as e:
        return GitResult.error(
            f"Could not verify rebase onto {target}: {git_error_text(e)}",
            target_branch=target,
            backup_branch=backup,
        )
    if content_changed:
        logger.warning("Content changed during rebase onto %s; backup %s kept", target, backup)
        return GitResult.error(
            "Content changed during rebase - backup preserved for investigation",
            target_branch=target,
            backup_branch=backup,
            diff_stat=diff_stat,
        )

    try:
        repo.git.branch("-D", backup)
        backup_cleaned = True
    except GitCommandError as e:
        logger.warning("Could not delete backup branch %s: %s", backup, git_error_text(e))
        backup_cleaned = False

    logger.info("Rebased %d commits onto %s", commits_rebased, target)
    return GitResult(
        GitStatus.OK,
        {"target_branch": target, "commits_rebased": commits_rebased, "backup_cleaned": backup_cleaned},
    )
