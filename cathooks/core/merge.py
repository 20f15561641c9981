"""Merge a finished issue branch into its base branch and tear the worktree down.

The merge is always a fast-forward of the base branch: linear history, and
the main checkout's ref, index and working tree move together. When the base
branch moved since the issue was forked, the issue branch is first rebased
(behind a backup branch) onto the new tip.
"""

from __future__ import annotations

import time
from pathlib import Path

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError
from instrukt_ai_logging import get_logger

from cathooks.constants import DEFAULT_REMOTE, INDEX_LOCK_RETRIES, INDEX_LOCK_RETRY_DELAY_SECONDS
from cathooks.core.git_safety import (
    GitResult,
    GitStatus,
    commit_exists,
    git_error_text,
    is_ancestor,
    open_repo,
    rebase_safe,
    rev_parse,
)
from cathooks.core.locks import LockStore
from cathooks.core.worktrees import dirty_paths, list_worktrees, read_base_branch
from cathooks.errors import CatError
from cathooks.paths import is_cat_project, worktree_path

logger = get_logger(__name__)


def _current_branch(repo: Repo) -> str | None:
    try:
        return repo.git.symbolic_ref("--quiet", "--short", "HEAD").strip() or None
    except GitCommandError:
        return None


def _find_issue_worktree(repo: Repo, project_dir: Path, issue_id: str) -> tuple[Path, str] | None:
    """Locate the issue's worktree and branch from `git worktree list`."""
    conventional = worktree_path(project_dir, issue_id).resolve()
    for path, branch in list_worktrees(repo).items():
        resolved = Path(path).resolve()
        if branch == issue_id or resolved == conventional:
            return resolved, branch or issue_id
    return None


def _move_branch(repo: Repo, branch: str, new_commit: str, old_commit: str) -> None:
    """Fast-forward `branch` to `new_commit`.

    When the branch is checked out in `repo`, `merge --ff-only` updates ref,
    index and working tree together (retrying on index.lock contention).
    Otherwise the ref is moved with a compare-and-swap `update-ref`.
    """
    if _current_branch(repo) != branch:
        repo.git.update_ref(f"refs/heads/{branch}", new_commit, old_commit)
        return

    for attempt in range(1, INDEX_LOCK_RETRIES + 1):
        try:
            repo.git.merge("--ff-only", new_commit)
            return
        except GitCommandError as e:
            if "index.lock" not in git_error_text(e) or attempt == INDEX_LOCK_RETRIES:
                raise
            logger.info("index.lock busy, retrying fast-forward (%d/%d)", attempt, INDEX_LOCK_RETRIES)
            time.sleep(INDEX_LOCK_RETRY_DELAY_SECONDS)


def _sync_base_with_remote(repo: Repo, base: str, remote: str) -> GitResult | None:
    """Bring the local base branch up to `<remote>/<base>`. Returns an ERROR result on failure."""
    remote_ref = f"{remote}/{base}"
    try:
        repo.git.fetch(remote, base)
    except GitCommandError as e:
        return GitResult.error(f"Failed to fetch {remote_ref}: {git_error_text(e)}", base_branch=base, remote=remote)

    try:
        local = rev_parse(repo, f"refs/heads/{base}")
        upstream = rev_parse(repo, f"refs/remotes/{remote_ref}")
    except GitCommandError as e:
        return GitResult.error(f"Cannot resolve {base} or {remote_ref}: {git_error_text(e)}", base_branch=base)

    try:
        up_to_date = local == upstream or is_ancestor(repo, upstream, local)
        fast_forwardable = up_to_date or is_ancestor(repo, local, upstream)
    except GitCommandError as e:
        return GitResult.error(
            f"Cannot compare {base} with {remote_ref}: {git_error_text(e)}", base_branch=base, remote=remote
        )
    if up_to_date:
        return None
    if not fast_forwardable:
        return GitResult.error(
            f"Local {base} has diverged from {remote_ref}: both have commits the other lacks. "
            f"Reconcile {base} with {remote_ref} manually, then retry.",
            base_branch=base,
            remote=remote,
        )
    try:
        _move_branch(repo, base, upstream, local)
    except GitCommandError as e:
        return GitResult.error(f"Failed to fast-forward {base} to {remote_ref}: {git_error_text(e)}", base_branch=base)
    logger.info("Fast-forwarded %s to %s", base, remote_ref)
    return None


def merge_and_cleanup(
    project_dir: str | Path,
    issue_id: str,
    session_id: str = "",
    worktree: str | Path | None = None,
    base_branch: str | None = None,
    remote: str = DEFAULT_REMOTE,
    remove_worktree: bool = True,
) -> GitResult:
    """Fast-forward the issue branch into its base branch, then remove worktree, branch and lock.

    Args:
        project_dir: Main checkout of a CAT project.
        issue_id: Issue whose branch is merged.
        session_id: Owner of the issue lock; the lock is released when given.
        worktree: Issue worktree; located via `git worktree list` when omitted.
        base_branch: Overrides the worktree's `cat-base` metadata.
        remote: Remote the base branch is synced with.
        remove_worktree: Remove the worktree and delete the branch after merging.
    """
    started = time.monotonic()
    project = Path(project_dir).absolute()
    if not is_cat_project(project):
        return GitResult.error(f"Not a CAT project: '{project}' (no .claude/cat directory)")

    try:
        repo = open_repo(project)
    except (InvalidGitRepositoryError, NoSuchPathError) as e:
        return GitResult.error(f"Not a git repository: {project} ({e})")

    if worktree is not None:
        issue_worktree = Path(worktree).resolve()
        try:
            issue_branch = _current_branch(Repo(issue_worktree)) or issue_id
        except (InvalidGitRepositoryError, NoSuchPathError):
            return GitResult.error(f"Worktree not found for issue {issue_id}: {issue_worktree}", issue_id=issue_id)
    else:
        try:
            found = _find_issue_worktree(repo, project, issue_id)
        except GitCommandError as e:
            return GitResult.error(f"Cannot list worktrees of {project}: {git_error_text(e)}", issue_id=issue_id)
        if found is None:
            return GitResult.error(f"Worktree not found for issue {issue_id}", issue_id=issue_id)
        issue_worktree, issue_branch = found

    base = base_branch or read_base_branch(issue_worktree)
    if not base:
        return GitResult.error(
            f"Base branch unknown for {issue_id}: cat-base metadata missing in worktree {issue_worktree}",
            issue_id=issue_id,
        )

    if not commit_exists(repo, f"refs/heads/{issue_branch}"):
        return GitResult.error(
            f"Issue branch {issue_branch} not found (is worktree {issue_worktree} on a detached HEAD?); "
            f"cannot merge into {base}",
            issue_id=issue_id,
            base_branch=base,
        )

    try:
        dirty = dirty_paths(Repo(issue_worktree))
    except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError) as e:
        return GitResult.error(f"Cannot read status of worktree {issue_worktree}: {e}", issue_id=issue_id)
    if dirty:
        return GitResult.error(
            f"Worktree {issue_worktree} has uncommitted changes: {', '.join(dirty)}",
            issue_id=issue_id,
            dirty_files=dirty,
        )

    failure = _sync_base_with_remote(repo, base, remote)
    if failure is not None:
        return failure

    # Rebase onto the current base tip when the issue was forked from an older one
    commits_rebased = 0
    try:
        needs_rebase = not is_ancestor(repo, base, issue_branch)
    except GitCommandError as e:
        return GitResult.error(
            f"Cannot compare {issue_branch} with {base}: {git_error_text(e)}", issue_id=issue_id, base_branch=base
        )
    if needs_rebase:
        logger.info("Rebasing %s onto %s before merge", issue_branch, base)
        rebased = rebase_safe(issue_worktree, base)
        if rebased.status != GitStatus.OK:
            return GitResult(rebased.status, {**rebased.fields, "issue_id": issue_id, "base_branch": base})
        commits_rebased = int(rebased.fields.get("commits_rebased", 0))  # type: ignore[arg-type]

    try:
        issue_head = rev_parse(repo, f"refs/heads/{issue_branch}")
        base_head = rev_parse(repo, f"refs/heads/{base}")
        fast_forward = is_ancestor(repo, base_head, issue_head)
    except GitCommandError as e:
        return GitResult.error(
            f"Cannot resolve {issue_branch} or {base}: {git_error_text(e)}", issue_id=issue_id, base_branch=base
        )
    if not fast_forward:
        return GitResult.error(
            f"{issue_branch} is not a descendant of {base} after rebase; refusing non-fast-forward merge",
            issue_id=issue_id,
            base_branch=base,
        )

    try:
        _move_branch(repo, base, issue_head, base_head)
    except GitCommandError as e:
        text = git_error_text(e)
        if "would be overwritten" in text:
            return GitResult.error(
                f"Fast-forward of {base} blocked by local changes in the main checkout: {text}",
                issue_id=issue_id,
                base_branch=base,
            )
        return GitResult.error(f"Fast-forward merge of {issue_branch} into {base} failed: {text}", issue_id=issue_id)

    try:
        merged_head = rev_parse(repo, f"refs/heads/{base}")
    except GitCommandError as e:
        return GitResult.error(
            f"Cannot verify {base} after merging {issue_branch}: {git_error_text(e)}",
            issue_id=issue_id,
            base_branch=base,
        )
    if merged_head != issue_head:
        return GitResult(
            GitStatus.RACE_DETECTED,
            {
                "issue_id": issue_id,
                "base_branch": base,
                "message": f"{base} moved during the merge; verify it contains {issue_head}",
            },
        )
    logger.info("Merged %s into %s at %s", issue_branch, base, issue_head[:8])

    worktree_removed = False
    branch_deleted = False
    if remove_worktree:
        try:
            repo.git.worktree("remove", str(issue_worktree))
            worktree_removed = True
        except GitCommandError as e:
            logger.warning("Could not remove worktree %s: %s", issue_worktree, git_error_text(e))
        if worktree_removed:
            try:
                repo.git.branch("-d", issue_branch)
                branch_deleted = True
            except GitCommandError as e:
                logger.warning("Could not delete branch %s: %s", issue_branch, git_error_text(e))

    lock_released = False
    if session_id:
        try:
            released = LockStore(project).release(issue_id, session_id)
        except CatError as e:
            logger.warning("Lock for %s not released: %s", issue_id, e)
        else:
            lock_released = released.status == "released"
            if not lock_released:
                logger.warning("Lock for %s not released: %s", issue_id, released.message)

    return GitResult(
        GitStatus.OK,
        {
            "issue_id": issue_id,
            "base_branch": base,
            "merged_commit": issue_head,
            "commits_rebased": commits_rebased,
            "worktree_removed": worktree_removed,
            "branch_deleted": branch_deleted,
            "lock_released": lock_released,
            "duration_seconds": round(time.monotonic() - started, 3),
        },
    )
