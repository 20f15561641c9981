"""Prepare an agent's workspace: discover an issue, claim it, create its worktree."""

from __future__ import annotations

from pathlib import Path

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError
from instrukt_ai_logging import get_logger

from cathooks.constants import PLAN_FILE_NAME
from cathooks.core.discovery import (
    AlreadyComplete,
    Blocked,
    Decomposed,
    DiscoveryError,
    DiscoveryResult,
    ExistingWorktree,
    Found,
    IssueResolver,
    Locked,
    NotExecutable,
    NotFound,
    Scope,
    find_dependency_cycle,
)
from cathooks.core.git_safety import commit_exists, git_error_text, open_repo, rev_parse
from cathooks.core.issues import QUALIFIED_ISSUE_ID_RE, VERSION_ID_RE, IssueStatus
from cathooks.core.locks import LockStore, validate_session_id
from cathooks.core.worktrees import write_base_branch, write_fork_point
from cathooks.paths import is_cat_project, worktree_path

logger = get_logger(__name__)


def parse_scope(argument: str | None) -> tuple[Scope, str]:
    """Map a work argument to a discovery scope.

    `2.1-name` is an issue, `2` a major version, `2.1` a minor version,
    anything else a bare issue name; no argument searches everything.
    """
    target = (argument or "").strip()
    if not target:
        return Scope.ALL, ""
    if QUALIFIED_ISSUE_ID_RE.match(target):
        return Scope.ISSUE, target
    match = VERSION_ID_RE.match(target)
    if match:
        return (Scope.MAJOR if match.group(2) is None else Scope.MINOR), target
    return Scope.BARE_NAME, target


def read_goal(plan_path: Path) -> str:
    """First paragraph under `## Goal` in PLAN.md."""
    try:
        lines = plan_path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return ""
    collected: list[str] = []
    in_goal = False
    for line in lines:
        stripped = line.strip()
        if stripped.startswith("## Goal"):
            in_goal = True
            continue
        if in_goal and stripped.startswith("##"):
            break
        if in_goal:
            collected.append(line.rstrip())
    goal = "\n".join(collected).strip()
    return goal.split("\n\n", 1)[0].strip()


def _no_issues(resolver: IssueResolver, result: NotFound) -> dict[str, object]:
    tree = resolver.tree
    blocked = []
    for issue in tree:
        if issue.is_closed or issue.state is None:
            continue
        unmet = resolver.unmet_dependencies(issue)
        if unmet:
            blocked.append({"issue_id": issue.issue_id, "blocked_by": unmet})
    locked = [
        {"issue_id": entry.issue_id, "locked_by": entry.session_id or "unknown"}
        for entry in resolver.lock_store.list_locks()
    ]

    data: dict[str, object] = {
        "status": "NO_ISSUES",
        "message": "No executable issues available",
        "suggestion": "Use /cat:status to see available issues",
        "closed_count": sum(1 for issue in tree if issue.is_closed),
        "total_count": len(tree),
    }
    if result.excluded_count:
        data["excluded_count"] = result.excluded_count
    if blocked:
        data["blocked_issues"] = blocked
    if locked:
        data["locked_issues"] = locked
    cycle = find_dependency_cycle(tree)
    if cycle:
        data["circular_dependencies"] = [" -> ".join(cycle)]
    return data


def _non_found_result(resolver: IssueResolver, result: DiscoveryResult) -> dict[str, object]:
    if isinstance(result, NotFound):
        return _no_issues(resolver, result)
    if isinstance(result, Locked):
        return {
            "status": "LOCKED",
            "message": f"Issue {result.issue_id} is locked by another session",
            "issue_id": result.issue_id,
            "locked_by": result.owner,
        }
    if isinstance(result, Blocked):
        return {
            "status": "BLOCKED",
            "message": f"Issue {result.issue_id} is blocked by: {', '.join(result.blocking)}",
            "issue_id": result.issue_id,
            "blocking": list(result.blocking),
        }
    if isinstance(result, AlreadyComplete):
        return {
            "status": "ALREADY_COMPLETE",
            "message": f"Issue {result.issue_id} is already closed",
            "issue_id": result.issue_id,
        }
    if isinstance(result, Decomposed):
        return {
            "status": "DECOMPOSED",
            "message": (
                f"Issue {result.issue_id} is a decomposed parent issue with open sub-issues - "
                "work on its sub-issues first"
            ),
            "issue_id": result.issue_id,
            "open_subissues": list(result.open_subissues),
        }
    if isinstance(result, ExistingWorktree):
        return {
            "status": "EXISTING_WORKTREE",
            "message": f"Issue {result.ref.issue_id} has an existing worktree at: {result.worktree_path}",
            "issue_id": result.ref.issue_id,
            "worktree_path": str(result.worktree_path),
        }
    if isinstance(result, (NotExecutable, DiscoveryError)):
        return {"status": "ERROR", **{k: v for k, v in result.to_dict().items() if k != "status"}}
    return {"status": "ERROR", "message": f"Unexpected discovery result: {type(result).__name__}"}


class WorkPreparer:
    """Sequences discovery, lock claim and worktree creation for one session."""

    def __init__(self, project_dir: str | Path, lock_store: LockStore | None = None) -> None:
        self.project_dir = Path(project_dir).absolute()
        self.lock_store = lock_store or LockStore(self.project_dir)
        self.resolver = IssueResolver(self.project_dir, self.lock_store)

    def prepare(self, session_id: str, argument: str | None = None, exclude_pattern: str = "") -> dict[str, object]:
        """Claim the next issue in scope for `session_id` and create its worktree.

        Raises:
            InvalidSessionIdError: When `session_id` is not a UUID.
        """
        validate_session_id(session_id)
        if not is_cat_project(self.project_dir):
            return {"status": "ERROR", "message": f"Not a CAT project: '{self.project_dir}' (no .claude/cat directory)"}

        scope, target = parse_scope(argument)
        result = self.resolver.find_next_issue(scope, target, session_id=session_id, exclude_pattern=exclude_pattern)
        if not isinstance(result, Found):
            logger.info("No work prepared: %s", result.status)
            return _non_found_result(self.resolver, result)

        return self._create_workspace(result, session_id)

    def _create_workspace(self, found: Found, session_id: str) -> dict[str, object]:
        issue_id = found.issue_id
        try:
            repo = open_repo(self.project_dir)
            base_branch = repo.git.symbolic_ref("--quiet", "--short", "HEAD").strip()
            fork_point = rev_parse(repo, "HEAD")
        except (InvalidGitRepositoryError, NoSuchPathError, GitCommandError) as e:
            self.lock_store.release(issue_id, session_id)
            return {"status": "ERROR", "message": f"Cannot determine base branch of {self.project_dir}: {e}"}

        path = worktree_path(self.project_dir, issue_id)
        created = False
        try:
            if commit_exists(repo, f"refs/heads/{issue_id}"):
                logger.info("Deleting leftover branch %s", issue_id)
                repo.git.branch("-D", issue_id)
            path.parent.mkdir(parents=True, exist_ok=True)
            repo.git.worktree("add", "-b", issue_id, str(path), fork_point)
            created = True

            write_fork_point(path, fork_point)
            write_base_branch(path, base_branch)
            update = self.lock_store.update(issue_id, session_id, str(path))
            if update.status != "updated":
                raise RuntimeError(update.message)
        except (GitCommandError, OSError, RuntimeError) as e:
            message = git_error_text(e) if isinstance(e, GitCommandError) else str(e)
            logger.warning("Workspace creation for %s failed: %s", issue_id, message)
            self._cleanup(repo, path, issue_id, session_id, created)
            return {"status": "ERROR", "message": f"Failed to create worktree for {issue_id}: {message}"}

        issue = self.resolver.tree.get(issue_id)
        logger.info("Prepared %s at %s (base %s)", issue_id, path, base_branch)
        return {
            "status": "READY",
            "issue_id": issue_id,
            **found.ref.version_fields(),
            "issue_name": found.ref.name,
            "issue_path": str(found.issue_path),
            "issue_status": issue.state.status.value if issue and issue.state else IssueStatus.OPEN.value,
            "worktree_path": str(path),
            "branch": issue_id,
            "base_branch": base_branch,
            "fork_point": fork_point,
            "goal": read_goal(found.issue_path / PLAN_FILE_NAME),
            "lock_acquired": True,
        }

    def _cleanup(self, repo: Repo, path: Path, issue_id: str, session_id: str, created: bool) -> None:
        if created:
            try:
                repo.git.worktree("remove", "--force", str(path))
            except GitCommandError as e:
                logger.warning("Could not remove worktree %s: %s", path, git_error_text(e))
        self.lock_store.release(issue_id, session_id)
