"""Worktree context and per-worktree metadata.

Each issue worktree lives at `.claude/cat/worktrees/<issue-id>` and stores two
metadata files in its private git directory (`git rev-parse --git-dir`):
`cat-branch-point` (the fork-point commit) and `cat-base` (the base branch).
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError
from instrukt_ai_logging import get_logger

from cathooks.constants import BASE_BRANCH_FILE, BRANCH_POINT_FILE
from cathooks.core.locks import LockStore
from cathooks.core.shell import is_within
from cathooks.paths import worktrees_dir

logger = get_logger(__name__)


@dataclass(frozen=True)
class WorktreeContext:
    """The isolation boundary of one session: its issue worktree inside a project."""

    issue_id: str
    worktree_path: Path
    project_dir: Path

    @classmethod
    def for_session(cls, project_dir: str | Path, session_id: str, store: LockStore | None = None) -> WorktreeContext | None:
        """Build the context for a session, or None when no boundary is known yet.

        A boundary exists only once the session holds a lock and the worktree
        directory is on disk.
        """
        if not session_id:
            return None
        project = Path(project_dir).absolute()
        store = store or LockStore(project)
        lock = store.find_issue_for_session(session_id)
        if lock is None:
            return None

        candidates = [Path(p) for p in lock.worktrees]
        candidates.append(worktrees_dir(project) / lock.issue_id)
        for candidate in candidates:
            if candidate.is_dir():
                return cls(lock.issue_id, candidate.absolute(), project)
        return None

    def contains(self, path: Path) -> bool:
        return is_within(path, self.worktree_path)

    def in_project(self, path: Path) -> bool:
        return is_within(path, self.project_dir)

    def corrected_path(self, target: Path) -> Path:
        """Re-root a project path under the worktree, keeping its project-relative suffix."""
        try:
            relative = target.relative_to(self.project_dir)
        except ValueError:
            return target
        return self.worktree_path / relative


def find_main_worktree(start: str | Path) -> Path | None:
    """Walk up from `start` to the main checkout: the directory holding a `.git` directory.

    Linked worktrees carry a `.git` file instead and are skipped.
    """
    current = Path(start).absolute()
    for directory in (current, *current.parents):
        if (directory / ".git").is_dir():
            return directory
    return None


def git_dir(worktree: str | Path) -> Path:
    """Return the private git directory of a worktree."""
    repo = Repo(worktree, search_parent_directories=True)
    return Path(repo.git.rev_parse("--absolute-git-dir").strip())


def _read_metadata(worktree: str | Path, name: str) -> str | None:
    try:
        path = git_dir(worktree) / name
    except (InvalidGitRepositoryError, NoSuchPathError, GitCommandError):
        logger.debug("Not a git worktree: %s", worktree)
        return None
    try:
        value = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return value or None


def _write_metadata(worktree: str | Path, name: str, value: str) -> Path:
    path = git_dir(worktree) / name
    path.write_text(value + "\n", encoding="utf-8")
    return path


def read_fork_point(worktree: str | Path) -> str | None:
    return _read_metadata(worktree, BRANCH_POINT_FILE)


def write_fork_point(worktree: str | Path, commit: str) -> Path:
    return _write_metadata(worktree, BRANCH_POINT_FILE, commit)


def read_base_branch(worktree: str | Path) -> str | None:
    return _read_metadata(worktree, BASE_BRANCH_FILE)


def write_base_branch(worktree: str | Path, branch: str) -> Path:
    return _write_metadata(worktree, BASE_BRANCH_FILE, branch)


def list_worktrees(repo: Repo) -> dict[str, str]:
    """Map worktree path to checked-out branch name from `git worktree list --porcelain`."""
    result: dict[str, str] = {}
    current_path: str | None = None
    for line in repo.git.worktree("list", "--porcelain").splitlines():
        if line.startswith("worktree "):
            current_path = line[len("worktree ") :]
            result[current_path] = ""
        elif line.startswith("branch ") and current_path is not None:
            result[current_path] = line[len("branch ") :].removeprefix("refs/heads/")
    return result


def dirty_paths(repo: Repo) -> list[str]:
    """Return dirty paths from porcelain status output."""
    paths: list[str] = []
    for line in repo.git.status("--porcelain").splitlines():
        if len(line) < 4:
            continue
        path = line[3:].strip()
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        if path:
            paths.append(path)
    return paths
