"""Issue discovery: decide which issue an agent may claim next.

Discovery and locking are sequenced: when a session id is supplied, every
candidate that passes the eligibility filter is claimed through the lock
store before it is reported as found, so two callers never both "find" the
same issue.
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from instrukt_ai_logging import get_logger

from cathooks.core.issues import (
    BARE_NAME_RE,
    VERSION_ID_RE,
    Issue,
    IssueRef,
    IssueStatus,
    IssueTree,
    Version,
    VersionKey,
    parse_issue_id,
)
from cathooks.core.locks import LockStore
from cathooks.paths import issues_dir, worktree_path

logger = get_logger(__name__)


class Scope(str, Enum):
    ALL = "all"
    ISSUE = "issue"
    MAJOR = "major"
    MINOR = "minor"
    BARE_NAME = "bare_name"


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class DiscoveryResult:
    status = "error"

    def to_dict(self) -> dict[str, object]:
        raise NotImplementedError


@dataclass(frozen=True)
class Found(DiscoveryResult):
    ref: IssueRef
    issue_path: Path
    scope: Scope
    lock_status: str = "unclaimed"
    status = "found"

    @property
    def issue_id(self) -> str:
        return self.ref.issue_id

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "issue_id": self.ref.issue_id,
            **self.ref.version_fields(),
            "issue_name": self.ref.name,
            "issue_path": str(self.issue_path),
            "scope": self.scope.value,
            "lock_status": self.lock_status,
        }


@dataclass(frozen=True)
class NotFound(DiscoveryResult):
    scope: Scope
    exclude_pattern: str = ""
    excluded_count: int = 0
    locked_count: int = 0
    status = "not_found"

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {"status": self.status, "scope": self.scope.value}
        if self.excluded_count:
            data["message"] = f"No executable issues found ({self.excluded_count} excluded by pattern)"
            data["exclude_pattern"] = self.exclude_pattern
            data["excluded_count"] = self.excluded_count
        else:
            data["message"] = "No executable issues found"
        if self.locked_count:
            data["locked_count"] = self.locked_count
        return data


@dataclass(frozen=True)
class AlreadyComplete(DiscoveryResult):
    issue_id: str
    status = "already_complete"

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "message": f"Issue {self.issue_id} is already closed - no work needed",
            "issue_id": self.issue_id,
        }


@dataclass(frozen=True)
class Blocked(DiscoveryResult):
    issue_id: str
    blocking: list[str]
    status = "blocked"

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "message": "Dependencies not satisfied",
            "issue_id": self.issue_id,
            "blocking": list(self.blocking),
        }


@dataclass(frozen=True)
class Decomposed(DiscoveryResult):
    issue_id: str
    open_subissues: list[str] = field(default_factory=list)
    status = "decomposed"

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "message": "Issue is a decomposed parent task - execute sub-issues instead",
            "issue_id": self.issue_id,
            "open_subissues": list(self.open_subissues),
        }


@dataclass(frozen=True)
class ExistingWorktree(DiscoveryResult):
    ref: IssueRef
    issue_path: Path
    worktree_path: Path
    status = "existing_worktree"

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "issue_id": self.ref.issue_id,
            **self.ref.version_fields(),
            "issue_name": self.ref.name,
            "issue_path": str(self.issue_path),
            "worktree_path": str(self.worktree_path),
            "message": "Issue has existing worktree - likely in use by another session",
        }


@dataclass(frozen=True)
class Locked(DiscoveryResult):
    issue_id: str
    owner: str
    status = "locked"

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "message": f"Issue locked by another session: {self.owner}",
            "issue_id": self.issue_id,
            "owner": self.owner,
        }


@dataclass(frozen=True)
class NotExecutable(DiscoveryResult):
    issue_id: str
    reason: str
    status = "not_executable"

    def to_dict(self) -> dict[str, object]:
        return {"status": self.status, "message": self.reason, "issue_id": self.issue_id}


@dataclass(frozen=True)
class DiscoveryError(DiscoveryResult):
    message: str
    status = "error"

    def to_dict(self) -> dict[str, object]:
        return {"status": self.status, "message": self.message}


# =============================================================================
# Eligibility
# =============================================================================


def matches_glob(name: str, pattern: str) -> bool:
    """Glob match (`*`, `?`, `[...]`); every other character is literal, including `.`."""
    return fnmatch.fnmatchcase(name, pattern)


class IssueResolver:
    """Answers "what is the next claimable issue" for one project."""

    def __init__(self, project_dir: str | Path, lock_store: LockStore | None = None) -> None:
        self.project_dir = Path(project_dir)
        self.lock_store = lock_store or LockStore(self.project_dir)
        self._tree: IssueTree | None = None

    @property
    def tree(self) -> IssueTree:
        if self._tree is None:
            self._tree = IssueTree.scan(issues_dir(self.project_dir))
        return self._tree

    # -- predicates ---------------------------------------------------------

    def is_dependency_satisfied(self, reference: str) -> bool:
        """A dependency is satisfied when the issue (or every issue of a version) is closed."""
        version_match = VERSION_ID_RE.match(reference)
        if version_match:
            key = tuple(int(part) for part in version_match.groups() if part is not None)
            containers = self.tree.versions_matching(key)
            if not containers:
                return False
            return all(issue.is_closed for container in containers for issue in container.issues)
        dep = self.tree.lookup(reference)
        return dep is not None and dep.is_closed

    def unmet_dependencies(self, issue: Issue) -> list[str]:
        if issue.state is None:
            return []
        return [dep for dep in issue.state.dependencies if not self.is_dependency_satisfied(dep)]

    def unmet_version_dependencies(self, issue: Issue) -> list[str]:
        unmet: list[str] = []
        for container in self.tree.ancestors(self.tree.version_of(issue)):
            unmet.extend(dep for dep in container.dependencies if not self.is_dependency_satisfied(dep))
        return unmet

    def open_subissues(self, issue: Issue) -> list[str]:
        """Sub-issues of a decomposed parent that are not closed. Missing sub-issues count as open."""
        if issue.state is None or not issue.state.is_decomposed:
            return []
        open_names: list[str] = []
        for name in issue.state.decomposed_into:
            if not BARE_NAME_RE.match(name):
                continue
            child_ref = IssueRef(issue.ref.major, issue.ref.minor, issue.ref.patch, name)
            child = self.tree.get(child_ref.issue_id)
            if child is None or not child.is_closed:
                open_names.append(name)
        return open_names

    def _postcondition_gate(self, issue: Issue) -> Version | None:
        version = self.tree.version_of(issue)
        gate_key: VersionKey = version.key[:2]
        for container in self.tree.ancestors(version):
            if container.key == gate_key:
                return container
        return None

    def postconditions_blocked(self, issue: Issue) -> bool:
        """True when a post-condition issue still has open non-post-condition siblings."""
        gate = self._postcondition_gate(issue)
        if gate is None or issue.name not in gate.postconditions:
            return False
        if len(gate.key) == 1:
            siblings = list(gate.issues)
        else:
            siblings = [i for container in self.tree.versions_matching(gate.key) for i in container.issues]
        return any(not sibling.is_closed for sibling in siblings if sibling.name not in gate.postconditions)

    def has_worktree(self, issue_id: str) -> bool:
        return worktree_path(self.project_dir, issue_id).is_dir()

    def exclusion_reason(
        self,
        issue: Issue,
        exclude_pattern: str = "",
        override_postconditions: bool = False,
    ) -> str | None:
        """Why an issue is not claimable in a search, or None when it is.

        Checks run in a fixed order and stop at the first exclusion.
        """
        if issue.state is None:
            return "unreadable"
        if issue.state.status == IssueStatus.CLOSED:
            return "closed"
        if not issue.state.status.is_claimable:
            return issue.state.status.value
        if self.has_worktree(issue.issue_id):
            return "existing_worktree"
        if self.unmet_dependencies(issue):
            return "blocked"
        if exclude_pattern and matches_glob(issue.name, exclude_pattern):
            return "excluded"
        if self.open_subissues(issue):
            return "decomposed"
        if not override_postconditions and self.postconditions_blocked(issue):
            return "postcondition"
        if self.unmet_version_dependencies(issue):
            return "version_blocked"
        return None

    # -- resolution ---------------------------------------------------------

    def find_next_issue(
        self,
        scope: Scope = Scope.ALL,
        target: str = "",
        session_id: str = "",
        exclude_pattern: str = "",
        override_postconditions: bool = False,
    ) -> DiscoveryResult:
        if scope == Scope.BARE_NAME:
            if not BARE_NAME_RE.match(target):
                return DiscoveryError(f"Invalid bare issue name format: {target}")
            issue = self.tree.find_by_name(target)
            if issue is None:
                return NotFound(Scope.BARE_NAME)
            return self._classify_issue(issue, session_id, Scope.BARE_NAME)

        if scope == Scope.ISSUE:
            ref = parse_issue_id(target)
            if ref is None:
                return DiscoveryError(f"Invalid issue id format: {target}")
            issue = self.tree.get(ref.issue_id)
            if issue is None:
                return NotFound(Scope.ISSUE)
            return self._classify_issue(issue, session_id, Scope.ISSUE)

        return self._search(scope, target, session_id, exclude_pattern, override_postconditions)

    def _classify_issue(self, issue: Issue, session_id: str, scope: Scope) -> DiscoveryResult:
        if issue.state is None:
            return NotExecutable(issue.issue_id, issue.error or f"Issue {issue.issue_id} has no readable status")
        if issue.state.status == IssueStatus.CLOSED:
            return AlreadyComplete(issue.issue_id)

        blocking = self.unmet_dependencies(issue) + self.unmet_version_dependencies(issue)
        if blocking:
            return Blocked(issue.issue_id, blocking)
        if not issue.state.status.is_claimable:
            return NotExecutable(issue.issue_id, f"Issue status is {issue.state.status.value} (not open/in-progress)")

        open_children = self.open_subissues(issue)
        if open_children:
            return Decomposed(issue.issue_id, open_children)

        worktree = worktree_path(self.project_dir, issue.issue_id)
        if worktree.is_dir():
            return ExistingWorktree(issue.ref, issue.path, worktree)

        lock_status = "unclaimed"
        if session_id:
            result = self.lock_store.acquire(issue.issue_id, session_id)
            if result.status != "acquired":
                return Locked(issue.issue_id, str(result.details.get("owner", "unknown")))
            lock_status = "acquired"
        return Found(issue.ref, issue.path, scope, lock_status)

    def _search_keys(self, scope: Scope, target: str) -> VersionKey | None:
        if scope == Scope.ALL:
            return ()
        match = VERSION_ID_RE.match(target)
        if not match:
            return None
        key = tuple(int(part) for part in match.groups() if part is not None)
        if scope == Scope.MAJOR and len(key) != 1:
            return None
        if scope == Scope.MINOR and len(key) < 2:
            return None
        return key

    def _search(
        self,
        scope: Scope,
        target: str,
        session_id: str,
        exclude_pattern: str,
        override_postconditions: bool,
    ) -> DiscoveryResult:
        key = self._search_keys(scope, target)
        if key is None:
            return DiscoveryError(f"Invalid {scope.value} version target: '{target}'")

        excluded = 0
        locked = 0
        for issue in self.tree:
            if issue.ref.version_key[: len(key)] != key:
                continue
            reason = self.exclusion_reason(issue, exclude_pattern, override_postconditions)
            if reason == "excluded":
                excluded += 1
            if reason is not None:
                continue

            lock_status = "unclaimed"
            if session_id:
                result = self.lock_store.acquire(issue.issue_id, session_id)
                if result.status != "acquired":
                    logger.debug("Skipping %s: locked by %s", issue.issue_id, result.details.get("owner"))
                    locked += 1
                    continue
                lock_status = "acquired"
            return Found(issue.ref, issue.path, scope, lock_status)

        return NotFound(scope, exclude_pattern, excluded, locked)


def find_dependency_cycle(tree: IssueTree) -> list[str] | None:
    """Return one dependency cycle as a path of issue ids, or None."""
    graph: dict[str, list[str]] = {}
    for issue in tree:
        deps: list[str] = []
        for reference in issue.state.dependencies if issue.state else []:
            dep = tree.lookup(reference)
            if dep is not None:
                deps.append(dep.issue_id)
        graph[issue.issue_id] = deps

    visited: set[str] = set()
    path: list[str] = []

    def dfs(node: str) -> list[str] | None:
        if node in path:
            return path[path.index(node) :] + [node]
        if node in visited:
            return None
        visited.add(node)
        path.append(node)
        for dep in graph.get(node, []):
            cycle = dfs(dep)
            if cycle:
                return cycle
        path.pop()
        return None

    for node in graph:
        cycle = dfs(node)
        if cycle:
            return cycle
    return None
