"""Unit tests for the issue resolver."""

from pathlib import Path

import pytest

from cathooks.core.discovery import (
    AlreadyComplete,
    Blocked,
    Decomposed,
    DiscoveryError,
    ExistingWorktree,
    Found,
    IssueResolver,
    Locked,
    NotFound,
    Scope,
    find_dependency_cycle,
    matches_glob,
)
from cathooks.core.locks import LockStore

SESSION_A = "11111111-1111-4111-8111-111111111111"
SESSION_B = "22222222-2222-4222-8222-222222222222"


class IssueProject:
    """Builds a `.claude/cat` issue tree under a temporary project."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.issues = root / ".claude" / "cat" / "issues"
        self.issues.mkdir(parents=True)

    def version_dir(self, version: str) -> Path:
        parts = version.split(".")
        path = self.issues
        for depth in range(1, len(parts) + 1):
            path = path / ("v" + ".".join(parts[:depth]))
        path.mkdir(parents=True, exist_ok=True)
        return path

    def issue(
        self,
        version: str,
        name: str,
        status: str = "open",
        deps: list[str] | None = None,
        decomposed: list[str] | None = None,
    ) -> Path:
        path = self.version_dir(version) / name
        path.mkdir(parents=True, exist_ok=True)
        lines = [f"- **Status:** {status}", f"- **Dependencies:** [{', '.join(deps or [])}]"]
        if decomposed:
            lines += ["", "## Decomposed Into"] + [f"- {child}" for child in decomposed]
        (path / "STATE.md").write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    def version_deps(self, version: str, deps: list[str]) -> None:
        (self.version_dir(version) / "STATE.md").write_text(
            f"- **Dependencies:** [{', '.join(deps)}]\n", encoding="utf-8"
        )

    def postconditions(self, version: str, names: list[str]) -> None:
        body = "\n".join(f"- [issue] {name}" for name in names)
        (self.version_dir(version) / "PLAN.md").write_text(f"# Plan\n\n{body}\n", encoding="utf-8")

    def worktree(self, issue_id: str) -> Path:
        path = self.root / ".claude" / "cat" / "worktrees" / issue_id
        path.mkdir(parents=True)
        return path

    def resolver(self) -> IssueResolver:
        return IssueResolver(self.root)


@pytest.fixture
def project(tmp_path: Path) -> IssueProject:
    return IssueProject(tmp_path)


# =============================================================================
# Glob matching
# =============================================================================


def test_glob_dot_is_literal():
    assert matches_glob("a.b", "a.b")
    assert not matches_glob("axb", "a.b")


def test_glob_wildcards():
    assert matches_glob("docs-update", "docs-*")
    assert matches_glob("fix-1", "fix-?")
    assert not matches_glob("refactor", "docs-*")


# =============================================================================
# Scope ALL
# =============================================================================


class TestSearchAll:
    def test_returns_first_open_issue_in_version_order(self, project: IssueProject):
        project.issue("1.1", "later")
        project.issue("1.0", "zeta")
        project.issue("1.0", "alpha", status="closed")
        result = project.resolver().find_next_issue()
        assert isinstance(result, Found)
        assert result.issue_id == "1.0-zeta"

    def test_skips_issue_with_open_dependency(self, project: IssueProject):
        project.issue("1.0", "first", deps=["second"])
        project.issue("1.0", "second")
        result = project.resolver().find_next_issue()
        assert isinstance(result, Found)
        assert result.issue_id == "1.0-second"

    def test_closed_dependency_is_satisfied(self, project: IssueProject):
        project.issue("1.0", "base", status="done")
        project.issue("1.0", "feature", deps=["1.0-base"])
        result = project.resolver().find_next_issue()
        assert isinstance(result, Found)
        assert result.issue_id == "1.0-feature"

    def test_missing_dependency_blocks(self, project: IssueProject):
        project.issue("1.0", "feature", deps=["ghost"])
        assert isinstance(project.resolver().find_next_issue(), NotFound)

    def test_skips_existing_worktree(self, project: IssueProject):
        project.issue("1.0", "busy")
        project.issue("1.0", "free")
        project.worktree("1.0-busy")
        result = project.resolver().find_next_issue()
        assert result.issue_id == "1.0-free"

    def test_exclude_pattern_uses_glob_semantics(self, project: IssueProject):
        project.issue("1.0", "docs-api")
        project.issue("1.0", "fix-parser")
        resolver = project.resolver()

        result = resolver.find_next_issue(exclude_pattern="docs-*")
        assert result.issue_id == "1.0-fix-parser"

        # "." in a glob is literal: "docs.api" must not exclude "docs-api"
        result = resolver.find_next_issue(exclude_pattern="docs.api")
        assert result.issue_id == "1.0-docs-api"

    def test_not_found_reports_excluded_count(self, project: IssueProject):
        project.issue("1.0", "docs-a")
        project.issue("1.0", "docs-b")
        result = project.resolver().find_next_issue(exclude_pattern="docs-*")
        assert isinstance(result, NotFound)
        data = result.to_dict()
        assert data["status"] == "not_found"
        assert data["excluded_count"] == 2

    def test_skips_decomposed_parent_with_open_children(self, project: IssueProject):
        project.issue("1.0", "parent", decomposed=["child"])
        project.issue("1.0", "child")
        result = project.resolver().find_next_issue()
        assert result.issue_id == "1.0-child"

    def test_decomposed_parent_available_when_children_closed(self, project: IssueProject):
        project.issue("1.0", "child", status="closed")
        project.issue("1.0", "parent", decomposed=["child"])
        result = project.resolver().find_next_issue()
        assert result.issue_id == "1.0-parent"

    def test_postcondition_waits_for_siblings(self, project: IssueProject):
        project.issue("1.0", "aaa-release-notes")
        project.issue("1.0", "feature")
        project.postconditions("1.0", ["aaa-release-notes"])
        resolver = project.resolver()

        assert resolver.find_next_issue().issue_id == "1.0-feature"
        overridden = resolver.find_next_issue(override_postconditions=True)
        assert overridden.issue_id == "1.0-aaa-release-notes"

    def test_postcondition_available_when_siblings_closed(self, project: IssueProject):
        project.issue("1.0", "feature", status="closed")
        project.issue("1.0", "release-notes")
        project.postconditions("1.0", ["release-notes"])
        assert project.resolver().find_next_issue().issue_id == "1.0-release-notes"

    def test_version_dependency_skips_whole_version(self, project: IssueProject):
        project.issue("1.0", "pending-work")
        project.issue("1.1", "next-version")
        project.issue("1.2", "independent")
        project.version_deps("1.1", ["1.0"])
        resolver = project.resolver()

        resolver.find_next_issue(session_id=SESSION_A)
        result = resolver.find_next_issue(session_id=SESSION_B)
        assert result.issue_id == "1.2-independent"

    def test_session_claims_lock_and_skips_locked(self, project: IssueProject):
        project.issue("1.0", "one")
        project.issue("1.0", "two")
        resolver = project.resolver()

        first = resolver.find_next_issue(session_id=SESSION_A)
        assert first.lock_status == "acquired"
        assert first.issue_id == "1.0-one"

        second = resolver.find_next_issue(session_id=SESSION_B)
        assert second.issue_id == "1.0-two"

        third = resolver.find_next_issue(session_id="33333333-3333-4333-8333-333333333333")
        assert isinstance(third, NotFound)
        assert third.locked_count == 2

    def test_without_session_nothing_is_claimed(self, project: IssueProject):
        project.issue("1.0", "one")
        result = project.resolver().find_next_issue()
        assert result.lock_status == "unclaimed"
        assert LockStore(project.root).read("1.0-one") is None


# =============================================================================
# Version scopes
# =============================================================================


class TestVersionScopes:
    def test_minor_scope(self, project: IssueProject):
        project.issue("1.0", "old")
        project.issue("1.1", "new")
        result = project.resolver().find_next_issue(Scope.MINOR, "1.1")
        assert result.issue_id == "1.1-new"
        assert result.scope is Scope.MINOR

    def test_major_scope_includes_minors(self, project: IssueProject):
        project.issue("1.0", "one")
        project.issue("2.3", "two")
        assert project.resolver().find_next_issue(Scope.MAJOR, "2").issue_id == "2.3-two"

    def test_invalid_target_is_error(self, project: IssueProject):
        result = project.resolver().find_next_issue(Scope.MINOR, "one")
        assert isinstance(result, DiscoveryError)


# =============================================================================
# Single issue classification
# =============================================================================


class TestSingleIssue:
    def test_found_json_contains_only_present_version_fields(self, project: IssueProject):
        project.issue("3", "major-only")
        result = project.resolver().find_next_issue(Scope.ISSUE, "3-major-only")
        data = result.to_dict()
        assert data["status"] == "found"
        assert data["issue_id"] == "3-major-only"
        assert data["major"] == "3"
        assert "minor" not in data
        assert "patch" not in data

    def test_already_complete(self, project: IssueProject):
        project.issue("1.0", "done-thing", status="closed")
        result = project.resolver().find_next_issue(Scope.ISSUE, "1.0-done-thing")
        assert isinstance(result, AlreadyComplete)
        assert result.to_dict()["status"] == "already_complete"

    def test_blocked_lists_unmet_in_declared_order(self, project: IssueProject):
        project.issue("1.0", "target", deps=["zeta", "alpha", "closed-one"])
        project.issue("1.0", "zeta")
        project.issue("1.0", "alpha")
        project.issue("1.0", "closed-one", status="closed")
        result = project.resolver().find_next_issue(Scope.ISSUE, "1.0-target")
        assert isinstance(result, Blocked)
        assert result.blocking == ["zeta", "alpha"]

    def test_decomposed(self, project: IssueProject):
        project.issue("1.0", "parent", decomposed=["kid-a", "kid-b"])
        project.issue("1.0", "kid-a", status="closed")
        project.issue("1.0", "kid-b")
        result = project.resolver().find_next_issue(Scope.ISSUE, "1.0-parent")
        assert isinstance(result, Decomposed)
        assert result.open_subissues == ["kid-b"]

    def test_existing_worktree(self, project: IssueProject):
        project.issue("1.0", "busy")
        project.worktree("1.0-busy")
        result = project.resolver().find_next_issue(Scope.ISSUE, "1.0-busy")
        assert isinstance(result, ExistingWorktree)

    def test_locked_by_other_session(self, project: IssueProject):
        project.issue("1.0", "contested")
        LockStore(project.root).acquire("1.0-contested", SESSION_A)
        result = project.resolver().find_next_issue(Scope.ISSUE, "1.0-contested", session_id=SESSION_B)
        assert isinstance(result, Locked)
        assert result.owner == SESSION_A

    def test_unknown_issue_is_not_found(self, project: IssueProject):
        result = project.resolver().find_next_issue(Scope.ISSUE, "9.9-nothing")
        assert isinstance(result, NotFound)


def test_bare_name_resolves_first_match(project: IssueProject):
    project.issue("1.1", "shared")
    project.issue("1.0", "shared", status="closed")
    result = project.resolver().find_next_issue(Scope.BARE_NAME, "shared")
    assert isinstance(result, AlreadyComplete)
    assert result.issue_id == "1.0-shared"


def test_bare_name_found_reports_bare_name_scope(project: IssueProject):
    project.issue("1.1", "parser")
    result = project.resolver().find_next_issue(Scope.BARE_NAME, "parser")
    assert isinstance(result, Found)
    assert result.scope is Scope.BARE_NAME
    assert result.to_dict()["scope"] == Scope.BARE_NAME.value


def test_find_dependency_cycle(project: IssueProject):
    project.issue("1.0", "a", deps=["b"])
    project.issue("1.0", "b", deps=["c"])
    project.issue("1.0", "c", deps=["a"])
    project.issue("1.0", "free")
    cycle = find_dependency_cycle(project.resolver().tree)
    assert cycle is not None
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"1.0-a", "1.0-b", "1.0-c"}
