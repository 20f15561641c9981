"""Integration tests for WorkPreparer: discovery, lock claim and worktree creation."""

from pathlib import Path

import pytest

from cathooks.core.discovery import Scope
from cathooks.core.locks import LockStore
from cathooks.core.work_prepare import WorkPreparer, parse_scope, read_goal
from cathooks.core.worktrees import read_base_branch, read_fork_point
from cathooks.errors import InvalidSessionIdError
from cathooks.paths import issues_dir

SESSION_A = "11111111-1111-4111-8111-111111111111"
SESSION_B = "22222222-2222-4222-8222-222222222222"


def _issue(project: Path, version: str, name: str, status: str = "open", deps: str = "", goal: str = "") -> Path:
    major, minor = version.split(".")
    path = issues_dir(project) / f"v{major}" / f"v{major}.{minor}" / name
    path.mkdir(parents=True)
    (path / "STATE.md").write_text(f"- **Status:** {status}\n- **Dependencies:** [{deps}]\n", encoding="utf-8")
    if goal:
        (path / "PLAN.md").write_text(f"# {name}\n\n## Goal\n\n{goal}\n\nSecond paragraph.\n\n## Steps\n", encoding="utf-8")
    return path


# =============================================================================
# Argument parsing
# =============================================================================


@pytest.mark.parametrize(
    ("argument", "expected"),
    [
        (None, (Scope.ALL, "")),
        ("  ", (Scope.ALL, "")),
        ("2.1-parser", (Scope.ISSUE, "2.1-parser")),
        ("2", (Scope.MAJOR, "2")),
        ("2.1", (Scope.MINOR, "2.1")),
        ("parser", (Scope.BARE_NAME, "parser")),
    ],
)
def test_parse_scope(argument, expected):
    assert parse_scope(argument) == expected


def test_read_goal_takes_first_paragraph(tmp_path: Path):
    plan = tmp_path / "PLAN.md"
    plan.write_text("# T\n\n## Goal\n\nBuild the parser\nfor real.\n\nDetails.\n\n## Steps\n- x\n", encoding="utf-8")
    assert read_goal(plan) == "Build the parser\nfor real."
    assert read_goal(tmp_path / "missing.md") == ""


# =============================================================================
# prepare
# =============================================================================


def test_prepare_creates_worktree_and_claims_lock(project: Path, git):
    _issue(project, "1.0", "parser", goal="Parse the config format.")
    head = git(project, "rev-parse", "HEAD")

    result = WorkPreparer(project).prepare(SESSION_A)

    assert result["status"] == "READY", result
    assert result["issue_id"] == "1.0-parser"
    assert result["major"] == "1"
    assert result["minor"] == "0"
    assert "patch" not in result
    assert result["branch"] == "1.0-parser"
    assert result["base_branch"] == "main"
    assert result["fork_point"] == head
    assert result["goal"] == "Parse the config format."
    assert result["lock_acquired"] is True

    worktree = Path(str(result["worktree_path"]))
    assert worktree.is_dir()
    assert git(worktree, "rev-parse", "--abbrev-ref", "HEAD") == "1.0-parser"
    assert read_fork_point(worktree) == head
    assert read_base_branch(worktree) == "main"

    lock = LockStore(project).read("1.0-parser")
    assert lock is not None
    assert lock.session_id == SESSION_A
    assert str(worktree) in lock.worktrees


def test_second_session_gets_next_issue(project: Path):
    _issue(project, "1.0", "parser")
    _issue(project, "1.0", "printer")

    first = WorkPreparer(project).prepare(SESSION_A)
    second = WorkPreparer(project).prepare(SESSION_B)

    assert first["issue_id"] == "1.0-parser"
    assert second["issue_id"] == "1.0-printer"


def test_leftover_branch_is_replaced(project: Path, git):
    git(project, "branch", "1.0-parser")
    _issue(project, "1.0", "parser")

    result = WorkPreparer(project).prepare(SESSION_A, "1.0-parser")

    assert result["status"] == "READY", result
    assert git(project, "rev-parse", "1.0-parser") == git(project, "rev-parse", "main")


def test_no_issues_reports_diagnostics(project: Path):
    _issue(project, "1.0", "done-one", status="closed")
    _issue(project, "1.0", "waiting", deps="ghost")
    _issue(project, "1.0", "claimed")
    LockStore(project).acquire("1.0-claimed", SESSION_B)

    result = WorkPreparer(project).prepare(SESSION_A)

    assert result["status"] == "NO_ISSUES"
    assert result["closed_count"] == 1
    assert result["total_count"] == 3
    assert result["blocked_issues"] == [{"issue_id": "1.0-waiting", "blocked_by": ["ghost"]}]
    assert result["locked_issues"] == [{"issue_id": "1.0-claimed", "locked_by": SESSION_B}]


def test_no_issues_reports_dependency_cycle(project: Path):
    _issue(project, "1.0", "left", deps="right")
    _issue(project, "1.0", "right", deps="left")

    result = WorkPreparer(project).prepare(SESSION_A)

    assert result["status"] == "NO_ISSUES"
    assert len(result["circular_dependencies"]) == 1
    assert "1.0-left" in result["circular_dependencies"][0]


def test_issue_locked_by_other_session(project: Path):
    _issue(project, "1.0", "parser")
    LockStore(project).acquire("1.0-parser", SESSION_B)

    result = WorkPreparer(project).prepare(SESSION_A, "1.0-parser")

    assert result["status"] == "LOCKED"
    assert result["locked_by"] == SESSION_B


def test_already_complete_issue(project: Path):
    _issue(project, "1.0", "parser", status="closed")
    assert WorkPreparer(project).prepare(SESSION_A, "1.0-parser")["status"] == "ALREADY_COMPLETE"


def test_invalid_session_id_raises(project: Path):
    with pytest.raises(InvalidSessionIdError):
        WorkPreparer(project).prepare("not-a-session")


def test_not_a_cat_project(repo: Path):
    result = WorkPreparer(repo).prepare(SESSION_A)
    assert result["status"] == "ERROR"
    assert "Not a CAT project" in str(result["message"])
