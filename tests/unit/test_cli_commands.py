"""Unit tests for the cat-issue-lock and cat-work command lines."""

import json
from pathlib import Path

import pytest

from cathooks import __version__
from cathooks.cli import git_tools, hook, issue_lock, work

SESSION_A = "11111111-1111-4111-8111-111111111111"
SESSION_B = "22222222-2222-4222-8222-222222222222"


@pytest.fixture
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.delenv("CLAUDE_PROJECT_DIR", raising=False)
    (tmp_path / ".claude" / "cat").mkdir(parents=True)
    return tmp_path


def _lock(project: Path, capsys, *argv: str) -> tuple[int, object]:
    code = issue_lock.main(["--project-dir", str(project), *argv])
    return code, json.loads(capsys.readouterr().out)


def _work(project: Path, capsys, *argv: str) -> tuple[int, dict]:
    code = work.main(["--project-dir", str(project), *argv])
    return code, json.loads(capsys.readouterr().out)


# =============================================================================
# cat-issue-lock
# =============================================================================


def test_acquire_then_conflict(project: Path, capsys):
    code, data = _lock(project, capsys, "acquire", "1.0-parser", SESSION_A, "/wt/parser")
    assert code == 0
    assert data["status"] == "acquired"

    code, data = _lock(project, capsys, "acquire", "1.0-parser", SESSION_B)
    assert code == 1
    assert data["status"] == "locked"
    assert data["owner"] == SESSION_A


def test_list_and_check(project: Path, capsys):
    _lock(project, capsys, "acquire", "1.0-parser", SESSION_A, "--agent-id", f"{SESSION_A}/subagents/impl")

    code, entries = _lock(project, capsys, "list")
    assert code == 0
    assert [entry["issue"] for entry in entries] == ["1.0-parser"]

    code, info = _lock(project, capsys, "check", "1.0-parser")
    assert info["locked"] is True
    assert info["session_id"] == SESSION_A


def test_release_by_owner(project: Path, capsys):
    _lock(project, capsys, "acquire", "1.0-parser", SESSION_A)
    assert _lock(project, capsys, "release", "1.0-parser", SESSION_B)[0] == 1
    assert _lock(project, capsys, "release", "1.0-parser", SESSION_A)[0] == 0
    assert _lock(project, capsys, "check", "1.0-parser")[1]["locked"] is False


def test_invalid_session_id_is_reported(project: Path, capsys):
    code, data = _lock(project, capsys, "acquire", "1.0-parser", "bogus")
    assert code == 1
    assert data["status"] == "error"


# =============================================================================
# cat-work
# =============================================================================


def _issue(project: Path, name: str, status: str = "open") -> None:
    path = project / ".claude" / "cat" / "issues" / "v1" / "v1.0" / name
    path.mkdir(parents=True)
    (path / "STATE.md").write_text(f"- **Status:** {status}\n", encoding="utf-8")


def test_work_next_does_not_claim(project: Path, capsys):
    _issue(project, "parser")

    code, data = _work(project, capsys, "next")

    assert code == 0
    assert data["status"] == "found"
    assert data["issue_id"] == "1.0-parser"
    assert data["lock_status"] == "unclaimed"
    assert not (project / ".claude" / "cat" / "locks" / "1.0-parser.lock").exists()


def test_work_next_with_exclude(project: Path, capsys):
    _issue(project, "docs-readme")
    code, data = _work(project, capsys, "next", "--exclude", "docs-*")
    assert code == 0
    assert data["status"] == "not_found"


def test_work_next_outside_cat_project(tmp_path: Path, capsys, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("CLAUDE_PROJECT_DIR", raising=False)
    code, data = _work(tmp_path, capsys, "next")
    assert code == 1
    assert "Not a CAT project" in data["message"]


# =============================================================================
# --version
# =============================================================================


@pytest.mark.parametrize(
    ("main", "prog"),
    [(hook.main, "cat-hook"), (issue_lock.main, "cat-issue-lock"), (git_tools.main, "cat-git"), (work.main, "cat-work")],
)
def test_version_flag(main, prog: str, capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["--version"])
    assert excinfo.value.code == 0
    assert capsys.readouterr().out.strip() == f"{prog} {__version__}"
