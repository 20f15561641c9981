"""Shared fixtures for integration tests: real git repositories under tmp_path."""

import subprocess
from pathlib import Path
from typing import Callable

import pytest

Git = Callable[..., str]


def _git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def _configure_identity(repo: Path) -> None:
    _git(repo, "config", "user.email", "tests@example.com")
    _git(repo, "config", "user.name", "Tests")
    _git(repo, "config", "commit.gpgsign", "false")


def _commit_file(repo: Path, name: str, content: str, message: str | None = None) -> str:
    path = repo / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    _git(repo, "add", name)
    _git(repo, "commit", "-q", "-m", message or f"Update {name}")
    return _git(repo, "rev-parse", "HEAD")


@pytest.fixture
def git() -> Git:
    """Run a git command in a directory and return its stripped stdout."""
    return _git


@pytest.fixture
def commit_file() -> Callable[..., str]:
    """Write, stage and commit one file; returns the new HEAD."""
    return _commit_file


@pytest.fixture
def origin(tmp_path: Path) -> Path:
    path = tmp_path / "origin.git"
    _git(tmp_path, "init", "-q", "--bare", "-b", "main", str(path))
    return path


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """A local repository on `main` with one commit and no remote."""
    path = tmp_path / "repo"
    path.mkdir()
    _git(path, "init", "-q", "-b", "main")
    _configure_identity(path)
    _commit_file(path, "README.md", "# repo\n", "Initial commit")
    return path


@pytest.fixture
def project(tmp_path: Path, origin: Path) -> Path:
    """A CAT project on `main` pushed to a bare origin.

    `.claude/` is ignored so locks, worktrees and issue files never dirty the checkout.
    """
    path = tmp_path / "project"
    path.mkdir()
    _git(path, "init", "-q", "-b", "main")
    _configure_identity(path)
    _commit_file(path, ".gitignore", ".claude/\n", "Ignore agent state")
    _commit_file(path, "README.md", "# project\n", "Initial commit")
    _git(path, "remote", "add", "origin", str(origin))
    _git(path, "push", "-q", "-u", "origin", "main")
    (path / ".claude" / "cat").mkdir(parents=True)
    return path


@pytest.fixture
def other_clone(tmp_path: Path, origin: Path, project: Path) -> Path:
    """A second clone of origin, standing in for another machine pushing to main."""
    path = tmp_path / "other"
    _git(tmp_path, "clone", "-q", str(origin), str(path))
    _configure_identity(path)
    return path
