"""Unit tests for lock predicates and the lock store lifecycle."""

import json
from pathlib import Path

import pytest

from cathooks.constants import LOCK_STALE_SECONDS
from cathooks.core.locks import Lock, LockStore, is_owned_by, is_stale, parse_lock
from cathooks.errors import InvalidSessionIdError
from cathooks.paths import lock_path

SESSION_A = "11111111-1111-4111-8111-111111111111"
SESSION_B = "22222222-2222-4222-8222-222222222222"
T0 = 1_700_000_000


class FakeClock:
    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path, clock: FakeClock) -> LockStore:
    (tmp_path / ".claude" / "cat").mkdir(parents=True)
    return LockStore(tmp_path, clock=clock)


# =============================================================================
# Staleness
# =============================================================================


def test_exactly_four_hours_is_fresh():
    lock = Lock("1.0-x", session_id=SESSION_A, created_at=T0)
    assert not is_stale(lock, T0 + LOCK_STALE_SECONDS)


def test_four_hours_and_one_second_is_stale():
    lock = Lock("1.0-x", session_id=SESSION_A, created_at=T0)
    assert is_stale(lock, T0 + LOCK_STALE_SECONDS + 1)


def test_missing_created_at_is_never_stale():
    lock = Lock("1.0-x", session_id=SESSION_A)
    assert not is_stale(lock, T0 + 10 * LOCK_STALE_SECONDS)


# =============================================================================
# Ownership
# =============================================================================


class TestOwnership:
    def test_same_session_owns_session_granular_lock(self):
        lock = Lock("1.0-x", session_id=SESSION_A, worktrees={"/wt": ""})
        assert is_owned_by(lock, "/wt", SESSION_A, "")

    def test_other_session_does_not_own(self):
        lock = Lock("1.0-x", session_id=SESSION_A, worktrees={"/wt": ""})
        assert not is_owned_by(lock, "/wt", SESSION_B, "")

    def test_agent_identity_must_match_exactly(self):
        agent = f"{SESSION_A}/subagents/impl"
        lock = Lock("1.0-x", session_id=SESSION_A, worktrees={"/wt": agent})
        assert is_owned_by(lock, "/wt", SESSION_A, agent)
        assert not is_owned_by(lock, "/wt", SESSION_A, f"{SESSION_A}/subagents/other")

    def test_missing_caller_agent_id_is_foreign_when_lock_has_one(self):
        lock = Lock("1.0-x", session_id=SESSION_A, worktrees={"/wt": f"{SESSION_A}/subagents/impl"})
        assert not is_owned_by(lock, "/wt", SESSION_A, None)

    def test_lock_without_session_is_never_mine(self):
        lock = Lock("1.0-x", worktrees={"/wt": ""})
        assert not is_owned_by(lock, "/wt", SESSION_A, "")


# =============================================================================
# Parsing
# =============================================================================


def test_parse_lock_corrupt_json_is_protected():
    lock = parse_lock("1.0-x", "{not json")
    assert lock.session_id is None
    assert lock.created_at is None
    assert not is_stale(lock, T0 + 10 * LOCK_STALE_SECONDS)


def test_parse_lock_legacy_single_worktree():
    lock = parse_lock("1.0-x", json.dumps({"session_id": SESSION_A, "worktree": "/wt", "created_at": T0}))
    assert lock.worktrees == {"/wt": ""}


def test_parse_lock_ignores_mistyped_fields():
    lock = parse_lock("1.0-x", json.dumps({"session_id": 5, "created_at": "yesterday", "worktrees": {"/wt": 3}}))
    assert lock.session_id is None
    assert lock.created_at is None
    assert lock.worktrees == {}


# =============================================================================
# LockStore lifecycle
# =============================================================================


class TestLockStore:
    def test_acquire_writes_lock_file(self, store: LockStore, tmp_path: Path):
        result = store.acquire("1.0-parser", SESSION_A, "/wt/parser")
        assert result.status == "acquired"

        data = json.loads(lock_path(tmp_path, "1.0-parser").read_text())
        assert data["session_id"] == SESSION_A
        assert data["worktrees"] == {"/wt/parser": ""}
        assert data["created_at"] == T0
        assert data["created_iso"].endswith("Z")

    def test_acquire_is_idempotent_for_owner(self, store: LockStore):
        store.acquire("1.0-parser", SESSION_A)
        assert store.acquire("1.0-parser", SESSION_A).status == "acquired"

    def test_acquire_reports_other_owner(self, store: LockStore):
        store.acquire("1.0-parser", SESSION_A)
        result = store.acquire("1.0-parser", SESSION_B)
        assert result.status == "locked"
        assert result.details["owner"] == SESSION_A
        assert result.details["action"] == "FIND_ANOTHER_ISSUE"
        assert result.details["stale"] is False

    def test_stale_lock_is_still_locked(self, store: LockStore, clock: FakeClock):
        store.acquire("1.0-parser", SESSION_A)
        clock.now = T0 + LOCK_STALE_SECONDS + 1
        result = store.acquire("1.0-parser", SESSION_B)
        assert result.status == "locked"
        assert result.details["stale"] is True

    def test_invalid_session_id_raises(self, store: LockStore):
        with pytest.raises(InvalidSessionIdError):
            store.acquire("1.0-parser", "not-a-uuid")

    def test_update_adds_worktree_for_owner_only(self, store: LockStore):
        store.acquire("1.0-parser", SESSION_A)
        assert store.update("1.0-parser", SESSION_B, "/wt").status == "error"

        result = store.update("1.0-parser", SESSION_A, "/wt", f"{SESSION_A}/subagents/impl")
        assert result.status == "updated"
        assert store.read("1.0-parser").worktrees == {"/wt": f"{SESSION_A}/subagents/impl"}

    def test_release_requires_owner(self, store: LockStore, tmp_path: Path):
        store.acquire("1.0-parser", SESSION_A)
        assert store.release("1.0-parser", SESSION_B).status == "error"
        assert lock_path(tmp_path, "1.0-parser").exists()

        assert store.release("1.0-parser", SESSION_A).status == "released"
        assert not lock_path(tmp_path, "1.0-parser").exists()

    def test_force_release_ignores_owner(self, store: LockStore):
        store.acquire("1.0-parser", SESSION_A)
        result = store.force_release("1.0-parser")
        assert result.status == "released"
        assert SESSION_A in result.message
        assert store.read("1.0-parser") is None

    def test_check_reports_age(self, store: LockStore, clock: FakeClock):
        store.acquire("1.0-parser", SESSION_A)
        clock.now = T0 + 60
        info = store.check("1.0-parser")
        assert info["locked"] is True
        assert info["age_seconds"] == 60
        assert store.check("2.0-other") == {"locked": False, "message": "Issue not locked"}

    def test_list_skips_malformed_files(self, store: LockStore, tmp_path: Path):
        store.acquire("1.0-parser", SESSION_A)
        lock_path(tmp_path, "1.0-broken").write_text("{half written")
        entries = store.list_locks()
        assert [e.issue_id for e in entries] == ["1.0-parser"]

    def test_read_corrupt_file_returns_protected_lock(self, store: LockStore, tmp_path: Path):
        path = lock_path(tmp_path, "1.0-broken")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("garbage")
        lock = store.read("1.0-broken")
        assert lock is not None
        assert lock.session_id is None

    def test_symlinked_lock_files_are_ignored(self, store: LockStore, tmp_path: Path):
        outside = tmp_path / "outside.lock"
        outside.write_text(json.dumps({"session_id": SESSION_B, "created_at": T0}))
        link = lock_path(tmp_path, "1.0-evil")
        link.parent.mkdir(parents=True, exist_ok=True)
        link.symlink_to(outside)
        assert store.find_issue_for_session(SESSION_B) is None

    def test_find_issue_for_session(self, store: LockStore):
        store.acquire("1.0-parser", SESSION_A)
        store.acquire("1.0-lexer", SESSION_B)
        found = store.find_issue_for_session(SESSION_B)
        assert found is not None
        assert found.issue_id == "1.0-lexer"

    def test_issue_id_is_sanitized_into_lock_dir(self, store: LockStore, tmp_path: Path):
        store.acquire("../escape", SESSION_A)
        assert lock_path(tmp_path, "../escape").parent == tmp_path / ".claude" / "cat" / "locks"
        assert lock_path(tmp_path, "../escape").exists()
