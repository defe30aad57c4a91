"""Unit tests for qrauth/store.py -- TokenStore persistence and invariants.

Covers:
- insert / find by token and by user
- replace_active() supersedes atomically and keeps history rows
- partial unique index rejects a second active row (ActiveTokenConflict)
- expired rows are invisible to find_active_* but still counted as flagged
- deactivate_token() / deactivate_all_for_user() return values
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.errors import ActiveTokenConflict, StorageError
from qrauth.store import TokenStore, to_iso

T1 = "a" * 64
T2 = "b" * 64
T3 = "c" * 64


def _past() -> str:
    return to_iso(datetime.now(timezone.utc) - timedelta(minutes=5))


def _future() -> str:
    return to_iso(datetime.now(timezone.utc) + timedelta(hours=1))


class TestLookups:
    def test_insert_then_find_by_token(self, store: TokenStore) -> None:
        row = store.insert_active("u1", T1)
        assert row.id is not None
        assert row.created_at

        found = store.find_active_by_token(T1)
        assert found is not None
        assert found.user_id == "u1"
        assert found.is_active is True
        assert found.expires_at is None

    def test_find_unknown_token_returns_none(self, store: TokenStore) -> None:
        assert store.find_active_by_token(T1) is None

    def test_find_active_by_user(self, store: TokenStore) -> None:
        store.insert_active("u1", T1)
        store.insert_active("u2", T2)
        assert store.find_active_by_user("u1").token == T1
        assert store.find_active_by_user("u2").token == T2
        assert store.find_active_by_user("u3") is None

    def test_prefix_is_first_eight_chars(self, store: TokenStore) -> None:
        row = store.insert_active("u1", "0123456789" + "f" * 54)
        assert row.prefix == "01234567"


class TestSingleActiveInvariant:
    def test_second_insert_for_same_user_conflicts(self, store: TokenStore) -> None:
        store.insert_active("u1", T1)
        with pytest.raises(ActiveTokenConflict):
            store.insert_active("u1", T2)
        # The failed insert left nothing behind.
        assert store.count_active_for_user("u1") == 1
        assert store.find_active_by_token(T2) is None

    def test_conflict_is_a_storage_error(self) -> None:
        assert issubclass(ActiveTokenConflict, StorageError)

    def test_other_users_are_independent(self, store: TokenStore) -> None:
        store.insert_active("u1", T1)
        store.insert_active("u2", T2)
        assert store.count_active_for_user("u1") == 1
        assert store.count_active_for_user("u2") == 1

    def test_replace_active_supersedes(self, store: TokenStore) -> None:
        store.insert_active("u1", T1)
        new = store.replace_active("u1", T2)

        assert new.token == T2
        assert store.find_active_by_token(T1) is None
        assert store.find_active_by_token(T2) is not None
        assert store.count_active_for_user("u1") == 1

    def test_replace_keeps_history(self, store: TokenStore) -> None:
        store.insert_active("u1", T1)
        store.replace_active("u1", T2)
        store.replace_active("u1", T3)

        history = store.list_for_user("u1")
        assert [r.token for r in history] == [T3, T2, T1]
        assert [r.is_active for r in history] == [True, False, False]
        assert history[1].deactivated_at is not None
        assert history[0].deactivated_at is None

    def test_replace_rolls_back_on_duplicate_token(self, store: TokenStore) -> None:
        """A failed insert must not leave the user with zero active tokens."""
        store.insert_active("u1", T1)
        store.insert_active("u2", T2)
        with pytest.raises(StorageError):
            store.replace_active("u1", T2)  # T2 already exists (UNIQUE token)
        assert store.find_active_by_user("u1").token == T1

    def test_replace_for_new_user_inserts(self, store: TokenStore) -> None:
        row = store.replace_active("u9", T1)
        assert row.is_active is True
        assert store.count_active_for_user("u9") == 1


class TestExpiry:
    def test_expired_row_is_invisible(self, store: TokenStore) -> None:
        store.insert_active("u1", T1, expires_at=_past())
        assert store.find_active_by_token(T1) is None
        assert store.find_active_by_user("u1") is None
        # Still flagged active until the next replace/revoke.
        assert store.count_active_for_user("u1") == 1

    def test_unexpired_row_is_visible(self, store: TokenStore) -> None:
        expires = _future()
        store.insert_active("u1", T1, expires_at=expires)
        found = store.find_active_by_token(T1)
        assert found is not None
        assert found.expires_at == expires

    def test_replace_clears_expired_row(self, store: TokenStore) -> None:
        store.insert_active("u1", T1, expires_at=_past())
        store.replace_active("u1", T2)
        assert store.count_active_for_user("u1") == 1
        assert store.find_active_by_user("u1").token == T2


class TestDeactivation:
    def test_deactivate_token(self, store: TokenStore) -> None:
        store.insert_active("u1", T1)
        assert store.deactivate_token(T1) is True
        assert store.find_active_by_token(T1) is None
        # Already inactive: nothing changes.
        assert store.deactivate_token(T1) is False

    def test_deactivate_unknown_token(self, store: TokenStore) -> None:
        assert store.deactivate_token(T1) is False

    def test_deactivate_all_for_user(self, store: TokenStore) -> None:
        store.insert_active("u1", T1)
        store.insert_active("u2", T2)
        assert store.deactivate_all_for_user("u1") == 1
        assert store.deactivate_all_for_user("u1") == 0
        assert store.find_active_by_user("u1") is None
        assert store.find_active_by_user("u2") is not None

    def test_rows_are_never_deleted(self, store: TokenStore) -> None:
        store.insert_active("u1", T1)
        store.deactivate_all_for_user("u1")
        history = store.list_for_user("u1")
        assert len(history) == 1
        assert history[0].is_active is False


def test_ping(store: TokenStore) -> None:
    assert store.ping() is True
