from datetime import datetime

import pytest

from foodhistory.storage.errors import (
    ConstraintViolation,
    DuplicateSeriesError,
    StorageError,
    TokenNotFoundError,
)
from foodhistory.storage.memory import MemoryStore
from foodhistory.storage.migrations import PERSISTENT_LOGINS_COLUMNS, PERSISTENT_LOGINS_TABLE
from foodhistory.storage.models import Account, PersistentLoginToken


def _token(series="series-1", username="alice"):
    return PersistentLoginToken(
        series=series,
        username=username,
        token="secret-value",
        last_used=datetime(2024, 1, 1, 12, 0, 0),
    )


class TestAccounts:
    def test_create_and_lookup(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        account = store.create_account(Account.new("alice", email="Alice@Example.com"))

        assert store.get_account(account.id).username == "alice"
        assert store.get_account_by_username("alice").id == account.id
        assert store.get_account_by_email("alice@example.com").id == account.id
        assert store.get_account_by_email("") is None

    def test_email_is_unique(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        store.create_account(Account.new("alice", email="a@x.com"))

        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_account(Account.new("bob", email="A@x.com"))
        assert excinfo.value.detail["field"] == "email"

    def test_username_is_unique(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        store.create_account(Account.new("alice"))

        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_account(Account.new("alice", email="other@x.com"))
        assert excinfo.value.detail["field"] == "username"

    def test_accounts_without_email_do_not_collide(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        store.create_account(Account.new("alice"))
        store.create_account(Account.new("bob"))
        assert store.get_account_by_username("bob") is not None

    def test_returned_accounts_are_copies(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        account = store.create_account(Account.new("alice"))
        fetched = store.get_account(account.id)
        fetched.username = "mutated"
        assert store.get_account(account.id).username == "alice"

    def test_save_missing_account_raises(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        with pytest.raises(StorageError):
            store.save_account(Account.new("ghost"))

    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        account = store.create_account(
            Account.new("alice", email="a@x.com", password_hash="h1", federation_authorized=True)
        )
        store.create_persistent_login(_token())

        reloaded = MemoryStore(fs_root=str(tmp_path))
        restored = reloaded.get_account(account.id)
        assert restored.password_hash == "h1"
        assert restored.federation_authorized is True
        assert restored.roles == account.roles
        token = reloaded.get_persistent_login("series-1")
        assert token.last_used == datetime(2024, 1, 1, 12, 0, 0)
        assert token.id == 1


class TestPersistentLogins:
    def test_fresh_store_uses_current_shape(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        assert store.column_names(PERSISTENT_LOGINS_TABLE) == list(PERSISTENT_LOGINS_COLUMNS)

    def test_create_assigns_identity(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        first = store.create_persistent_login(_token("s1"))
        second = store.create_persistent_login(_token("s2"))
        assert (first.id, second.id) == (1, 2)
        assert first.ip is None

    def test_duplicate_series_rejected(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        store.create_persistent_login(_token("s1", username="alice"))

        with pytest.raises(DuplicateSeriesError):
            store.create_persistent_login(_token("s1", username="bob"))
        assert store.get_persistent_login("s1").username == "alice"

    def test_update_ip_and_last_used(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        store.create_persistent_login(_token("s1"))
        store.update_persistent_login_ip("s1", "203.0.113.7")
        store.update_persistent_login_last_used("s1", datetime(2024, 2, 1))

        token = store.get_persistent_login("s1")
        assert token.ip == "203.0.113.7"
        assert token.last_used == datetime(2024, 2, 1)

    def test_update_unknown_series_raises(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        with pytest.raises(TokenNotFoundError):
            store.update_persistent_login_ip("missing", "203.0.113.7")

    def test_find_unknown_series_returns_none(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        assert store.get_persistent_login("missing") is None

    def test_repr_hides_token_value(self):
        assert "secret-value" not in repr(_token())
