from unittest.mock import MagicMock

import pytest

from foodhistory.service.errors import MissingEmailError, ReconciliationFailedError
from foodhistory.service.identity import FederatedClaims, IdentityReconciler
from foodhistory.storage.errors import ConstraintViolation, StorageError
from foodhistory.storage.memory import MemoryStore
from foodhistory.storage.models import ROLE_USER, Account


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def _spy(store):
    spy = MagicMock(wraps=store)
    return spy


class TestFederatedClaims:
    def test_from_oidc_userinfo(self):
        claims = FederatedClaims.from_userinfo(
            "google",
            {"sub": "1234", "email": " a@x.com ", "name": "Remote Name"},
            refresh_token="rt",
        )
        assert claims == FederatedClaims(
            subject="1234", email="a@x.com", name="Remote Name", refresh_token="rt"
        )

    def test_blank_values_become_none(self):
        claims = FederatedClaims.from_userinfo("google", {"id": 42, "email": "", "name": "  "})
        assert claims.subject == "42"
        assert claims.email is None
        assert claims.name is None

    def test_repr_hides_refresh_token(self):
        claims = FederatedClaims(subject="s", email="a@x.com", refresh_token="very-secret")
        assert "very-secret" not in repr(claims)


class TestReconcileNewIdentity:
    def test_unseen_email_creates_one_federated_account(self, store):
        spy = _spy(store)
        account = IdentityReconciler(spy).reconcile(
            FederatedClaims(subject="sub-1", email="new@x.com", name="New Person")
        )

        assert spy.create_account.call_count == 1
        assert spy.save_account.call_count == 0
        assert account.username == "New Person"
        assert account.email == "new@x.com"
        assert account.password_hash == ""
        assert account.federation_authorized is True
        assert account.enabled is True
        assert account.roles == frozenset({ROLE_USER})
        assert account.federated_subject == "sub-1"
        assert store.get_account_by_email("new@x.com").id == account.id

    def test_username_falls_back_to_email_local_part(self, store):
        account = IdentityReconciler(store).reconcile(
            FederatedClaims(subject="sub-1", email="jane.doe@x.com")
        )
        assert account.username == "jane.doe"

    def test_email_shaped_display_name_is_not_used_as_username(self, store):
        account = IdentityReconciler(store).reconcile(
            FederatedClaims(subject="sub-1", email="jane.doe@x.com", name="boss@x.com")
        )
        assert account.username == "jane.doe"

    def test_missing_email_is_rejected(self, store):
        spy = _spy(store)
        with pytest.raises(MissingEmailError):
            IdentityReconciler(spy).reconcile(FederatedClaims(subject="sub-1", name="No Email"))
        spy.get_account_by_email.assert_not_called()
        spy.create_account.assert_not_called()

    def test_display_name_taken_falls_back_to_email(self, store):
        store.create_account(Account.new("Common Name", email="other@x.com"))
        account = IdentityReconciler(store).reconcile(
            FederatedClaims(subject="sub-1", email="new@x.com", name="Common Name")
        )
        assert account.username == "new@x.com"


class TestReconcileExistingAccount:
    def test_local_account_merged_and_password_preserved(self, store):
        local = store.create_account(
            Account.new("local", email="a@x.com", password_hash="h1")
        )
        spy = _spy(store)

        account = IdentityReconciler(spy).reconcile(
            FederatedClaims(subject="sub-a", email="a@x.com", name="Remote Name")
        )

        assert account.id == local.id
        assert account.username == "Remote Name"
        assert account.password_hash == "h1"
        assert account.federation_authorized is True
        assert spy.save_account.call_count == 1
        assert spy.create_account.call_count == 0
        assert store.get_account(local.id).password_hash == "h1"
        assert len(store.accounts) == 1

    def test_repeated_identical_login_writes_once(self, store):
        spy = _spy(store)
        reconciler = IdentityReconciler(spy)
        claims = FederatedClaims(subject="sub-1", email="a@x.com", name="Same Name")

        reconciler.reconcile(claims)
        writes_after_first = spy.create_account.call_count + spy.save_account.call_count
        reconciler.reconcile(claims)
        writes_after_second = spy.create_account.call_count + spy.save_account.call_count

        assert writes_after_first == 1
        assert writes_after_second == 1

    def test_empty_name_keeps_stored_username(self, store):
        store.create_account(
            Account.new("kept", email="a@x.com", federation_authorized=True, federated_subject="s")
        )
        spy = _spy(store)
        account = IdentityReconciler(spy).reconcile(FederatedClaims(subject="s", email="a@x.com"))
        assert account.username == "kept"
        spy.save_account.assert_not_called()

    def test_email_shaped_display_name_keeps_stored_username(self, store):
        store.create_account(
            Account.new(
                "kept",
                email="a@x.com",
                password_hash="$argon2id$stub",
                federation_authorized=True,
                federated_subject="s",
            )
        )
        account = IdentityReconciler(store).reconcile(
            FederatedClaims(subject="s", email="a@x.com", name="boss@x.com")
        )
        assert account.username == "kept"

    def test_new_refresh_token_is_captured_in_single_write(self, store):
        store.create_account(
            Account.new(
                "Name",
                email="a@x.com",
                federation_authorized=True,
                federated_subject="s",
                federated_refresh_token="old",
            )
        )
        spy = _spy(store)
        account = IdentityReconciler(spy).reconcile(
            FederatedClaims(subject="s", email="a@x.com", name="Name", refresh_token="new")
        )
        assert account.federated_refresh_token == "new"
        assert spy.save_account.call_count == 1

    def test_email_match_is_case_insensitive(self, store):
        store.create_account(Account.new("local", email="A@X.com", password_hash="h1"))
        IdentityReconciler(store).reconcile(FederatedClaims(subject="s", email="a@x.com"))
        assert len(store.accounts) == 1

    def test_display_name_collision_keeps_stored_username(self, store):
        store.create_account(Account.new("Taken", email="other@x.com"))
        mine = store.create_account(Account.new("mine", email="a@x.com", password_hash="h1"))
        account = IdentityReconciler(store).reconcile(
            FederatedClaims(subject="s", email="a@x.com", name="Taken")
        )
        assert account.id == mine.id
        assert account.username == "mine"
        assert account.federation_authorized is True


class TestReconcileRace:
    def test_losing_writer_rereads_existing_account(self, store):
        winner = Account.new("Winner", email="race@x.com", federation_authorized=True)
        spy = _spy(store)
        lookups = {"count": 0}

        def lookup(email):
            lookups["count"] += 1
            if lookups["count"] == 1:
                # concurrent login commits between our lookup and create
                store.create_account(winner)
                return None
            return store.get_account_by_email(email)

        spy.get_account_by_email.side_effect = lookup

        account = IdentityReconciler(spy).reconcile(
            FederatedClaims(subject="s", email="race@x.com", name="Winner")
        )

        assert account.id == winner.id
        assert len(store.accounts) == 1


class TestReconcileFailures:
    def test_storage_error_surfaces_as_reconciliation_failure(self):
        broken = MagicMock()
        broken.get_account_by_email.side_effect = StorageError("connection lost")
        with pytest.raises(ReconciliationFailedError):
            IdentityReconciler(broken).reconcile(FederatedClaims(subject="s", email="a@x.com"))

    def test_write_failure_surfaces_as_reconciliation_failure(self):
        broken = MagicMock()
        broken.get_account_by_email.return_value = None
        broken.create_account.side_effect = RuntimeError("disk full")
        with pytest.raises(ReconciliationFailedError):
            IdentityReconciler(broken).reconcile(FederatedClaims(subject="s", email="a@x.com"))

    def test_unresolvable_constraint_violation_fails(self):
        broken = MagicMock()
        broken.get_account_by_email.return_value = None
        broken.create_account.side_effect = ConstraintViolation("email already exists", {"field": "email"})
        with pytest.raises(ReconciliationFailedError):
            IdentityReconciler(broken).reconcile(
                FederatedClaims(subject="s", email="a@x.com", name="Someone")
            )
