from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

from foodhistory.logging import get_logger
from foodhistory.service.errors import MissingEmailError, ReconciliationFailedError
from foodhistory.storage.errors import ConstraintViolation
from foodhistory.storage.models import ROLE_USER, Account

logger = get_logger(__name__)


class AccountStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_username(self, username: str) -> Optional[Account]: ...

    def create_account(self, account: Account) -> Account: ...

    def save_account(self, account: Account) -> Account: ...


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class FederatedClaims:
    """Claims from an identity provider, resolved once at the OAuth boundary."""

    subject: str
    email: Optional[str] = None
    name: Optional[str] = None
    refresh_token: Optional[str] = None

    @classmethod
    def from_userinfo(
        cls,
        provider: str,
        userinfo: Mapping[str, Any],
        *,
        refresh_token: Optional[str] = None,
    ) -> "FederatedClaims":
        """Parse a provider userinfo document into typed claims."""
        # OIDC userinfo uses "sub"; Google's v2 endpoint uses "id"
        subject = userinfo.get("sub") or userinfo.get("id")
        return cls(
            subject=_clean(subject) or "",
            email=_clean(userinfo.get("email")),
            name=_clean(userinfo.get("name")),
            refresh_token=_clean(refresh_token),
        )

    def __repr__(self) -> str:
        return (
            f"FederatedClaims(subject={self.subject!r}, email={self.email!r}, "
            f"name={self.name!r}, refresh_token={'***' if self.refresh_token else None})"
        )


def _usable_name(name: Optional[str]) -> Optional[str]:
    # Email-shaped names would collide with federation-only principals
    if name and "@" not in name:
        return name
    return None


def _default_username(claims: FederatedClaims, email: str) -> str:
    return _usable_name(claims.name) or email.split("@", 1)[0] or email


class IdentityReconciler:
    """Map a federated identity onto exactly one account, keyed by email."""

    def __init__(self, store: AccountStore) -> None:
        self.store = store
        self.logger = logger

    def reconcile(self, claims: FederatedClaims) -> Account:
        """Return the account for ``claims``, creating or updating it as needed.

        An existing account keeps its local password hash untouched. At most one
        write is issued, and none when nothing changed.

        Raises:
            MissingEmailError: the claims carry no email.
            ReconciliationFailedError: the store failed during lookup or write.
        """
        email = claims.email.strip() if claims.email else ""
        if not email:
            self.logger.warning("reconcile_missing_email", subject=claims.subject)
            raise MissingEmailError("identity provider did not supply an email")
        try:
            account = self.store.get_account_by_email(email)
            if account is not None:
                return self._update(account, claims)
            return self._create(claims, email)
        except ReconciliationFailedError:
            raise
        except Exception as exc:
            self.logger.error(
                "reconcile_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ReconciliationFailedError(
                "failed to reconcile federated identity"
            ) from exc

    def _apply_claims(self, account: Account, claims: FederatedClaims) -> bool:
        changed = False
        name = _usable_name(claims.name)
        if name and name != account.username:
            account.username = name
            changed = True
        if not account.federation_authorized:
            account.federation_authorized = True
            changed = True
        if claims.subject and not account.federated_subject:
            account.federated_subject = claims.subject
            changed = True
        if claims.refresh_token and claims.refresh_token != account.federated_refresh_token:
            account.federated_refresh_token = claims.refresh_token
            changed = True
        return changed

    def _update(self, account: Account, claims: FederatedClaims) -> Account:
        original_username = account.username
        updated = account.copy()
        if not self._apply_claims(updated, claims):
            self.logger.info("reconcile_unchanged", account_id=account.id)
            return account
        try:
            saved = self.store.save_account(updated)
        except ConstraintViolation as exc:
            if exc.detail.get("field") != "username" or updated.username == original_username:
                raise
            # display name already taken by another account; keep the stored one
            self.logger.warning("reconcile_username_taken", account_id=account.id)
            updated.username = original_username
            saved = self.store.save_account(updated)
        self.logger.info("reconcile_updated", account_id=saved.id)
        return saved

    def _create(self, claims: FederatedClaims, email: str) -> Account:
        account = Account.new(
            _default_username(claims, email),
            email=email,
            password_hash="",
            roles=frozenset({ROLE_USER}),
            enabled=True,
            federation_authorized=True,
            federated_subject=claims.subject or None,
            federated_refresh_token=claims.refresh_token,
        )
        try:
            created = self.store.create_account(account)
        except ConstraintViolation:
            # a concurrent login may have created the account first
            existing = self.store.get_account_by_email(email)
            if existing is not None:
                self.logger.info("reconcile_create_raced", account_id=existing.id)
                return self._update(existing, claims)
            if account.username == email:
                raise
            self.logger.warning("reconcile_username_taken_on_create")
            account.username = email
            created = self.store.create_account(account)
        self.logger.info("reconcile_created", account_id=created.id)
        return created


__all__ = ["AccountStore", "FederatedClaims", "IdentityReconciler"]
