from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, FrozenSet, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from foodhistory.config import Settings
from foodhistory.logging import get_logger, series_prefix
from foodhistory.service.errors import (
    AccountDisabledError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    TokenIssuanceFailedError,
    ValidationError,
)
from foodhistory.service.identity import AccountStore, FederatedClaims, IdentityReconciler
from foodhistory.service.tokens import (
    DecodeError,
    decode_cookie,
    encode_cookie,
    generate_random_token,
    tokens_match,
)
from foodhistory.storage.errors import ConstraintViolation, DuplicateSeriesError
from foodhistory.storage.models import ROLE_ADMIN, ROLE_USER, Account, PersistentLoginToken

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


class PersistentLoginStore(Protocol):
    def create_persistent_login(self, token: PersistentLoginToken) -> PersistentLoginToken: ...

    def get_persistent_login(self, series: str) -> Optional[PersistentLoginToken]: ...

    def update_persistent_login_ip(self, series: str, ip: Optional[str]) -> None: ...

    def update_persistent_login_last_used(self, series: str, last_used: datetime) -> None: ...


class LoginState(str, Enum):
    START = "start"
    RESOLVING_IDENTITY = "resolving_identity"
    IDENTITY_RESOLVED = "identity_resolved"
    COMPUTING_EFFECTIVE_USERNAME = "computing_effective_username"
    ISSUING_TOKEN = "issuing_token"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class LoginOutcome:
    """A resolved principal plus its optional remember-me grant."""

    account: Account
    effective_username: str
    authorities: FrozenSet[str]
    remember_me_cookie: Optional[str] = None
    series: Optional[str] = None
    token_error: Optional[str] = None
    states: List[LoginState] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return ROLE_ADMIN in self.authorities


def effective_username(account: Account) -> str:
    """Email for federation-only accounts, otherwise the local username."""
    if not account.has_local_credential and account.email:
        return account.email
    return account.username


class AuthenticationOutcomeResolver:
    """Turn a completed login into principal, authorities and remember-me grant."""

    def __init__(
        self,
        store: PersistentLoginStore,
        reconciler: IdentityReconciler,
        *,
        admin_email: Optional[str] = None,
        remember_me_on_local_login: bool = True,
        token_factory: Callable[[], str] = generate_random_token,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.admin_email = admin_email.strip().lower() if admin_email else None
        self.remember_me_on_local_login = remember_me_on_local_login
        self._token_factory = token_factory
        self._clock = clock
        self.logger = logger

    def authorities_for(self, account: Account) -> FrozenSet[str]:
        # Elevation is decided per login and never written back to the account
        authorities = set(account.roles) or {ROLE_USER}
        if (
            self.admin_email
            and account.email
            and account.email.strip().lower() == self.admin_email
        ):
            authorities.add(ROLE_ADMIN)
        return frozenset(authorities)

    def resolve_federated(
        self, claims: FederatedClaims, *, remember_me: bool, ip: Optional[str] = None
    ) -> LoginOutcome:
        states = [LoginState.START, LoginState.RESOLVING_IDENTITY]
        try:
            account = self.reconciler.reconcile(claims)
        except Exception:
            states.append(LoginState.FAILED)
            self.logger.warning("federated_login_failed", states=[s.value for s in states])
            raise
        return self._complete(account, states, remember_me=remember_me, ip=ip)

    def resolve_local(
        self, account: Account, *, remember_me: bool, ip: Optional[str] = None
    ) -> LoginOutcome:
        """Resolve an account whose local password has already been verified."""
        states = [LoginState.START, LoginState.RESOLVING_IDENTITY]
        return self._complete(
            account,
            states,
            remember_me=remember_me and self.remember_me_on_local_login,
            ip=ip,
        )

    def _complete(
        self,
        account: Account,
        states: List[LoginState],
        *,
        remember_me: bool,
        ip: Optional[str],
    ) -> LoginOutcome:
        if not account.enabled:
            states.append(LoginState.FAILED)
            self.logger.warning("login_account_disabled", account_id=account.id)
            raise AccountDisabledError("account is disabled")
        states.append(LoginState.IDENTITY_RESOLVED)

        states.append(LoginState.COMPUTING_EFFECTIVE_USERNAME)
        outcome = LoginOutcome(
            account=account,
            effective_username=effective_username(account),
            authorities=self.authorities_for(account),
            states=states,
        )

        if remember_me:
            states.append(LoginState.ISSUING_TOKEN)
            try:
                series, cookie = self.issue_token(outcome.effective_username, ip=ip)
            except TokenIssuanceFailedError as exc:
                # the login stands; only the remember-me grant is missing
                outcome.token_error = exc.error_code
            else:
                outcome.series = series
                outcome.remember_me_cookie = cookie

        states.append(LoginState.COMPLETE)
        self.logger.info(
            "login_resolved",
            account_id=account.id,
            admin=outcome.is_admin,
            remember_me=outcome.remember_me_cookie is not None,
        )
        return outcome

    def issue_token(self, username: str, *, ip: Optional[str] = None) -> tuple[str, str]:
        """Persist a fresh grant and return ``(series, cookie_value)``.

        A duplicate series is retried once with new material.

        Raises:
            TokenIssuanceFailedError: the grant could not be persisted.
        """
        created: Optional[PersistentLoginToken] = None
        for attempt in (1, 2):
            candidate = PersistentLoginToken(
                series=self._token_factory(),
                username=username,
                token=self._token_factory(),
                last_used=self._clock(),
            )
            try:
                created = self.store.create_persistent_login(candidate)
                break
            except DuplicateSeriesError:
                self.logger.warning(
                    "remember_me_series_collision",
                    attempt=attempt,
                    series=series_prefix(candidate.series),
                )
            except Exception as exc:
                self.logger.error(
                    "remember_me_token_create_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise TokenIssuanceFailedError("failed to persist remember-me token") from exc
        if created is None:
            self.logger.error("remember_me_token_create_failed", reason="duplicate_series")
            raise TokenIssuanceFailedError("failed to persist remember-me token")

        self.logger.info("remember_me_token_created", series=series_prefix(created.series))
        if ip:
            self._record_ip(created.series, ip)
        return created.series, encode_cookie(created.series, created.token)

    def _record_ip(self, series: str, ip: str) -> None:
        try:
            self.store.update_persistent_login_ip(series, ip)
        except Exception as exc:
            self.logger.warning(
                "remember_me_ip_update_failed",
                series=series_prefix(series),
                error=str(exc),
            )


class AuthService:
    """Local credentials, federated logins and remember-me restoration."""

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        resolver: AuthenticationOutcomeResolver,
        *,
        token_store: Optional[PersistentLoginStore] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.store = store
        self.token_store: PersistentLoginStore = token_store or resolver.store
        self.settings = settings
        self.resolver = resolver
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._clock = clock
        self.logger = logger

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, account: Account, password: str) -> bool:
        if not account.has_local_credential:
            self.logger.info("password_login_without_local_credential", account_id=account.id)
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", account_id=account.id)
            return False

    @staticmethod
    def _validate_password(password: str, confirm_password: str) -> None:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        if not any(ch.isalpha() for ch in password) or not any(
            ch.isdigit() for ch in password
        ):
            raise ValidationError(
                "password must contain at least one letter and one digit",
                detail={"field": "password"},
            )
        if password != confirm_password:
            raise ValidationError(
                "passwords do not match", detail={"field": "confirm_password"}
            )

    def register(
        self,
        username: str,
        password: str,
        confirm_password: str,
        *,
        email: Optional[str] = None,
    ) -> Account:
        username = (username or "").strip()
        if not username:
            raise ValidationError("username is required", detail={"field": "username"})
        if "@" in username:
            # email-shaped names are reserved for federation-only principals
            raise ValidationError(
                "username must not contain '@'", detail={"field": "username"}
            )
        self._validate_password(password or "", confirm_password or "")
        email = email.strip() if email and email.strip() else None
        if self.store.get_account_by_username(username) is not None:
            raise ConflictError("username already exists", detail={"field": "username"})
        if email and self.store.get_account_by_email(email) is not None:
            raise ConflictError("email already exists", detail={"field": "email"})
        account = Account.new(
            username,
            email=email,
            password_hash=self._hash_password(password),
            roles=frozenset({ROLE_USER}),
        )
        try:
            created = self.store.create_account(account)
        except ConstraintViolation as exc:
            field_name = exc.detail.get("field", "username")
            raise ConflictError(exc.message, detail={"field": field_name}) from exc
        self.logger.info("account_registered", account_id=created.id)
        return created

    def _find_local_account(self, login: str) -> Optional[Account]:
        account = self.store.get_account_by_username(login)
        if account is None and "@" in login:
            account = self.store.get_account_by_email(login)
        return account

    def _find_remembered_account(self, name: str) -> Optional[Account]:
        if "@" in name:
            account = self.store.get_account_by_email(name)
        else:
            account = self.store.get_account_by_username(name)
        if account is not None and effective_username(account) != name:
            return None
        return account

    def login(
        self,
        username: str,
        password: str,
        *,
        remember_me: bool = False,
        ip: Optional[str] = None,
    ) -> LoginOutcome:
        login = (username or "").strip()
        account = self._find_local_account(login) if login else None
        if account is None or not self.verify_password(account, password or ""):
            self.logger.info("local_login_rejected")
            raise InvalidCredentialsError("invalid username or password")
        return self.resolver.resolve_local(account, remember_me=remember_me, ip=ip)

    def federated_login(
        self, claims: FederatedClaims, *, remember_me: bool = True, ip: Optional[str] = None
    ) -> LoginOutcome:
        return self.resolver.resolve_federated(claims, remember_me=remember_me, ip=ip)

    def _idle_expired(self, token: PersistentLoginToken) -> bool:
        max_idle_days = self.settings.remember_me_max_idle_days
        if not max_idle_days:
            return False
        return self._clock() - token.last_used > timedelta(days=max_idle_days)

    def restore(self, cookie_value: Optional[str], *, ip: Optional[str] = None) -> Optional[LoginOutcome]:
        """Re-authenticate from a remember-me cookie.

        Every failure (undecodable cookie, unknown series, token mismatch,
        idle expiry, missing or disabled account, store errors) yields None,
        which callers treat exactly like an absent cookie.
        """
        decoded = decode_cookie(cookie_value)
        if isinstance(decoded, DecodeError):
            if cookie_value:
                self.logger.info("remember_me_cookie_undecodable", reason=decoded.reason)
            return None
        series, presented = decoded
        try:
            token = self.token_store.get_persistent_login(series)
        except Exception as exc:
            self.logger.warning("remember_me_lookup_failed", error=str(exc))
            return None
        if token is None:
            self.logger.info("remember_me_series_unknown", series=series_prefix(series))
            return None
        if not tokens_match(presented, token.token):
            self.logger.warning("remember_me_token_mismatch", series=series_prefix(series))
            return None
        if self._idle_expired(token):
            self.logger.info("remember_me_token_idle_expired", series=series_prefix(series))
            return None

        try:
            account = self._find_remembered_account(token.username)
        except Exception as exc:
            self.logger.warning("remember_me_account_lookup_failed", error=str(exc))
            return None
        if account is None or not account.enabled:
            self.logger.info("remember_me_account_unavailable", series=series_prefix(series))
            return None

        self._touch(token, ip)
        return LoginOutcome(
            account=account,
            effective_username=effective_username(account),
            authorities=self.resolver.authorities_for(account),
            series=token.series,
            states=[LoginState.COMPLETE],
        )

    def _touch(self, token: PersistentLoginToken, ip: Optional[str]) -> None:
        try:
            self.token_store.update_persistent_login_last_used(token.series, self._clock())
            if ip and ip != token.ip:
                self.token_store.update_persistent_login_ip(token.series, ip)
        except Exception as exc:
            self.logger.warning(
                "remember_me_touch_failed",
                series=series_prefix(token.series),
                error=str(exc),
            )

    def authorize_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        if account.federation_authorized:
            return account
        account.federation_authorized = True
        saved = self.store.save_account(account)
        self.logger.info("account_authorized", account_id=saved.id)
        return saved


__all__ = [
    "AuthService",
    "AuthenticationOutcomeResolver",
    "LoginOutcome",
    "LoginState",
    "PersistentLoginStore",
    "effective_username",
]
