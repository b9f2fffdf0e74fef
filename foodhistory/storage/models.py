from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import FrozenSet, Optional

ROLE_USER = "USER"
ROLE_ADMIN = "ADMIN"


@dataclass
class Account:
    """A user of the application.

    ``username`` is both the local login name and the display name shown in
    the UI; federated logins may refresh it from the provider's ``name`` claim.
    ``password_hash`` is empty for accounts created purely via federation.
    """

    id: str
    username: str
    email: Optional[str] = None
    password_hash: str = ""
    roles: FrozenSet[str] = frozenset({ROLE_USER})
    enabled: bool = True
    federation_authorized: bool = False
    federated_subject: Optional[str] = None
    federated_refresh_token: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        *,
        email: Optional[str] = None,
        password_hash: str = "",
        roles: FrozenSet[str] | None = None,
        enabled: bool = True,
        federation_authorized: bool = False,
        federated_subject: Optional[str] = None,
        federated_refresh_token: Optional[str] = None,
    ) -> "Account":
        now = datetime.utcnow()
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=password_hash or "",
            roles=frozenset(roles) if roles else frozenset({ROLE_USER}),
            enabled=enabled,
            federation_authorized=federation_authorized,
            federated_subject=federated_subject,
            federated_refresh_token=federated_refresh_token,
            created_at=now,
            updated_at=now,
        )

    @property
    def has_local_credential(self) -> bool:
        return bool(self.password_hash)

    def copy(self) -> "Account":
        return replace(self)


@dataclass
class PersistentLoginToken:
    """One remember-me grant.

    ``id`` is the identity column introduced by the current table shape; rows
    read before migration have none.
    """

    series: str
    username: str
    token: str
    last_used: datetime
    ip: Optional[str] = None
    id: Optional[int] = None

    def __repr__(self) -> str:
        # token must never end up in logs or tracebacks
        return (
            f"PersistentLoginToken(id={self.id!r}, series={self.series[:6]!r}..., "
            f"username={self.username!r}, last_used={self.last_used!r}, ip={self.ip!r})"
        )
