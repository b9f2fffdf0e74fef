from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from foodhistory.logging import get_logger
from foodhistory.storage.errors import (
    ConstraintViolation,
    DuplicateSeriesError,
    StorageError,
    TokenNotFoundError,
)
from foodhistory.storage.migrations import (
    PERSISTENT_LOGINS_BACKUP_TABLE,
    PERSISTENT_LOGINS_TABLE,
)
from foodhistory.storage.models import Account, PersistentLoginToken

# Table names are interpolated into DDL; only these are ever accepted.
_KNOWN_TABLES = frozenset({PERSISTENT_LOGINS_TABLE, PERSISTENT_LOGINS_BACKUP_TABLE})

_ACCOUNT_COLUMNS = (
    "id, username, email, password_hash, roles, enabled, federation_authorized, "
    "federated_subject, federated_refresh_token, created_at, updated_at"
)

_CREATE_PERSISTENT_LOGINS = f"""
    CREATE TABLE IF NOT EXISTS {PERSISTENT_LOGINS_TABLE} (
        id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
        series VARCHAR(64) NOT NULL UNIQUE,
        username VARCHAR(255) NOT NULL,
        token VARCHAR(64) NOT NULL,
        last_used TIMESTAMP NOT NULL,
        ip VARCHAR(45)
    )
"""


def _checked_table(table: str) -> str:
    if table not in _KNOWN_TABLES:
        raise StorageError("unsupported table", {"table": table})
    return table


class PostgresStore:
    """Postgres-backed account and persistent-login store."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_account_table()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_account_table(self) -> None:
        """Create ``app_account`` when missing.

        ``persistent_logins`` is deliberately left alone here; its shape is
        owned by the startup migration.
        """
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_account (
                    id UUID PRIMARY KEY,
                    username TEXT NOT NULL UNIQUE,
                    email TEXT,
                    password_hash TEXT NOT NULL DEFAULT '',
                    roles TEXT[] NOT NULL DEFAULT ARRAY['USER'],
                    enabled BOOLEAN NOT NULL DEFAULT TRUE,
                    federation_authorized BOOLEAN NOT NULL DEFAULT FALSE,
                    federated_subject TEXT,
                    federated_refresh_token TEXT,
                    created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
                    updated_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc')
                )
                """
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS app_account_email_key "
                "ON app_account (lower(email))"
            )

    # accounts
    def _account_from_row(self, row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            username=row["username"],
            email=row.get("email"),
            password_hash=row.get("password_hash") or "",
            roles=frozenset(row.get("roles") or []),
            enabled=row.get("enabled", True),
            federation_authorized=row.get("federation_authorized", False),
            federated_subject=row.get("federated_subject"),
            federated_refresh_token=row.get("federated_refresh_token"),
            created_at=row.get("created_at") or datetime.utcnow(),
            updated_at=row.get("updated_at") or datetime.utcnow(),
        )

    @staticmethod
    def _constraint_field(exc: errors.UniqueViolation) -> str:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
        return "email" if "email" in constraint else "username"

    def get_account(self, account_id: str) -> Optional[Account]:
        try:
            uuid.UUID(str(account_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM app_account WHERE id = %s",
                (account_id,),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM app_account WHERE username = %s",
                (username,),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        if not email or not email.strip():
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM app_account WHERE lower(email) = lower(%s)",
                (email.strip(),),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def create_account(self, account: Account) -> Account:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_account (
                        id, username, email, password_hash, roles, enabled,
                        federation_authorized, federated_subject, federated_refresh_token,
                        created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.username,
                        account.email,
                        account.password_hash,
                        sorted(account.roles),
                        account.enabled,
                        account.federation_authorized,
                        account.federated_subject,
                        account.federated_refresh_token,
                        account.created_at,
                        account.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = self._constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return account.copy()

    def save_account(self, account: Account) -> Account:
        updated_at = datetime.utcnow()
        try:
            with self._connect() as conn:
                result = conn.execute(
                    """
                    UPDATE app_account
                    SET username = %s, email = %s, password_hash = %s, roles = %s,
                        enabled = %s, federation_authorized = %s, federated_subject = %s,
                        federated_refresh_token = %s, updated_at = %s
                    WHERE id = %s
                    """,
                    (
                        account.username,
                        account.email,
                        account.password_hash,
                        sorted(account.roles),
                        account.enabled,
                        account.federation_authorized,
                        account.federated_subject,
                        account.federated_refresh_token,
                        updated_at,
                        account.id,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = self._constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        if result.rowcount == 0:
            raise StorageError("account not found", {"account_id": account.id})
        stored = account.copy()
        stored.updated_at = updated_at
        return stored

    # persistent logins
    def create_persistent_login(self, token: PersistentLoginToken) -> PersistentLoginToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO {PERSISTENT_LOGINS_TABLE} (series, username, token, last_used, ip)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (token.series, token.username, token.token, token.last_used, token.ip),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise DuplicateSeriesError(
                "persistent login series already exists", {"field": "series"}
            ) from exc
        return PersistentLoginToken(
            id=row["id"] if row else None,
            series=token.series,
            username=token.username,
            token=token.token,
            last_used=token.last_used,
            ip=token.ip,
        )

    def get_persistent_login(self, series: str) -> Optional[PersistentLoginToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {PERSISTENT_LOGINS_TABLE} WHERE series = %s", (series,)
            ).fetchone()
        if not row:
            return None
        return PersistentLoginToken(
            id=row.get("id"),
            series=row["series"],
            username=row["username"],
            token=row["token"],
            last_used=row["last_used"],
            ip=row.get("ip"),
        )

    def update_persistent_login_ip(self, series: str, ip: Optional[str]) -> None:
        with self._connect() as conn:
            result = conn.execute(
                f"UPDATE {PERSISTENT_LOGINS_TABLE} SET ip = %s WHERE series = %s",
                (ip, series),
            )
        if result.rowcount == 0:
            raise TokenNotFoundError("persistent login not found")

    def update_persistent_login_last_used(self, series: str, last_used: datetime) -> None:
        with self._connect() as conn:
            result = conn.execute(
                f"UPDATE {PERSISTENT_LOGINS_TABLE} SET last_used = %s WHERE series = %s",
                (last_used, series),
            )
        if result.rowcount == 0:
            raise TokenNotFoundError("persistent login not found")

    # table operations used by the startup migration
    def table_exists(self, table: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT to_regclass(%s) AS oid", (_checked_table(table),)
            ).fetchone()
        return bool(row and row.get("oid"))

    def column_names(self, table: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT column_name
                FROM information_schema.columns
                WHERE table_schema = current_schema() AND table_name = %s
                ORDER BY ordinal_position
                """,
                (_checked_table(table),),
            ).fetchall()
        return [row["column_name"] for row in rows]

    def copy_table(self, source: str, target: str) -> None:
        with self._connect() as conn:
            conn.execute(
                f"CREATE TABLE IF NOT EXISTS {_checked_table(target)} "
                f"AS SELECT * FROM {_checked_table(source)}"
            )

    def drop_table(self, table: str) -> None:
        with self._connect() as conn:
            conn.execute(f"DROP TABLE IF EXISTS {_checked_table(table)}")

    def create_persistent_logins_table(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_PERSISTENT_LOGINS)

    def fetch_rows(self, table: str) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            return list(
                conn.execute(f"SELECT * FROM {_checked_table(table)}").fetchall()
            )

    def insert_persistent_login_row(
        self,
        series: str,
        username: str,
        token: str,
        last_used: datetime,
        ip: Optional[str] = None,
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO {PERSISTENT_LOGINS_TABLE} (series, username, token, last_used, ip)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (series, username, token, last_used, ip),
                )
        except errors.UniqueViolation as exc:
            raise DuplicateSeriesError(
                "persistent login series already exists", {"field": "series"}
            ) from exc
