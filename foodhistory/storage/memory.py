from __future__ import annotations

import copy
import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from foodhistory.logging import get_logger
from foodhistory.storage.errors import (
    ConstraintViolation,
    DuplicateSeriesError,
    StorageError,
    TokenNotFoundError,
)
from foodhistory.storage.migrations import (
    PERSISTENT_LOGINS_COLUMNS,
    PERSISTENT_LOGINS_TABLE,
)
from foodhistory.storage.models import Account, PersistentLoginToken


@dataclass
class _Table:
    columns: List[str]
    rows: List[Dict[str, Any]] = field(default_factory=list)


def _normalize_email(email: Optional[str]) -> Optional[str]:
    return email.strip().lower() if email else None


class MemoryStore:
    """In-memory backing store with a JSON snapshot under ``fs_root/state``.

    Persistent logins are kept as a column-addressed table so the startup
    migration can operate on legacy snapshots exactly as it does on Postgres.
    """

    def __init__(self, fs_root: str = "/tmp/foodhistory") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.tables: Dict[str, _Table] = {}
        self._row_id_seq: int = 1
        # RLock so migration helpers can nest inside public operations
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self.create_persistent_logins_table()
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # accounts
    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return account.copy() if account else None

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if account.username == username:
                    return account.copy()
        return None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = _normalize_email(email)
        if not normalized:
            return None
        with self._data_lock:
            for account in self.accounts.values():
                if _normalize_email(account.email) == normalized:
                    return account.copy()
        return None

    def _check_unique(self, account: Account) -> None:
        email = _normalize_email(account.email)
        for existing in self.accounts.values():
            if existing.id == account.id:
                continue
            if email and _normalize_email(existing.email) == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing.username == account.username:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )

    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            if account.id in self.accounts:
                raise ConstraintViolation("account already exists", {"field": "id"})
            self._check_unique(account)
            self.accounts[account.id] = account.copy()
            self._persist_state()
        return account.copy()

    def save_account(self, account: Account) -> Account:
        with self._data_lock:
            if account.id not in self.accounts:
                raise StorageError("account not found", {"account_id": account.id})
            self._check_unique(account)
            stored = account.copy()
            stored.updated_at = datetime.utcnow()
            self.accounts[account.id] = stored
            self._persist_state()
            return stored.copy()

    # persistent logins
    def _persistent_logins(self) -> _Table:
        table = self.tables.get(PERSISTENT_LOGINS_TABLE)
        if table is None:
            raise StorageError(
                "persistent_logins table is missing", {"table": PERSISTENT_LOGINS_TABLE}
            )
        return table

    def _find_row(self, table: _Table, series: str) -> Optional[Dict[str, Any]]:
        for row in table.rows:
            if row.get("series") == series:
                return row
        return None

    def _row_to_token(self, row: Dict[str, Any]) -> PersistentLoginToken:
        return PersistentLoginToken(
            id=row.get("id"),
            series=row["series"],
            username=row["username"],
            token=row["token"],
            last_used=row["last_used"],
            ip=row.get("ip"),
        )

    def create_persistent_login(self, token: PersistentLoginToken) -> PersistentLoginToken:
        with self._data_lock:
            table = self._persistent_logins()
            if self._find_row(table, token.series) is not None:
                raise DuplicateSeriesError(
                    "persistent login series already exists", {"field": "series"}
                )
            self.insert_persistent_login_row(
                series=token.series,
                username=token.username,
                token=token.token,
                last_used=token.last_used,
                ip=token.ip,
            )
            row = self._find_row(table, token.series)
            return self._row_to_token(row)

    def get_persistent_login(self, series: str) -> Optional[PersistentLoginToken]:
        with self._data_lock:
            table = self._persistent_logins()
            row = self._find_row(table, series)
            return self._row_to_token(row) if row else None

    def _update_persistent_login_field(self, series: str, column: str, value: Any) -> None:
        with self._data_lock:
            table = self._persistent_logins()
            if column not in table.columns:
                raise StorageError(
                    "unknown persistent_logins column", {"column": column}
                )
            row = self._find_row(table, series)
            if row is None:
                raise TokenNotFoundError("persistent login not found")
            row[column] = value
            self._persist_state()

    def update_persistent_login_ip(self, series: str, ip: Optional[str]) -> None:
        self._update_persistent_login_field(series, "ip", ip)

    def update_persistent_login_last_used(self, series: str, last_used: datetime) -> None:
        self._update_persistent_login_field(series, "last_used", last_used)

    # table operations used by the startup migration
    def table_exists(self, table: str) -> bool:
        with self._data_lock:
            return table in self.tables

    def column_names(self, table: str) -> List[str]:
        with self._data_lock:
            if table not in self.tables:
                raise StorageError("table not found", {"table": table})
            return list(self.tables[table].columns)

    def create_table(self, table: str, columns: List[str]) -> None:
        with self._data_lock:
            if table not in self.tables:
                self.tables[table] = _Table(columns=list(columns))
                self._persist_state()

    def create_persistent_logins_table(self) -> None:
        self.create_table(PERSISTENT_LOGINS_TABLE, list(PERSISTENT_LOGINS_COLUMNS))

    def copy_table(self, source: str, target: str) -> None:
        with self._data_lock:
            if source not in self.tables:
                raise StorageError("table not found", {"table": source})
            if target in self.tables:
                return
            self.tables[target] = copy.deepcopy(self.tables[source])
            self._persist_state()

    def drop_table(self, table: str) -> None:
        with self._data_lock:
            if self.tables.pop(table, None) is not None:
                self._persist_state()

    def fetch_rows(self, table: str) -> List[Dict[str, Any]]:
        with self._data_lock:
            if table not in self.tables:
                raise StorageError("table not found", {"table": table})
            return [dict(row) for row in self.tables[table].rows]

    def insert_persistent_login_row(
        self,
        series: str,
        username: str,
        token: str,
        last_used: datetime,
        ip: Optional[str] = None,
    ) -> None:
        with self._data_lock:
            table = self._persistent_logins()
            values: Dict[str, Any] = {
                "series": series,
                "username": username,
                "token": token,
                "last_used": last_used,
                "ip": ip,
            }
            if "id" in table.columns:
                values["id"] = self._row_id_seq
            unknown = [col for col in values if col not in table.columns]
            if unknown:
                raise StorageError(
                    "persistent_logins table is missing columns", {"columns": unknown}
                )
            if self._find_row(table, series) is not None:
                raise DuplicateSeriesError(
                    "persistent login series already exists", {"field": "series"}
                )
            if "id" in values:
                self._row_id_seq += 1
            table.rows.append({col: values.get(col) for col in table.columns})
            self._persist_state()

    # snapshot
    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "tables": {
                name: {
                    "columns": table.columns,
                    "rows": [self._serialize_row(row) for row in table.rows],
                }
                for name, table in self.tables.items()
            },
            "row_id_seq": self._row_id_seq,
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise StorageError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.tables = {
            name: _Table(
                columns=list(payload.get("columns", [])),
                rows=[self._deserialize_row(row) for row in payload.get("rows", [])],
            )
            for name, payload in data.get("tables", {}).items()
        }
        max_row_id = max(
            (
                row.get("id") or 0
                for table in self.tables.values()
                for row in table.rows
            ),
            default=0,
        )
        self._row_id_seq = max(data.get("row_id_seq", 1), max_row_id + 1)
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "username": account.username,
            "email": account.email,
            "password_hash": account.password_hash,
            "roles": sorted(account.roles),
            "enabled": account.enabled,
            "federation_authorized": account.federation_authorized,
            "federated_subject": account.federated_subject,
            "federated_refresh_token": account.federated_refresh_token,
            "created_at": account.created_at.isoformat(),
            "updated_at": account.updated_at.isoformat(),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=data["id"],
            username=data["username"],
            email=data.get("email"),
            password_hash=data.get("password_hash") or "",
            roles=frozenset(data.get("roles") or []),
            enabled=data.get("enabled", True),
            federation_authorized=data.get("federation_authorized", False),
            federated_subject=data.get("federated_subject"),
            federated_refresh_token=data.get("federated_refresh_token"),
            created_at=datetime.fromisoformat(data["created_at"])
            if data.get("created_at")
            else datetime.utcnow(),
            updated_at=datetime.fromisoformat(data["updated_at"])
            if data.get("updated_at")
            else datetime.utcnow(),
        )

    def _serialize_row(self, row: Dict[str, Any]) -> dict:
        serialized = dict(row)
        if isinstance(serialized.get("last_used"), datetime):
            serialized["last_used"] = serialized["last_used"].isoformat()
        return serialized

    def _deserialize_row(self, data: dict) -> Dict[str, Any]:
        row = dict(data)
        if isinstance(row.get("last_used"), str):
            row["last_used"] = datetime.fromisoformat(row["last_used"])
        return row
