"""Startup migration of the ``persistent_logins`` table.

Older deployments stored remember-me grants in a four-column table
(``series, username, token, last_used``). The current shape adds an identity
column and the origin IP. The migrator copies the old rows to a backup table,
recreates the table in the current shape, replays every row and only then
drops the backup, so an interrupted or failed run never destroys grants.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence

from foodhistory.logging import get_logger
from foodhistory.storage.errors import MigrationReplayError

PERSISTENT_LOGINS_TABLE = "persistent_logins"
PERSISTENT_LOGINS_BACKUP_TABLE = "persistent_logins_backup"
IDENTITY_COLUMN = "id"
PERSISTENT_LOGINS_COLUMNS = ("id", "series", "username", "token", "last_used", "ip")
LEGACY_PERSISTENT_LOGINS_COLUMNS = ("series", "username", "token", "last_used")

logger = get_logger(__name__)


class MigrationBackend(Protocol):
    """Table-level operations the migrator needs from a store."""

    def table_exists(self, table: str) -> bool: ...

    def column_names(self, table: str) -> List[str]: ...

    def copy_table(self, source: str, target: str) -> None: ...

    def drop_table(self, table: str) -> None: ...

    def create_persistent_logins_table(self) -> None: ...

    def fetch_rows(self, table: str) -> List[Dict[str, Any]]: ...

    def insert_persistent_login_row(
        self,
        series: str,
        username: str,
        token: str,
        last_used: datetime,
        ip: Optional[str] = None,
    ) -> None: ...


class MigrationStatus(str, Enum):
    NOT_NEEDED = "not_needed"
    MIGRATED = "migrated"
    FAILED = "failed"


def _row_value(row: Dict[str, Any], column: str) -> Any:
    # Some drivers report upper-case column names for tables created via CTAS
    if column in row:
        return row[column]
    return row.get(column.upper())


class PersistentLoginsMigration:
    """One-time, idempotent upgrade of the persistent-login table shape."""

    def __init__(self, backend: MigrationBackend) -> None:
        self.backend = backend
        self.logger = logger

    def needs_migration(self) -> bool:
        """Return True when the table lacks the identity column.

        A leftover backup table from an interrupted run also requires
        migration so its rows are replayed. A missing table with no backup
        needs nothing: the store creates it in the current shape.
        """
        if self.backend.table_exists(PERSISTENT_LOGINS_BACKUP_TABLE):
            return True
        if not self.backend.table_exists(PERSISTENT_LOGINS_TABLE):
            return False
        columns = {c.lower() for c in self.backend.column_names(PERSISTENT_LOGINS_TABLE)}
        return IDENTITY_COLUMN not in columns

    def migrate(self) -> int:
        """Upgrade the table and return the number of replayed rows.

        Raises:
            MigrationReplayError: when a backed-up row could not be written to
                the new table. The backup table is left in place.
        """
        backend = self.backend
        if backend.table_exists(PERSISTENT_LOGINS_BACKUP_TABLE):
            self.logger.warning("persistent_logins_backup_found_resuming")
        else:
            backend.copy_table(PERSISTENT_LOGINS_TABLE, PERSISTENT_LOGINS_BACKUP_TABLE)
        backup_rows = backend.fetch_rows(PERSISTENT_LOGINS_BACKUP_TABLE)
        self.logger.info("persistent_logins_backed_up", rows=len(backup_rows))

        live_columns: Sequence[str] = []
        if backend.table_exists(PERSISTENT_LOGINS_TABLE):
            live_columns = [c.lower() for c in backend.column_names(PERSISTENT_LOGINS_TABLE)]
        present: set[str] = set()
        if IDENTITY_COLUMN in live_columns:
            # Already recreated by an earlier run; keep grants issued since then
            present = {
                str(_row_value(row, "series"))
                for row in backend.fetch_rows(PERSISTENT_LOGINS_TABLE)
            }
        else:
            backend.drop_table(PERSISTENT_LOGINS_TABLE)
            backend.create_persistent_logins_table()

        replayed = 0
        for row in backup_rows:
            series = _row_value(row, "series")
            if series in present:
                continue
            try:
                backend.insert_persistent_login_row(
                    series=series,
                    username=_row_value(row, "username"),
                    token=_row_value(row, "token"),
                    last_used=_row_value(row, "last_used"),
                    ip=None,
                )
            except Exception as exc:
                raise MigrationReplayError(
                    "failed to replay persistent login",
                    {"replayed": replayed, "total": len(backup_rows)},
                ) from exc
            replayed += 1

        backend.drop_table(PERSISTENT_LOGINS_BACKUP_TABLE)
        self.logger.info(
            "persistent_logins_migrated", replayed=replayed, total=len(backup_rows)
        )
        return replayed

    def run(self) -> MigrationStatus:
        """Startup entry point. Never raises; failures leave the app degraded."""
        try:
            if not self.needs_migration():
                if not self.backend.table_exists(PERSISTENT_LOGINS_TABLE):
                    self.backend.create_persistent_logins_table()
                    self.logger.info("persistent_logins_table_created")
                else:
                    self.logger.info("persistent_logins_schema_current")
                return MigrationStatus.NOT_NEEDED
            self.logger.info("persistent_logins_migration_started")
            self.migrate()
            return MigrationStatus.MIGRATED
        except MigrationReplayError as exc:
            self.logger.error(
                "persistent_logins_replay_failed",
                error=str(exc.__cause__ or exc),
                backup_table=PERSISTENT_LOGINS_BACKUP_TABLE,
                **exc.detail,
            )
        except Exception as exc:
            self.logger.error(
                "persistent_logins_migration_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
        return MigrationStatus.FAILED


__all__ = [
    "IDENTITY_COLUMN",
    "LEGACY_PERSISTENT_LOGINS_COLUMNS",
    "MigrationBackend",
    "MigrationStatus",
    "PERSISTENT_LOGINS_BACKUP_TABLE",
    "PERSISTENT_LOGINS_COLUMNS",
    "PERSISTENT_LOGINS_TABLE",
    "PersistentLoginsMigration",
]
