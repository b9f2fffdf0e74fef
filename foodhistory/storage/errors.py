from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Raised when the backing store cannot complete an operation."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""


class DuplicateSeriesError(ConstraintViolation):
    """A persistent login with the same series already exists."""


class TokenNotFoundError(StorageError):
    """No persistent login exists for the requested series."""


class MigrationReplayError(StorageError):
    """Replaying backed-up persistent logins into the new table shape failed.

    The backup table is left in place when this is raised.
    """


__all__ = [
    "StorageError",
    "ConstraintViolation",
    "DuplicateSeriesError",
    "TokenNotFoundError",
    "MigrationReplayError",
]
