from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from foodhistory.config import get_settings, reset_settings_cache
from foodhistory.logging import get_logger
from foodhistory.service.auth import AuthenticationOutcomeResolver, AuthService
from foodhistory.service.identity import IdentityReconciler
from foodhistory.service.oauth import OAuthClient
from foodhistory.service.tokens import ensure_entropy_available
from foodhistory.storage.memory import MemoryStore
from foodhistory.storage.migrations import MigrationStatus, PersistentLoginsMigration
from foodhistory.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app.

    The persistent-login migration runs inside the constructor, so no login
    can be served before it has finished.
    """

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        ensure_entropy_available()

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.migration_status: MigrationStatus = PersistentLoginsMigration(self.store).run()
        if self.migration_status is MigrationStatus.FAILED:
            logger.warning("runtime_remember_me_degraded")

        self.reconciler = IdentityReconciler(self.store)
        self.resolver = AuthenticationOutcomeResolver(
            self.store,
            self.reconciler,
            admin_email=self.settings.admin_email,
            remember_me_on_local_login=self.settings.remember_me_on_local_login,
        )
        self.auth = AuthService(self.store, self.settings, self.resolver)
        self.oauth = OAuthClient(self.settings)
        logger.info("runtime_init_complete", migration=self.migration_status.value)

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
