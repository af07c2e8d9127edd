from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from passgate.config import get_settings, reset_settings_cache
from passgate.logging import get_logger
from passgate.service.auth import AuthService
from passgate.service.notifier import HttpNotifier, LoggingNotifier, Notifier
from passgate.storage.memory import MemoryStore
from passgate.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_dsn_password(dsn: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not dsn:
        return dsn
    try:
        parsed = urlparse(dsn)
    except ValueError:
        return "***dsn_parse_error***"
    if not parsed.password:
        return dsn
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_dsn_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.notifier: Notifier
        if self.settings.sender_base_url:
            self.notifier = HttpNotifier(
                self.settings.sender_base_url,
                timeout=self.settings.sender_timeout_seconds,
            )
        else:
            if not self.settings.test_mode:
                logger.warning(
                    "notifier_dev_mode_enabled",
                    message="SENDER_BASE_URL unset; invitations and reset codes are logged, not sent",
                )
            self.notifier = LoggingNotifier()

        self.auth = AuthService(self.store, self.settings, notifier=self.notifier)
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            sender_configured=bool(self.settings.sender_base_url),
            max_sessions_per_account=self.settings.max_sessions_per_account,
        )

    def close(self) -> None:
        if isinstance(self.notifier, HttpNotifier):
            self.notifier.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
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
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
