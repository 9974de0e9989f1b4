from __future__ import annotations

from typing import Optional

from pitchcoach.config import Settings, get_settings
from pitchcoach.logging import get_logger
from pitchcoach.service.audit import AuditRecorder
from pitchcoach.service.credentials import AuthStore, CredentialService
from pitchcoach.service.sessions import SessionManager
from pitchcoach.service.tokens import TokenIssuer
from pitchcoach.storage.memory import MemoryStore
from pitchcoach.storage.postgres import PostgresStore

logger = get_logger(__name__)


def build_store(settings: Settings) -> AuthStore:
    """Pick the storage backend for this deployment."""
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            store: AuthStore = MemoryStore()
        else:
            store = PostgresStore(
                settings.database_url,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
            )
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=store_type)
    return store


class Runtime:
    """Explicitly constructed service graph shared by the HTTP layer.

    Built once at process start and attached to ``app.state``; tests build
    their own with a fake or in-memory store.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[AuthStore] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store: AuthStore = store if store is not None else build_store(self.settings)
        self.credentials = CredentialService(self.store)
        self.tokens = TokenIssuer(self.store, self.settings)
        self.audit = AuditRecorder(self.store)
        self.sessions = SessionManager(self.credentials, self.tokens, self.audit)

    def close(self) -> None:
        try:
            self.store.close()
        except Exception as exc:
            logger.error("runtime_close_failed", error=str(exc))
