from __future__ import annotations

from typing import Optional

from authcore.config import Settings
from authcore.logging import get_logger, mask_url_password
from authcore.service.auth import AuthGateway, CredentialStore
from authcore.service.oauth import (
    IdentityBroker,
    MemoryOAuthStateStore,
    OAuthStateStore,
    RedisOAuthStateStore,
)
from authcore.service.tokens import TokenService
from authcore.storage.memory import MemoryCredentialStore
from authcore.storage.pool import ConnectionPool
from authcore.storage.postgres import PostgresCredentialStore

logger = get_logger(__name__)


class Runtime:
    """Builds and owns the service graph for one process.

    Nothing here is global: the transport layer constructs a ``Runtime`` at
    startup, hands ``runtime.auth`` to its handlers and calls ``close()`` on
    shutdown.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        logger.info("runtime_init_started", use_memory_store=settings.use_memory_store)

        self.pool: Optional[ConnectionPool] = None
        try:
            self.store = self._build_store()
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            if self.pool is not None:
                self.pool.shutdown()
            raise

        self.tokens = TokenService.from_settings(settings)
        self.oauth_states = self._build_state_store()
        self.broker = IdentityBroker(self.store, settings, states=self.oauth_states)
        self.auth = AuthGateway(self.store, self.tokens, self.broker)
        logger.info("runtime_init_completed")

    @classmethod
    def from_env(cls) -> "Runtime":
        return cls(Settings.from_env())

    def _build_store(self) -> CredentialStore:
        if self.settings.use_memory_store:
            return MemoryCredentialStore()
        self.pool = ConnectionPool.from_settings(self.settings)
        store = PostgresCredentialStore(self.pool)
        store.ensure_schema()
        return store

    def _build_state_store(self) -> OAuthStateStore:
        if not self.settings.redis_url:
            return MemoryOAuthStateStore()
        logger.info(
            "oauth_state_store_redis", redis_url=mask_url_password(self.settings.redis_url)
        )
        return RedisOAuthStateStore.from_url(
            self.settings.redis_url, ttl_seconds=self.settings.oauth_state_ttl_seconds
        )

    def close(self) -> None:
        self.broker.close()
        if isinstance(self.oauth_states, RedisOAuthStateStore):
            self.oauth_states.close()
        if self.pool is not None:
            self.pool.shutdown()
        logger.info("runtime_closed")


__all__ = ["Runtime"]
