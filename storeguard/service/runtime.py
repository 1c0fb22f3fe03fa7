from __future__ import annotations

from datetime import timedelta
from typing import Optional

from storeguard.config import RateLimitBackend, Settings, get_settings
from storeguard.logging import get_logger
from storeguard.service.audit import SecurityAuditLog
from storeguard.service.auth import CredentialVerifier, PasswordHashing
from storeguard.service.maintenance import SecurityMaintenance
from storeguard.service.rate_limit import (
    InMemoryRateLimiter,
    RateLimiter,
    RedisRateLimiter,
)
from storeguard.service.sessions import SessionStore
from storeguard.service.tokens import HS256Signer
from storeguard.storage.memory import MemoryStore
from storeguard.storage.postgres import PostgresStore
from storeguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class Runtime:
    """Service graph for one application instance.

    Built explicitly by the app factory and torn down by its lifespan; nothing
    here is shared through module globals, so tests can build as many
    independent runtimes as they need.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: "MemoryStore | PostgresStore | None" = None,
        rate_limiter: Optional[RateLimiter] = None,
        passwords: Optional[PasswordHashing] = None,
    ) -> None:
        self.settings = settings or get_settings()
        settings = self.settings

        if store is None:
            if settings.use_memory_store:
                store = MemoryStore()
            else:
                store = PostgresStore(settings.database_url)
        self.store = store

        self.cache: Optional[RedisCache] = None
        if rate_limiter is None:
            if settings.rate_limit_backend == RateLimitBackend.REDIS:
                self.cache = RedisCache(settings.redis_url)
                rate_limiter = RedisRateLimiter.from_settings(settings, self.cache)
            else:
                rate_limiter = InMemoryRateLimiter.from_settings(settings)
        self.rate_limiter = rate_limiter

        self.audit = SecurityAuditLog(
            self.store,
            queue_size=settings.audit_queue_size,
            writers=settings.audit_writer_threads,
        )
        self.sessions = SessionStore.from_settings(settings, self.store, self.store, self.audit)
        self.signer = HS256Signer(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl=timedelta(minutes=settings.access_token_ttl_minutes),
        )
        self.auth = CredentialVerifier.from_settings(
            settings, self.store, self.sessions, self.audit, self.signer, passwords
        )
        self.maintenance = SecurityMaintenance.from_settings(
            settings, self.rate_limiter, self.sessions, self.audit
        )
        logger.info(
            "runtime_initialized",
            store=type(self.store).__name__,
            rate_limiter=type(self.rate_limiter).__name__,
        )

    async def start(self) -> None:
        self.audit.start()
        if self.settings.maintenance_enabled:
            await self.maintenance.start()

    async def close(self) -> None:
        await self.maintenance.stop()
        self.audit.stop()
        self.store.close()
        if self.cache is not None:
            self.cache.close()
        logger.info("runtime_closed")
