from __future__ import annotations

from typing import Optional, Union

from redis.exceptions import RedisError

from sessionvault.config import Settings, get_settings
from sessionvault.logging import get_logger, mask_url_password
from sessionvault.service.auth import AuthSessionService
from sessionvault.service.one_time_tokens import OneTimeTokenRegistry
from sessionvault.service.refresh_tokens import RefreshTokenRegistry
from sessionvault.service.sessions import SessionRegistry
from sessionvault.service.tokens import TokenCodec
from sessionvault.storage.memory import MemoryStore
from sessionvault.storage.redis_cache import RedisStore

logger = get_logger(__name__)


class Runtime:
    """Wires the store, codec, registries and service for one process.

    Build it once at startup and ``await runtime.close()`` on shutdown (or use
    it as an async context manager). Nothing here is module-level state; tests
    and applications each own their instance.
    """

    def __init__(self, settings: Optional[Settings] = None, *, store=None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store: Union[RedisStore, MemoryStore] = store or self._build_store()
        self.codec = TokenCodec(self.settings)
        self.sessions = SessionRegistry(self.store, self.settings)
        self.refresh_tokens = RefreshTokenRegistry(
            self.store, self.codec, self.settings, sessions=self.sessions
        )
        self.one_time_tokens = OneTimeTokenRegistry(
            self.store, scan_batch_size=self.settings.scan_batch_size
        )
        self.auth = AuthSessionService(
            self.codec, self.refresh_tokens, self.sessions, self.settings
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            access_token_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_token_ttl_seconds=self.settings.refresh_token_ttl_seconds,
            session_timeout_seconds=self.settings.session_timeout_seconds,
        )

    def _build_store(self) -> Union[RedisStore, MemoryStore]:
        if self.settings.use_memory_store:
            return MemoryStore()
        store = RedisStore(
            self.settings.redis_url,
            socket_timeout=self.settings.redis_socket_timeout,
            operation_timeout=self.settings.store_operation_timeout,
            retry_attempts=self.settings.store_retry_attempts,
            retry_backoff_ms=self.settings.store_retry_backoff_ms,
        )
        try:
            store.verify_connection()
        except (RedisError, OSError) as exc:
            if not (self.settings.test_mode or self.settings.allow_memory_fallback_dev):
                raise RuntimeError(
                    "Redis is required for refresh tokens and sessions; start Redis or set "
                    "TEST_MODE=true/ALLOW_MEMORY_FALLBACK_DEV=true for a local in-memory store."
                ) from exc
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_MEMORY_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=mask_url_password(self.settings.redis_url),
                error=str(exc),
                mode=fallback_mode,
                message="Refresh tokens and sessions are in-memory only and not shared across processes.",
            )
            return MemoryStore()
        return store

    async def close(self) -> None:
        await self.store.close()
        logger.info("runtime_closed", store_type=type(self.store).__name__)

    async def __aenter__(self) -> "Runtime":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


__all__ = ["Runtime"]
