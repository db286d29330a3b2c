from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from eventflow_auth.config import get_settings, reset_settings_cache
from eventflow_auth.logging import get_logger
from eventflow_auth.service.auth import SessionCoordinator
from eventflow_auth.service.passwords import CredentialVerifier
from eventflow_auth.service.token_validation import AccessTokenValidator
from eventflow_auth.service.tokens import TokenIssuer
from eventflow_auth.storage.memory import MemoryStore
from eventflow_auth.storage.postgres import PostgresStore
from eventflow_auth.storage.redis_cache import (
    MemoryRevocationCache,
    RedisCache,
    SyncRedisCache,
)

logger = get_logger(__name__)

RevocationBackend = Union[RedisCache, SyncRedisCache, MemoryRevocationCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
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
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store: Union[MemoryStore, PostgresStore] = MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    seed_roles=(self.settings.admin_role_name, self.settings.default_role_name),
                )
            else:
                self.store = PostgresStore(self.settings.database_url)
                if self.settings.run_migrations:
                    self.store.ensure_schema()
                    self.store.seed_roles(
                        (self.settings.admin_role_name, self.settings.default_role_name)
                    )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: RevocationBackend = self._init_cache()

        self.verifier = CredentialVerifier.from_settings(self.settings)
        self.issuer = TokenIssuer.from_settings(self.settings)
        self.validator = AccessTokenValidator(self.issuer, self.cache)
        self.auth = SessionCoordinator(
            self.store,
            self.verifier,
            self.issuer,
            default_role_name=self.settings.default_role_name,
            store_timeout=self.settings.store_timeout_seconds,
        )
        # Missing default role is an operator error; refuse to start
        self.auth.ensure_default_role()
        logger.info("runtime_init_completed", cache_type=type(self.cache).__name__)

    def _init_cache(self) -> RevocationBackend:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a pytest event loop
                if self.settings.test_mode:
                    cache: RevocationBackend = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.cache_timeout_seconds,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.cache_timeout_seconds,
                    )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the shared access-token blacklist; start Redis or "
                "set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; access-token revocations "
                "are visible to this process only."
            ),
            mode=fallback_mode,
        )
        return MemoryRevocationCache()

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None

_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads from both building a runtime.
    """
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
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            try:
                if loop is not None:
                    loop.create_task(runtime.close())
                else:
                    asyncio.run(runtime.close())
            except Exception as exc:
                # Connection may already be closed
                logger.warning("runtime_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
