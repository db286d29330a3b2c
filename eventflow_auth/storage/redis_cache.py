from __future__ import annotations

import math
import threading
import time
from typing import Callable, Dict

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from eventflow_auth.storage.errors import CacheUnavailable


def _blacklist_key(jti: str) -> str:
    return f"auth:access:blacklist:{jti}"


def _expiry_ms(ttl_seconds: float) -> int:
    # Redis expiries are whole milliseconds; rounding up keeps the entry alive
    # until the token itself is rejected as expired
    return math.ceil(ttl_seconds * 1000)


class RedisCache:
    """Shared access-token blacklist backed by Redis.

    Entries are written with ``SET ... PX ttl`` so Redis evicts them within a
    millisecond of the underlying token expiring.
    """

    DEFAULT_OPERATION_TIMEOUT = 2.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        except RedisError as exc:
            raise CacheUnavailable(str(exc)) from exc
        finally:
            sync_client.close()

    async def blacklist(self, jti: str, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            return
        try:
            await self.client.set(_blacklist_key(jti), "1", px=_expiry_ms(ttl_seconds))
        except RedisError as exc:
            raise CacheUnavailable(str(exc)) from exc

    async def is_blacklisted(self, jti: str) -> bool:
        try:
            return bool(await self.client.exists(_blacklist_key(jti)))
        except RedisError as exc:
            raise CacheUnavailable(str(exc)) from exc

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as exc:
            raise CacheUnavailable(str(exc)) from exc

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Exposes the same async methods as :class:`RedisCache` so callers can await
    either, while avoiding event-loop binding issues under pytest.
    """

    def __init__(
        self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        try:
            self._sync_client.ping()
        except RedisError as exc:
            raise CacheUnavailable(str(exc)) from exc

    async def blacklist(self, jti: str, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            return
        try:
            self._sync_client.set(_blacklist_key(jti), "1", px=_expiry_ms(ttl_seconds))
        except RedisError as exc:
            raise CacheUnavailable(str(exc)) from exc

    async def is_blacklisted(self, jti: str) -> bool:
        try:
            return bool(self._sync_client.exists(_blacklist_key(jti)))
        except RedisError as exc:
            raise CacheUnavailable(str(exc)) from exc

    async def ping(self) -> bool:
        try:
            return bool(self._sync_client.ping())
        except RedisError as exc:
            raise CacheUnavailable(str(exc)) from exc

    async def close(self) -> None:
        self._sync_client.close()


class MemoryRevocationCache:
    """Process-local blacklist for development fallback and tests.

    Not shared between instances, so a token revoked on one node stays valid
    on the others until it expires.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _purge(self, now: float) -> None:
        expired = [jti for jti, deadline in self._entries.items() if deadline <= now]
        for jti in expired:
            self._entries.pop(jti, None)

    async def blacklist(self, jti: str, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            now = self._clock()
            self._purge(now)
            self._entries[jti] = now + ttl_seconds

    async def is_blacklisted(self, jti: str) -> bool:
        with self._lock:
            deadline = self._entries.get(jti)
            if deadline is None:
                return False
            if deadline <= self._clock():
                self._entries.pop(jti, None)
                return False
            return True

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
