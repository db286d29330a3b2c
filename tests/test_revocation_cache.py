"""Blacklist behaviour for the Redis-backed and in-process revocation caches."""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from eventflow_auth.storage.errors import CacheUnavailable
from eventflow_auth.storage.redis_cache import (
    MemoryRevocationCache,
    RedisCache,
    SyncRedisCache,
)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value


class FakeAsyncRedis:
    def __init__(self):
        self.values: dict[str, tuple[str, int]] = {}

    async def set(self, key, value, px=None):
        self.values[key] = (value, px)
        return True

    async def exists(self, key):
        return int(key in self.values)


class BrokenAsyncRedis:
    async def set(self, key, value, px=None):
        raise RedisConnectionError("redis down")

    async def exists(self, key):
        raise RedisConnectionError("redis down")


class FakeSyncRedis:
    def __init__(self):
        self.values: dict[str, tuple[str, int]] = {}

    def set(self, key, value, px=None):
        self.values[key] = (value, px)
        return True

    def exists(self, key):
        return int(key in self.values)


def _redis_cache(client) -> RedisCache:
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://unit-test"
    cache.client = client
    return cache


async def test_blacklisted_until_ttl_elapses():
    clock = FakeClock()
    cache = MemoryRevocationCache(clock=clock)

    await cache.blacklist("jti-1", 2)
    assert await cache.is_blacklisted("jti-1") is True

    clock.value += 1.9
    assert await cache.is_blacklisted("jti-1") is True

    clock.value += 0.2
    assert await cache.is_blacklisted("jti-1") is False


async def test_non_positive_ttl_is_ignored():
    cache = MemoryRevocationCache(clock=FakeClock())

    await cache.blacklist("jti-0", 0)
    await cache.blacklist("jti-neg", -5)

    assert await cache.is_blacklisted("jti-0") is False
    assert await cache.is_blacklisted("jti-neg") is False


async def test_unknown_jti_is_not_blacklisted():
    cache = MemoryRevocationCache(clock=FakeClock())

    assert await cache.is_blacklisted("never-seen") is False


async def test_expired_entries_are_purged_on_write():
    clock = FakeClock()
    cache = MemoryRevocationCache(clock=clock)
    await cache.blacklist("old", 1)
    clock.value += 5

    await cache.blacklist("new", 10)

    assert "old" not in cache._entries
    assert "new" in cache._entries


async def test_redis_cache_sets_key_with_expiry():
    client = FakeAsyncRedis()
    cache = _redis_cache(client)

    await cache.blacklist("jti-1", 120)

    assert client.values["auth:access:blacklist:jti-1"] == ("1", 120_000)
    assert await cache.is_blacklisted("jti-1") is True
    assert await cache.is_blacklisted("jti-2") is False


async def test_redis_cache_skips_expired_tokens():
    client = FakeAsyncRedis()
    cache = _redis_cache(client)

    await cache.blacklist("jti-1", 0)

    assert client.values == {}


async def test_redis_errors_surface_as_cache_unavailable():
    cache = _redis_cache(BrokenAsyncRedis())

    with pytest.raises(CacheUnavailable):
        await cache.blacklist("jti-1", 10)
    with pytest.raises(CacheUnavailable):
        await cache.is_blacklisted("jti-1")


async def test_sync_redis_cache_uses_same_keys():
    client = FakeSyncRedis()
    cache: SyncRedisCache = SyncRedisCache.__new__(SyncRedisCache)
    cache.redis_url = "redis://unit-test"
    cache._sync_client = client

    await cache.blacklist("jti-9", 30)

    assert client.values["auth:access:blacklist:jti-9"] == ("1", 30_000)
    assert await cache.is_blacklisted("jti-9") is True


async def test_redis_expiry_keeps_sub_second_precision():
    client = FakeAsyncRedis()
    cache = _redis_cache(client)

    await cache.blacklist("jti-1", 299.75)

    assert client.values["auth:access:blacklist:jti-1"] == ("1", 299_750)


async def test_memory_entry_expires_with_the_token():
    clock = FakeClock()
    cache = MemoryRevocationCache(clock=clock)

    await cache.blacklist("jti-1", 0.5)
    clock.value += 0.49
    assert await cache.is_blacklisted("jti-1") is True

    clock.value += 0.02
    assert await cache.is_blacklisted("jti-1") is False
