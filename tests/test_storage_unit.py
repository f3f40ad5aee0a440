"""Unit tests for the ephemeral stores, the memory directory and deadlines."""

import asyncio
import time

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from agora.service.errors import StoreUnavailableError
from agora.storage.cache import MemoryCache
from agora.storage.common import AsyncDirectory, DeadlineStore
from agora.storage.errors import ConstraintViolation
from agora.storage.memory import MemoryDirectory
from agora.storage.redis_cache import RedisCache


class ManualClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestMemoryCache:
    async def test_entries_expire(self):
        clock = ManualClock()
        cache = MemoryCache(clock=clock)
        await cache.set("k", "v", 10)

        clock.now += 9.9
        assert await cache.get("k") == "v"
        clock.now += 0.2
        assert await cache.get("k") is None
        assert not await cache.exists("k")

    async def test_set_if_absent_has_one_winner(self):
        cache = MemoryCache()

        assert await cache.set_if_absent("k", "first", 10) is True
        assert await cache.set_if_absent("k", "second", 10) is False
        assert await cache.get("k") == "first"

    async def test_set_if_absent_succeeds_after_expiry(self):
        clock = ManualClock()
        cache = MemoryCache(clock=clock)
        await cache.set_if_absent("k", "first", 1)

        clock.now += 2
        assert await cache.set_if_absent("k", "second", 1) is True

    async def test_pop_consumes(self):
        cache = MemoryCache()
        await cache.set("k", "v", 10)

        assert await cache.pop("k") == "v"
        assert await cache.pop("k") is None

    async def test_fractional_ttl(self):
        clock = ManualClock()
        cache = MemoryCache(clock=clock)
        await cache.set("k", "v", 0.4)

        assert await cache.ttl("k") == pytest.approx(0.4)
        clock.now += 0.5
        assert await cache.get("k") is None

    async def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValueError):
            await MemoryCache().set("k", "v", 0)


class StubRedis:
    """Just enough of redis.asyncio.Redis for RedisCache."""

    def __init__(self):
        self.data = {}
        self.calls = []
        self.closed = False
        self.connection_pool = self

    async def set(self, key, value, px=None, nx=False):
        self.calls.append(("set", key, px, nx))
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    async def get(self, key):
        return self.data.get(key)

    async def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    async def exists(self, key):
        return int(key in self.data)

    async def getdel(self, key):
        return self.data.pop(key, None)

    async def close(self):
        self.closed = True

    async def disconnect(self):
        pass


class TestRedisCache:
    async def test_set_if_absent_uses_nx(self):
        stub = StubRedis()
        cache = RedisCache("redis://localhost:6379/0", client=stub)

        assert await cache.set_if_absent("k", "1", 30) is True
        assert await cache.set_if_absent("k", "1", 30) is False
        assert stub.calls[0] == ("set", "k", 30_000, True)

    async def test_ttl_sent_in_milliseconds(self):
        stub = StubRedis()
        cache = RedisCache("redis://localhost:6379/0", client=stub)

        await cache.set("k", "v", 0.4)
        await cache.set("k", "v", 0.0004)

        assert stub.calls[0][2] == 400
        assert stub.calls[1][2] == 1

    async def test_pop_uses_getdel(self):
        stub = StubRedis()
        cache = RedisCache("redis://localhost:6379/0", client=stub)
        await cache.set("k", "v", 10)

        assert await cache.pop("k") == "v"
        assert await cache.exists("k") is False

    async def test_close(self):
        stub = StubRedis()
        await RedisCache("redis://localhost:6379/0", client=stub).close()

        assert stub.closed


class SlowStore(MemoryCache):
    async def get(self, key):
        await asyncio.sleep(1)
        return None


class BrokenStore(MemoryCache):
    async def set(self, key, value, ttl_seconds):
        raise RedisConnectionError("connection refused")


class TestDeadlines:
    """Slow or unreachable collaborators surface as StoreUnavailableError."""

    async def test_slow_store_times_out(self):
        store = DeadlineStore(SlowStore(), timeout=0.01)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.get("k")

        assert exc_info.value.operation == "cache.get"
        assert exc_info.value.status_code == 503

    async def test_connection_error_is_unavailable(self):
        store = DeadlineStore(BrokenStore(), timeout=1)

        with pytest.raises(StoreUnavailableError):
            await store.set("k", "v", 10)

    async def test_slow_directory_times_out(self):
        class SlowDirectory(MemoryDirectory):
            def get_user(self, user_id):
                time.sleep(0.2)
                return None

        directory = AsyncDirectory(SlowDirectory(), timeout=0.01)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await directory.get_user("id")

        assert exc_info.value.operation == "directory.get_user"

    async def test_fast_calls_pass_through(self, directory, memory_directory):
        user = memory_directory.create_user("a@example.com", "a_user", "hash")

        assert (await directory.get_user(user.id)).email == "a@example.com"


class TestMemoryDirectory:
    def test_duplicate_email_and_username(self):
        directory = MemoryDirectory()
        directory.create_user("a@example.com", "a_user", "hash")

        with pytest.raises(ConstraintViolation) as exc_info:
            directory.create_user("a@example.com", "other", "hash")
        assert exc_info.value.detail == {"field": "email"}

        with pytest.raises(ConstraintViolation) as exc_info:
            directory.create_user("b@example.com", "a_user", "hash")
        assert exc_info.value.detail == {"field": "username"}

    def test_link_google_account_keeps_password(self):
        directory = MemoryDirectory()
        user = directory.create_user("a@example.com", "a_user", "hash")

        linked = directory.link_google_account(user.id, "g-1", "https://img")

        assert linked.google_id == "g-1"
        assert linked.password_hash == "hash"
        assert directory.get_user_by_google_id("g-1").id == user.id
