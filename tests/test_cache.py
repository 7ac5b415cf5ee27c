"""Tests for the Redis cache layer."""

import asyncio

import pytest

from taskapi.cache.layer import CacheLayer, glob_escape


@pytest.fixture
def cache(fake_redis, test_settings):
    return CacheLayer(fake_redis, test_settings)


class TestKeys:
    def test_key_scheme(self):
        assert CacheLayer.user_tasks_key("alice") == "tasks:alice"
        assert CacheLayer.user_task_key("alice", "t1") == "task:alice:t1"

    async def test_keys_are_namespaced(self, cache, fake_redis):
        await cache.set("tasks:alice", [1, 2])

        assert await fake_redis.exists("taskapi:tasks:alice") == 1


class TestGetSet:
    """Test basic cache operations."""

    async def test_miss_returns_none(self, cache):
        assert await cache.get("tasks:nobody") is None
        assert cache.stats["misses"] == 1

    async def test_set_then_get(self, cache):
        await cache.set("task:alice:1", {"title": "Buy milk"})

        assert await cache.get("task:alice:1") == {"title": "Buy milk"}
        assert cache.stats["hits"] == 1

    async def test_default_ttl(self, cache, fake_redis):
        """Entries expire after the configured 60 seconds."""
        await cache.set("tasks:alice", [])

        ttl = await fake_redis.ttl("taskapi:tasks:alice")
        assert 0 < ttl <= 60

    async def test_delete(self, cache):
        await cache.set("tasks:alice", [])
        await cache.delete("tasks:alice")

        assert await cache.get("tasks:alice") is None


class TestInvalidation:
    """Test owner-wide invalidation."""

    async def test_invalidate_by_owner(self, cache):
        """Removes the owner's list and single-task entries only."""
        await cache.set("tasks:alice", [1])
        await cache.set("task:alice:1", {"id": 1})
        await cache.set("task:alice:2", {"id": 2})
        await cache.set("tasks:bob", [3])
        await cache.set("task:bob:3", {"id": 3})

        await cache.invalidate_by_owner("alice", reason="task_updated")

        assert await cache.get("tasks:alice") is None
        assert await cache.get("task:alice:1") is None
        assert await cache.get("task:alice:2") is None
        assert await cache.get("tasks:bob") == [3]
        assert await cache.get("task:bob:3") == {"id": 3}
        assert cache.stats["invalidations"] == 1

    @pytest.mark.parametrize("owner", ["a*", "a?", "[ab]", "a\\"])
    async def test_owner_ids_are_matched_literally(self, cache, owner):
        """Pattern characters in an owner id do not reach other owners."""
        await cache.set(f"task:{owner}:1", {"id": 1})
        for other in ("a", "ab", "aa", "b"):
            await cache.set(f"task:{other}:2", {"id": 2})

        await cache.invalidate_by_owner(owner)

        assert await cache.get(f"task:{owner}:1") is None
        for other in ("a", "ab", "aa", "b"):
            assert await cache.get(f"task:{other}:2") == {"id": 2}

    def test_glob_escape(self):
        assert glob_escape("plain-id") == "plain-id"
        assert glob_escape("a*b?[c]") == r"a\*b\?\[c\]"

    async def test_delete_pattern_counts(self, cache):
        for i in range(5):
            await cache.set(f"task:alice:{i}", i)

        assert await cache.delete_pattern("task:alice:*") == 5


class TestGetOrLoad:
    """Test read-through loading."""

    async def test_miss_then_hit(self, cache):
        calls = 0

        async def loader():
            nonlocal calls
            calls += 1
            return [{"id": "1"}]

        first = await cache.get_or_load("tasks:alice", loader)
        second = await cache.get_or_load("tasks:alice", loader)

        assert first == ([{"id": "1"}], False)
        assert second == ([{"id": "1"}], True)
        assert calls == 1

    async def test_empty_list_is_cached(self, cache):
        """An owner with no tasks still gets a cached (empty) list."""

        async def loader():
            return []

        await cache.get_or_load("tasks:alice", loader)
        value, hit = await cache.get_or_load("tasks:alice", loader)

        assert value == []
        assert hit is True

    async def test_none_is_not_cached(self, cache):
        async def loader():
            return None

        assert await cache.get_or_load("task:alice:x", loader) == (None, False)
        assert await cache.get("task:alice:x") is None

    async def test_loader_errors_propagate(self, cache):
        async def loader():
            raise LookupError("gone")

        with pytest.raises(LookupError):
            await cache.get_or_load("task:alice:x", loader)

    async def test_concurrent_misses_load_once(self, cache):
        """Concurrent misses for one key share a single loader call."""
        calls = 0

        async def loader():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return ["loaded"]

        results = await asyncio.gather(
            *(cache.get_or_load("tasks:alice", loader) for _ in range(5))
        )

        assert calls == 1
        assert all(value == ["loaded"] for value, _ in results)


class TestDegradedBackend:
    """Test that a dead Redis never surfaces errors."""

    @pytest.fixture
    def dead_cache(self, dead_redis, test_settings):
        return CacheLayer(dead_redis, test_settings)

    async def test_operations_do_not_raise(self, dead_cache):
        assert await dead_cache.get("tasks:alice") is None
        await dead_cache.set("tasks:alice", [1])
        await dead_cache.delete("tasks:alice")
        assert await dead_cache.delete_pattern("task:alice:*") == 0
        await dead_cache.invalidate_by_owner("alice")

        assert dead_cache.stats["errors"] >= 4

    async def test_get_or_load_falls_through(self, dead_cache):
        async def loader():
            return ["from-db"]

        assert await dead_cache.get_or_load("tasks:alice", loader) == (["from-db"], False)

    async def test_init_cache_reports_failure(self, dead_cache):
        assert await dead_cache.init_cache() is False

    async def test_init_cache_success(self, cache):
        assert await cache.init_cache() is True

    def test_stats_hit_rate(self, cache):
        cache.stats.update(hits=3, misses=1)

        assert cache.get_stats()["hit_rate"] == 0.75
