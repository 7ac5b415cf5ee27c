import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Optional

from cachetools import TTLCache
from redis.asyncio import Redis, RedisError

from taskapi.core.config import Settings
from taskapi.core.logging import EventLogger, events as default_events

logger = logging.getLogger(__name__)

# Redis errors plus socket level failures and timeouts from a dead backend
BACKEND_ERRORS = (RedisError, OSError, asyncio.TimeoutError)

_GLOB_SPECIAL = re.compile(r"([\[\]*?\\])")


def glob_escape(value: str) -> str:
    """Escape Redis MATCH metacharacters so ``value`` only matches itself."""
    return _GLOB_SPECIAL.sub(r"\\\1", value)


class CacheLayer:
    """
    Best-effort Redis cache for per-owner task data.

    Key scheme (before namespacing):
    - tasks:{owner_id}            collection of an owner's tasks
    - task:{owner_id}:{task_id}   a single task

    Features:
    - Read-through loading with per-key stampede locks
    - Owner-wide invalidation (collection key + SCAN over task keys)
    - Graceful degradation: every backend error is logged and treated as
      a miss or a no-op, never raised to the caller
    - Automatic key namespacing
    """

    def __init__(
        self,
        redis: Redis,
        settings: Settings,
        events: EventLogger = default_events,
    ):
        self._redis = redis
        self._settings = settings
        self._events = events
        self.default_ttl = settings.cache_ttl_seconds

        # Stampede protection: when several requests miss the same key, one
        # loads from the database while the others wait on the same lock.
        # TTLCache bounds the table and drops locks 300s after creation,
        # which exceeds any bounded DB call.
        self._locks = TTLCache(maxsize=10_000, ttl=300)

        # Stats tracking
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "invalidations": 0, "errors": 0}

    @staticmethod
    def user_tasks_key(owner_id: str) -> str:
        return f"tasks:{owner_id}"

    @staticmethod
    def user_task_key(owner_id: str, task_id: Any) -> str:
        return f"task:{owner_id}:{task_id}"

    async def init_cache(self) -> bool:
        """Verify the Redis connection; the app keeps serving if it fails."""
        try:
            await self._redis.ping()
            logger.info("Redis connection established")
            return True
        except BACKEND_ERRORS as e:
            logger.warning(f"Redis unavailable at startup, caching degraded: {e}")
            return False

    def _key(self, key: str) -> str:
        """Build namespaced cache key."""
        return f"{self._settings.cache_namespace}{key}"

    def _serialize(self, value: Any) -> str:
        return json.dumps(value, default=str)

    def _deserialize(self, raw: str) -> Any:
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw

    def _record_error(self, operation: str, key: str, error: Exception) -> None:
        self.stats["errors"] += 1
        self._events.warn(
            "Cache backend error",
            {"operation": operation, "key": key, "error": str(error)},
        )

    async def get(self, key: str, user_id: Optional[str] = None) -> Optional[Any]:
        """Return the cached value, or None on a miss or backend error."""
        try:
            raw = await self._redis.get(self._key(key))
        except BACKEND_ERRORS as e:
            self._record_error("GET", key, e)
            return None

        if raw is None:
            self.stats["misses"] += 1
            self._events.cache_miss(key, user_id)
            return None

        self.stats["hits"] += 1
        self._events.cache_hit(key, user_id)
        return self._deserialize(raw)

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> None:
        ttl = ttl or self.default_ttl
        try:
            await self._redis.set(self._key(key), self._serialize(value), ex=ttl)
        except BACKEND_ERRORS as e:
            self._record_error("SET", key, e)
            return
        self.stats["sets"] += 1
        self._events.cache_set(key, ttl, user_id)

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(self._key(key))
        except BACKEND_ERRORS as e:
            self._record_error("DELETE", key, e)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern; returns the count deleted."""
        namespaced = self._key(pattern)
        cursor = 0
        deleted_count = 0

        try:
            while True:
                cursor, keys = await self._redis.scan(cursor, match=namespaced, count=100)
                if keys:
                    deleted_count += await self._redis.delete(*keys)
                if cursor == 0:
                    break
        except BACKEND_ERRORS as e:
            self._record_error("SCAN", pattern, e)

        return deleted_count

    async def invalidate_by_owner(self, owner_id: str, reason: str = "owner_write") -> None:
        """Drop every cached entry of an owner: the list and all single tasks."""
        await self.delete(self.user_tasks_key(owner_id))
        await self.delete_pattern(self.user_task_key(glob_escape(owner_id), "*"))
        self.stats["invalidations"] += 1
        self._events.cache_invalidation(self.user_tasks_key(owner_id), reason, owner_id)

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> tuple[Any, bool]:
        """
        Read-through lookup.

        Returns ``(value, hit)``. On a miss the loader runs under a per-key
        lock, so concurrent misses for one key hit the database once. A loader
        result of None is returned but not cached; loader exceptions propagate.
        """
        value = await self.get(key, user_id)
        if value is not None:
            return value, True

        lock = self._get_lock_for_key(self._key(key))
        async with lock:
            # Double-check after acquiring the lock
            value = await self.get(key, user_id)
            if value is not None:
                return value, True

            value = await loader()
            if value is not None:
                await self.set(key, value, ttl, user_id)
            return value, False

    async def close(self):
        """Graceful shutdown of cache connections."""
        try:
            await self._redis.aclose()
            logger.info("Redis connection closed")
        except BACKEND_ERRORS as e:
            logger.error(f"Error closing Redis: {e}")

    def _get_lock_for_key(self, key: str) -> asyncio.Lock:
        """Get or create the shared asyncio.Lock for a cache key."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks.setdefault(key, asyncio.Lock())
        return lock

    def get_stats(self) -> dict:
        lookups = self.stats["hits"] + self.stats["misses"]
        return {
            **self.stats,
            "hit_rate": self.stats["hits"] / lookups if lookups else 0,
        }

