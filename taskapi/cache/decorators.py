from functools import wraps
from typing import Any, Callable, NamedTuple


class Cached(NamedTuple):
    value: Any
    hit: bool


def async_cached(key_builder: Callable[..., str], ttl: int = None):
    """
    Read-through decorator for TaskService methods. key_builder receives the
    same args/kwargs (including self). The wrapped method returns Cached.
    Example:
      @async_cached(lambda self, task_id: CacheLayer.user_task_key(self.owner_id, task_id))
      async def get_task(self, task_id): ...
    """

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs) -> Cached:
            key = key_builder(self, *args, **kwargs)

            # loader closure calls the original function
            async def loader():
                return await fn(self, *args, **kwargs)

            value, hit = await self.cache.get_or_load(
                key, loader, ttl=ttl, user_id=self.owner_id
            )
            return Cached(value, hit)

        return wrapper

    return decorator


def async_cached_expire(reason: str):
    """
    Invalidate every cache entry of the service's owner once the wrapped
    write has returned. Nothing is invalidated when the write raises, so a
    failed write never races a reader repopulating the cache.
    """

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs):
            result = await fn(self, *args, **kwargs)
            await self.cache.invalidate_by_owner(self.owner_id, reason=reason)
            return result

        return wrapper

    return decorator
