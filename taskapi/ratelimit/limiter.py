"""Moving-window rate limiting on top of the ``limits`` library.

Each limiter kind maps onto one ``RateLimitItem``; the moving-window strategy
records the timestamp of every accepted hit in the shared storage (Redis in
production) and refuses a hit once the window already holds ``limit`` of them.
Refused hits are not recorded, so retrying against a closed limit does not
push back recovery.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from limits import RateLimitItem, RateLimitItemPerSecond
from limits.aio.storage import RedisStorage, Storage
from limits.aio.strategies import MovingWindowRateLimiter
from limits.errors import StorageError
from redis.asyncio import RedisError

from taskapi.core.config import Settings
from taskapi.core.logging import EventLogger, events as default_events

logger = logging.getLogger(__name__)

BACKEND_ERRORS = (StorageError, RedisError, OSError, asyncio.TimeoutError)


class LimiterKind(str, Enum):
    READ = "read"
    WRITE = "write"
    AUTH = "auth"


@dataclass(frozen=True)
class LimitPolicy:
    limit: int
    window_seconds: int
    prefix: str

    @property
    def item(self) -> RateLimitItem:
        return RateLimitItemPerSecond(self.limit, self.window_seconds)


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset: datetime
    retry_after: Optional[int] = None

    @property
    def reset_ms(self) -> int:
        return int(self.reset.timestamp() * 1000)

    def headers(self, denied: bool = False) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if denied:
            headers["Retry-After"] = str(self.retry_after or 60)
            headers["X-RateLimit-Reset"] = str(self.reset_ms)
        return headers


def rate_limit_key(user_id: Optional[str], ip: str) -> str:
    """Bucket authenticated traffic per user and address, anonymous per address."""
    return f"{user_id}:{ip}" if user_id else ip


def policies_from_settings(settings: Settings) -> dict[LimiterKind, LimitPolicy]:
    window = settings.rate_limit_window_seconds
    return {
        LimiterKind.READ: LimitPolicy(settings.rate_limit_read, window, "rl:read"),
        LimiterKind.WRITE: LimitPolicy(settings.rate_limit_write, window, "rl:write"),
        LimiterKind.AUTH: LimitPolicy(settings.rate_limit_auth, window, "rl:auth"),
    }


def build_storage(settings: Settings) -> Storage:
    """Redis storage for the limiter; backend failures surface as StorageError."""
    return RedisStorage(
        f"async+{settings.redis_dsn}",
        implementation="redispy",
        wrap_exceptions=True,
        key_prefix=f"{settings.cache_namespace}limits",
        socket_connect_timeout=settings.redis_socket_timeout,
        socket_timeout=settings.redis_socket_timeout,
    )


class RateLimiter:
    def __init__(
        self,
        storage: Storage,
        policies: dict[LimiterKind, LimitPolicy],
        events: EventLogger = default_events,
    ):
        self._strategy = MovingWindowRateLimiter(storage)
        self.policies = policies
        self._events = events

    @classmethod
    def from_settings(cls, storage: Storage, settings: Settings, **kwargs) -> "RateLimiter":
        return cls(storage, policies_from_settings(settings), **kwargs)

    async def check(self, kind: LimiterKind, identifier: str) -> RateLimitResult:
        """Record one request for ``identifier`` and decide whether it may pass.

        Fails open: if the storage cannot be reached the request is allowed
        and a warning is logged.
        """
        policy = self.policies[LimiterKind(kind)]
        item = policy.item

        try:
            allowed = await self._strategy.hit(item, policy.prefix, identifier)
            stats = await self._strategy.get_window_stats(item, policy.prefix, identifier)
        except BACKEND_ERRORS as e:
            logger.warning(
                f"Rate limit check failed, allowing request: {e}",
                extra={"context": {"kind": policy.prefix, "identifier": identifier}},
            )
            return RateLimitResult(
                success=True,
                limit=policy.limit,
                remaining=max(policy.limit - 1, 0),
                reset=_instant(time.time() + policy.window_seconds),
            )

        now = time.time()
        reset_at = stats.reset_time if stats.reset_time > now else now + policy.window_seconds

        if not allowed:
            return RateLimitResult(
                success=False,
                limit=policy.limit,
                remaining=0,
                reset=_instant(reset_at),
                retry_after=max(math.ceil(reset_at - now), 1),
            )

        return RateLimitResult(
            success=True,
            limit=policy.limit,
            remaining=max(stats.remaining, 0),
            reset=_instant(reset_at),
        )

    def log_denial(
        self,
        identifier: str,
        result: RateLimitResult,
        kind: LimiterKind,
        path: str,
        method: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        window = f"{self.policies[LimiterKind(kind)].window_seconds}s"
        self._events.rate_limit_hit(
            identifier, result.limit, window,
            path=path, method=method, ip=ip, user_agent=user_agent,
        )


def _instant(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)
