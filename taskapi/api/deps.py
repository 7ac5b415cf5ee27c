"""Request pipeline stages shared by the API routes.

Every task route runs, in order: identity resolution (401), rate limiting
(429), body validation for writes (400); the service layer then handles the
cache and the owner-scoped database operation.
"""

import json
import secrets
from typing import Any, Optional, Type, TypeVar

from fastapi import Depends, Request
from pydantic import BaseModel, ValidationError
from typing_extensions import Annotated

from taskapi.auth.provider import Identity, IdentityProvider
from taskapi.auth.session import extract_access_token
from taskapi.cache.layer import CacheLayer
from taskapi.core.config import SettingsDep
from taskapi.core.errors import (
    IdentityProviderError,
    RateLimited,
    Unauthenticated,
    ValidationFailed,
)
from taskapi.core.logging import RingBufferHandler, events
from taskapi.ratelimit.limiter import LimiterKind, RateLimiter, RateLimitResult, rate_limit_key

ModelT = TypeVar("ModelT", bound=BaseModel)

READ_METHODS = {"GET", "HEAD"}


def get_cache(request: Request) -> CacheLayer:
    return request.app.state.cache


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_identity_provider(request: Request) -> IdentityProvider:
    return request.app.state.identity_provider


def get_log_buffer(request: Request) -> RingBufferHandler:
    return request.app.state.log_buffer


def client_ip(request: Request) -> str:
    return getattr(request.state, "client_ip", None) or "unknown"


async def resolve_identity(
    request: Request, settings, provider: IdentityProvider
) -> Optional[Identity]:
    """Look up the caller; None when there is no usable session."""
    ip = client_ip(request)
    user_agent = request.headers.get("user-agent", "unknown")

    token = extract_access_token(request, settings)
    if not token:
        events.auth_failure("Missing session", ip=ip, user_agent=user_agent)
        return None

    try:
        identity = await provider.get_user(token)
    except IdentityProviderError as e:
        events.warn("Identity provider unavailable", {"error": str(e)}, ip=ip)
        return None

    if identity is None:
        events.auth_failure("Invalid or expired token", ip=ip, user_agent=user_agent)
        return None

    request.state.user_id = identity.id
    events.auth_success(identity.id, "session", ip=ip, user_agent=user_agent)
    return identity


async def get_current_identity(
    request: Request,
    settings: SettingsDep,
    provider: Annotated[IdentityProvider, Depends(get_identity_provider)],
) -> Identity:
    identity = await resolve_identity(request, settings, provider)
    if identity is None:
        raise Unauthenticated()
    return identity


CurrentIdentity = Annotated[Identity, Depends(get_current_identity)]


async def apply_rate_limit(
    request: Request,
    limiter: RateLimiter,
    kind: LimiterKind,
    user_id: Optional[str],
) -> RateLimitResult:
    ip = client_ip(request)
    identifier = rate_limit_key(user_id, ip)
    result = await limiter.check(kind, identifier)
    request.state.rate_limit = result

    if not result.success:
        limiter.log_denial(
            identifier,
            result,
            kind,
            path=request.url.path,
            method=request.method,
            ip=ip,
            user_agent=request.headers.get("user-agent"),
        )
        raise RateLimited(headers=result.headers(denied=True), retryAfter=result.retry_after)

    return result


class RateLimitGuard:
    """Dependency running the rate-limit stage after authentication.

    With no explicit kind, GET requests count against the read limiter and
    every other method against the write limiter.
    """

    def __init__(self, kind: Optional[LimiterKind] = None):
        self.kind = kind

    async def __call__(
        self,
        request: Request,
        identity: CurrentIdentity,
        limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
    ) -> RateLimitResult:
        kind = self.kind or (
            LimiterKind.READ if request.method in READ_METHODS else LimiterKind.WRITE
        )
        return await apply_rate_limit(request, limiter, kind, identity.id)


enforce_rate_limit = RateLimitGuard()


def format_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "field": ".".join(str(part) for part in error.get("loc", ())) or "body",
            "message": error.get("msg", "Invalid value"),
            "type": error.get("type", "value_error"),
        }
        for error in errors
    ]


async def parse_body(request: Request, model: Type[ModelT]) -> ModelT:
    """Validate a JSON body against ``model``; raises ValidationFailed."""
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationFailed(
            [{"field": "body", "message": "Body must be valid JSON", "type": "json_invalid"}]
        )

    try:
        data = model.model_validate(payload)
    except ValidationError as e:
        details = format_validation_errors(e.errors())
        events.warn(
            "Request validation failed",
            {"errors": details},
            user_id=getattr(request.state, "user_id", None),
        )
        raise ValidationFailed(details)

    return data


async def require_service_scope(request: Request, settings: SettingsDep) -> None:
    """Gate privileged admin endpoints behind the service-role bearer token.

    Development mode skips the check so the sweep can be triggered by hand.
    """
    if settings.is_development:
        return

    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    expected = settings.service_role_key
    if (
        scheme.lower() != "bearer"
        or not token
        or not expected
        or not secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))
    ):
        events.auth_failure("Missing or invalid service credential", ip=client_ip(request))
        raise Unauthenticated()
