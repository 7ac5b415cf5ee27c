from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import RedirectResponse
from typing_extensions import Annotated

from taskapi.api.deps import (
    apply_rate_limit,
    client_ip,
    get_identity_provider,
    get_rate_limiter,
    resolve_identity,
)
from taskapi.auth.provider import IdentityProvider
from taskapi.auth.session import clear_session_cookies, extract_access_token
from taskapi.core.config import SettingsDep
from taskapi.core.errors import IdentityProviderError
from taskapi.core.logging import events
from taskapi.ratelimit.limiter import LimiterKind, RateLimiter

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/logout")
async def logout(
    request: Request,
    settings: SettingsDep,
    provider: Annotated[IdentityProvider, Depends(get_identity_provider)],
    limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
):
    """Revoke the session and send the browser back to the login page"""
    identity = await resolve_identity(request, settings, provider)
    user_id = identity.id if identity else None
    await apply_rate_limit(request, limiter, LimiterKind.AUTH, user_id)

    location = "/login"
    token = extract_access_token(request, settings)
    if token:
        try:
            await provider.sign_out(token)
        except IdentityProviderError as e:
            events.error("Error signing out", {"error": str(e)}, user_id=user_id)
            location = "/dashboard?" + urlencode({"error": "Could not sign out"})

    response = RedirectResponse(location, status_code=status.HTTP_303_SEE_OTHER)
    if location == "/login":
        clear_session_cookies(response, settings)
        events.auth_logout(
            user_id, ip=client_ip(request), user_agent=request.headers.get("user-agent")
        )
    return response
