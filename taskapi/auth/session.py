from typing import Optional

from starlette.requests import Request
from starlette.responses import Response

from taskapi.auth.provider import SessionTokens
from taskapi.core.config import Settings


def extract_access_token(request: Request, settings: Settings) -> Optional[str]:
    """Bearer header first, then a token refreshed by the perimeter, then the cookie."""
    authorization = request.headers.get("authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()

    refreshed = getattr(request.state, "access_token", None)
    if refreshed:
        return refreshed

    return request.cookies.get(settings.access_token_cookie) or None


def needs_refresh(request: Request, settings: Settings) -> bool:
    return (
        "authorization" not in request.headers
        and not request.cookies.get(settings.access_token_cookie)
        and bool(request.cookies.get(settings.refresh_token_cookie))
    )


def set_session_cookies(response: Response, tokens: SessionTokens, settings: Settings) -> None:
    secure = not settings.is_development
    response.set_cookie(
        settings.access_token_cookie,
        tokens.access_token,
        max_age=tokens.expires_in,
        httponly=True,
        secure=secure,
        samesite="lax",
    )
    response.set_cookie(
        settings.refresh_token_cookie,
        tokens.refresh_token,
        httponly=True,
        secure=secure,
        samesite="lax",
    )


def clear_session_cookies(response: Response, settings: Settings) -> None:
    response.delete_cookie(settings.access_token_cookie)
    response.delete_cookie(settings.refresh_token_cookie)
