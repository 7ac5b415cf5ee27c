"""Perimeter stage run before any route.

- resolves the request id and the client address
- refreshes an expired session from the refresh-token cookie
- answers CORS preflights with 204 before auth or rate limiting run
- attaches CSP (with a fresh nonce), hardening and CORS headers, plus the
  rate-limit headers recorded by the route, to every other response
- logs each request/response pair
"""

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from taskapi.auth.session import needs_refresh, set_session_cookies
from taskapi.core.errors import IdentityProviderError
from taskapi.core.logging import events
from taskapi.core.security import (
    cors_headers,
    generate_nonce,
    resolve_client_ip,
    security_headers,
)

logger = logging.getLogger(__name__)


def internal_error_response(exc: Exception, verbose: bool) -> JSONResponse:
    content = {"error": "Internal server error"}
    if verbose:
        content["details"] = repr(exc)
    return JSONResponse(status_code=500, content=content)


class PerimeterMiddleware(BaseHTTPMiddleware):
    REQUEST_ID_HEADER = "X-Request-ID"

    async def dispatch(self, request: Request, call_next) -> Response:
        settings = request.app.state.settings
        started = time.perf_counter()

        request_id = request.headers.get(self.REQUEST_ID_HEADER) or uuid.uuid4().hex
        ip = resolve_client_ip(request, settings.trusted_proxy_list)
        request.state.request_id = request_id
        request.state.client_ip = ip

        refreshed = await self._refresh_session(request, settings)

        cors = cors_headers(request.headers.get("origin"), settings.allowed_origins)
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=cors)

        nonce = generate_nonce()
        request.state.csp_nonce = nonce

        events.api_request(
            request.method,
            request.url.path,
            ip=ip,
            user_agent=request.headers.get("user-agent", "unknown"),
            request_id=request_id,
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            events.error(
                "API handler error",
                {"method": request.method, "path": request.url.path, "error": repr(exc)},
                request_id=request_id, ip=ip,
            )
            logger.exception("Unhandled error while serving request")
            response = internal_error_response(exc, settings.is_development)

        response.headers.update(security_headers(nonce))
        response.headers.update(cors)
        rate_limit = getattr(request.state, "rate_limit", None)
        if rate_limit is not None:
            for name, value in rate_limit.headers().items():
                if name not in response.headers:
                    response.headers[name] = value
        response.headers[self.REQUEST_ID_HEADER] = request_id

        if refreshed is not None:
            set_session_cookies(response, refreshed, settings)

        events.api_response(
            request.method,
            request.url.path,
            response.status_code,
            int((time.perf_counter() - started) * 1000),
            user_id=getattr(request.state, "user_id", None),
            request_id=request_id,
        )
        return response

    async def _refresh_session(self, request: Request, settings):
        if not needs_refresh(request, settings):
            return None

        provider = request.app.state.identity_provider
        try:
            tokens = await provider.refresh_session(
                request.cookies[settings.refresh_token_cookie]
            )
        except IdentityProviderError as e:
            events.warn("Session refresh failed", {"error": str(e)}, ip=request.state.client_ip)
            return None

        if tokens is not None:
            request.state.access_token = tokens.access_token
        return tokens
