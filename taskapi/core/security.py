"""Content-Security-Policy, hardening headers and CORS policy."""

import base64
import ipaddress
import secrets
from typing import Iterable, Optional

from starlette.requests import Request

CSP_DIRECTIVES = (
    "default-src 'self'",
    "script-src 'self' 'nonce-{nonce}'",
    "style-src 'self' 'unsafe-inline'",
    "img-src 'self' data: https:",
    "connect-src 'self' https:",
    "frame-ancestors 'none'",
    "base-uri 'self'",
    "form-action 'self'",
    "object-src 'none'",
)

CORS_ALLOW_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type, Authorization, X-Requested-With"
CORS_MAX_AGE = str(24 * 60 * 60)


def generate_nonce(num_bytes: int = 16) -> str:
    """Return a base64 rendered nonce with ``num_bytes`` of entropy."""
    return base64.b64encode(secrets.token_bytes(num_bytes)).decode("ascii")


def content_security_policy(nonce: str) -> str:
    return "; ".join(d.format(nonce=nonce) for d in CSP_DIRECTIVES)


def security_headers(nonce: str) -> dict[str, str]:
    return {
        "Content-Security-Policy": content_security_policy(nonce),
        "X-Content-Type-Options": "nosniff",
        "Referrer-Policy": "no-referrer",
        "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
        "X-Frame-Options": "DENY",
        "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    }


def cors_headers(origin: Optional[str], allowed_origins: Iterable[str]) -> dict[str, str]:
    """Build CORS headers for a request ``Origin``.

    The literal ``"null"`` origin (file:// pages, sandboxed frames) is echoed
    back, as is any origin on the allow-list. Anything else gets no
    ``Access-Control-Allow-Origin`` header at all.
    """
    headers = {
        "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
        "Access-Control-Max-Age": CORS_MAX_AGE,
    }

    if origin == "null" or (origin and origin in allowed_origins):
        headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Credentials"] = "true"
        headers["Vary"] = "Origin"

    return headers


def _parse_ip(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def _is_trusted(peer: str, trusted_proxies: Iterable[str]) -> bool:
    try:
        address = ipaddress.ip_address(peer)
    except ValueError:
        return False
    for entry in trusted_proxies:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def resolve_client_ip(request: Request, trusted_proxies: Iterable[str]) -> str:
    """Resolve the client address used for rate-limit buckets and logs.

    Forwarding headers are honoured only when the direct peer is a trusted
    proxy, and only when they hold a well-formed IP address.
    """
    peer = request.client.host if request.client else None

    if peer and _is_trusted(peer, trusted_proxies):
        forwarded = request.headers.get("x-forwarded-for")
        candidate = _parse_ip(forwarded.split(",")[0]) if forwarded else None
        candidate = candidate or _parse_ip(request.headers.get("x-real-ip"))
        if candidate:
            return candidate

    return peer or "unknown"
