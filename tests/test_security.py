"""Tests for security headers, CORS and client address resolution."""

import base64

import pytest
from starlette.requests import Request

from taskapi.core.security import (
    content_security_policy,
    cors_headers,
    generate_nonce,
    resolve_client_ip,
    security_headers,
)

ALLOWED = ["https://app.example", "http://localhost:3000"]


def make_request(peer="203.0.113.9", headers=None) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": (peer, 50000) if peer else None,
    }
    return Request(scope)


class TestNonce:
    def test_nonce_has_128_bits(self):
        assert len(base64.b64decode(generate_nonce())) == 16

    def test_nonces_are_unique(self):
        assert len({generate_nonce() for _ in range(100)}) == 100


class TestSecurityHeaders:
    """Test the hardening header set."""

    def test_csp_carries_nonce(self):
        policy = content_security_policy("abc123")

        assert "script-src 'self' 'nonce-abc123'" in policy
        assert "frame-ancestors 'none'" in policy
        assert "object-src 'none'" in policy

    def test_hardening_headers(self):
        headers = security_headers("abc123")

        assert headers["X-Content-Type-Options"] == "nosniff"
        assert headers["Referrer-Policy"] == "no-referrer"
        assert headers["X-Frame-Options"] == "DENY"
        assert "camera=()" in headers["Permissions-Policy"]
        assert headers["Strict-Transport-Security"].startswith("max-age=31536000")


class TestCors:
    """Test origin allow-listing."""

    def test_allowed_origin_is_echoed(self):
        headers = cors_headers("https://app.example", ALLOWED)

        assert headers["Access-Control-Allow-Origin"] == "https://app.example"
        assert headers["Access-Control-Allow-Credentials"] == "true"
        assert headers["Vary"] == "Origin"

    def test_null_origin_is_echoed(self):
        assert cors_headers("null", ALLOWED)["Access-Control-Allow-Origin"] == "null"

    @pytest.mark.parametrize("origin", ["https://evil.example", None, ""])
    def test_other_origins_get_no_allow_origin(self, origin):
        headers = cors_headers(origin, ALLOWED)

        assert "Access-Control-Allow-Origin" not in headers
        assert "Access-Control-Allow-Credentials" not in headers

    def test_common_headers_always_present(self):
        headers = cors_headers("https://evil.example", ALLOWED)

        assert headers["Access-Control-Allow-Methods"] == "GET, POST, PUT, DELETE, OPTIONS"
        assert headers["Access-Control-Allow-Headers"] == "Content-Type, Authorization, X-Requested-With"
        assert headers["Access-Control-Max-Age"] == "86400"


class TestClientIp:
    """Test trusted-proxy address resolution."""

    def test_untrusted_peer_ignores_forwarding_headers(self):
        request = make_request(headers={"X-Forwarded-For": "198.51.100.1"})

        assert resolve_client_ip(request, []) == "203.0.113.9"

    def test_trusted_proxy_uses_first_forwarded_address(self):
        request = make_request(
            peer="10.0.0.5", headers={"X-Forwarded-For": "198.51.100.1, 10.0.0.5"}
        )

        assert resolve_client_ip(request, ["10.0.0.0/8"]) == "198.51.100.1"

    def test_trusted_proxy_falls_back_to_real_ip(self):
        request = make_request(peer="10.0.0.5", headers={"X-Real-IP": "198.51.100.7"})

        assert resolve_client_ip(request, ["10.0.0.5"]) == "198.51.100.7"

    def test_malformed_forwarded_value_is_ignored(self):
        request = make_request(peer="10.0.0.5", headers={"X-Forwarded-For": "not-an-ip"})

        assert resolve_client_ip(request, ["10.0.0.0/8"]) == "10.0.0.5"

    def test_missing_peer(self):
        assert resolve_client_ip(make_request(peer=None), []) == "unknown"
