"""Client for the external identity provider.

The provider speaks the GoTrue HTTP API (as served by Supabase Auth). Only the
three calls the API needs are wrapped: resolve the user behind an access
token, exchange a refresh token for a new session, and revoke a session.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from taskapi.core.config import Settings
from taskapi.core.errors import IdentityProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None


@dataclass(frozen=True)
class SessionTokens:
    access_token: str
    refresh_token: str
    expires_in: int = 3600


class IdentityProvider(Protocol):
    async def get_user(self, access_token: str) -> Optional[Identity]: ...

    async def refresh_session(self, refresh_token: str) -> Optional[SessionTokens]: ...

    async def sign_out(self, access_token: str) -> None: ...

    async def aclose(self) -> None: ...


class GoTrueIdentityProvider:
    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(
            base_url=settings.auth_url.rstrip("/"),
            timeout=settings.auth_timeout_seconds,
            headers={"apikey": settings.auth_anon_key},
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise IdentityProviderError(f"{method} {path} failed: {e}") from e

    async def get_user(self, access_token: str) -> Optional[Identity]:
        """Return the identity behind ``access_token``, or None if it is not valid."""
        response = await self._request(
            "GET", "/auth/v1/user", headers={"Authorization": f"Bearer {access_token}"}
        )
        if response.status_code in (401, 403):
            return None
        if response.status_code != 200:
            raise IdentityProviderError(f"Unexpected status {response.status_code} from user lookup")

        try:
            data = response.json()
            metadata = data.get("user_metadata") or {}
            return Identity(
                id=data["id"],
                email=data.get("email"),
                display_name=metadata.get("full_name") or metadata.get("name"),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise IdentityProviderError(f"Malformed user lookup response: {e!r}") from e

    async def refresh_session(self, refresh_token: str) -> Optional[SessionTokens]:
        response = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        if response.status_code in (400, 401, 403):
            return None
        if response.status_code != 200:
            raise IdentityProviderError(f"Unexpected status {response.status_code} from token refresh")

        try:
            data = response.json()
            return SessionTokens(
                access_token=data["access_token"],
                refresh_token=data["refresh_token"],
                expires_in=int(data.get("expires_in", 3600)),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise IdentityProviderError(f"Malformed token refresh response: {e!r}") from e

    async def sign_out(self, access_token: str) -> None:
        response = await self._request(
            "POST", "/auth/v1/logout", headers={"Authorization": f"Bearer {access_token}"}
        )
        if response.status_code >= 400:
            raise IdentityProviderError(f"Sign out failed with status {response.status_code}")

    async def aclose(self) -> None:
        await self._client.aclose()
