"""
Authenticated REST plumbing shared by the Graph and Gmail adapters and
connection managers.
"""

import asyncio
from datetime import timedelta
from typing import Any, Dict, Optional

import aiohttp

from mailsync.config import settings
from mailsync.exceptions import (
    AuthenticationError,
    EmailSyncError,
    ExternalServiceError,
    NotFoundError,
    RateLimitError,
)
from mailsync.utils.datetime_utils import format_utc_iso, parse_iso, utc_now
from mailsync.utils.logging import get_logger

# Refresh tokens this close to expiry
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)


class OAuthRestClient:
    """
    Bearer-token REST client with refresh-token handling.

    The credentials mapping passed to ``request`` is updated in place when the
    access token is refreshed, so callers can persist the new token.
    """

    def __init__(
        self,
        provider_name: str,
        base_url: str,
        token_url: str,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ):
        self.provider_name = provider_name
        self.base_url = base_url.rstrip("/")
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.logger = get_logger(f"{provider_name}_http")
        self._timeout = aiohttp.ClientTimeout(
            total=settings.http_client_total_timeout,
            connect=settings.http_client_connect_timeout,
        )

    async def request(
        self,
        method: str,
        endpoint: str,
        credentials: Dict[str, Any],
        params: Optional[Any] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make an authenticated request.

        Args:
            method: HTTP verb
            endpoint: Path relative to ``base_url`` or an absolute URL (paging links)
            credentials: Decrypted credentials with ``access_token`` and optionally
                ``refresh_token`` / ``expires_at``

        Returns:
            Parsed JSON body, or an empty dict for empty responses
        """
        if self._token_needs_refresh(credentials):
            await self.refresh_access_token(credentials)

        try:
            return await self._send(method, endpoint, credentials, params, data)
        except AuthenticationError:
            # One retry with a fresh token when the provider rejected a token we thought valid
            if not credentials.get("refresh_token"):
                raise
            self.logger.info(f"{self.provider_name} rejected access token, refreshing once")
            await self.refresh_access_token(credentials)
            return await self._send(method, endpoint, credentials, params, data)

    async def _send(
        self,
        method: str,
        endpoint: str,
        credentials: Dict[str, Any],
        params: Optional[Any],
        data: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        access_token = credentials.get("access_token")
        if not access_token:
            raise AuthenticationError(f"No {self.provider_name} access token available")

        url = endpoint if endpoint.startswith("http") else f"{self.base_url}{endpoint}"
        headers = {"Authorization": f"Bearer {access_token}"}
        if data is not None:
            headers["Content-Type"] = "application/json"

        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.request(method, url, headers=headers, params=params, json=data) as response:
                    return await self._handle_api_response(response)
        except EmailSyncError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ExternalServiceError(f"{self.provider_name} request failed: {e}")

    async def _handle_api_response(self, response: aiohttp.ClientResponse) -> Dict[str, Any]:
        """Map the response to a JSON body or a taxonomy error."""
        if response.status >= 400:
            error_text = await response.text()
            raise self.map_error(response.status, error_text, response.headers)

        if response.status == 204 or response.content_length == 0:
            return {}
        try:
            return await response.json(content_type=None) or {}
        except (aiohttp.ContentTypeError, ValueError) as e:
            raise ExternalServiceError(f"Failed to parse {self.provider_name} response: {e}")

    def map_error(self, status: int, error_text: str, headers: Optional[Dict[str, str]] = None) -> EmailSyncError:
        """Translate an HTTP error status into the error taxonomy."""
        details = {"status": status, "body": (error_text or "")[:500]}
        if status in (401, 403):
            return AuthenticationError(f"{self.provider_name} API authentication failed ({status})", details)
        if status == 404:
            return NotFoundError(f"{self.provider_name} resource not found", details)
        if status == 429:
            retry_after = None
            raw = (headers or {}).get("Retry-After")
            if raw:
                try:
                    retry_after = float(raw)
                except ValueError:
                    retry_after = None
            return RateLimitError(f"{self.provider_name} API rate limit exceeded", retry_after, details)
        return ExternalServiceError(f"{self.provider_name} API error {status}", details)

    def _token_needs_refresh(self, credentials: Dict[str, Any]) -> bool:
        if not credentials.get("access_token"):
            return bool(credentials.get("refresh_token"))
        expires_at = parse_iso(credentials.get("expires_at"))
        if expires_at is None:
            return False
        return utc_now() >= expires_at - TOKEN_REFRESH_MARGIN

    async def refresh_access_token(self, credentials: Dict[str, Any]) -> None:
        """Run the refresh-token grant and store the new token in ``credentials``."""
        refresh_token = credentials.get("refresh_token")
        if not refresh_token:
            raise AuthenticationError(f"{self.provider_name} access token expired and no refresh token is stored")

        form = {
            "client_id": credentials.get("client_id") or self.client_id or "",
            "client_secret": credentials.get("client_secret") or self.client_secret or "",
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(self.token_url, data=form) as response:
                    if response.status in (400, 401):
                        raise AuthenticationError(f"{self.provider_name} refresh token rejected")
                    if response.status != 200:
                        raise ExternalServiceError(f"{self.provider_name} token endpoint returned {response.status}")
                    token_data = await response.json(content_type=None)
        except EmailSyncError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ExternalServiceError(f"{self.provider_name} token refresh failed: {e}")

        credentials["access_token"] = token_data["access_token"]
        if token_data.get("refresh_token"):
            credentials["refresh_token"] = token_data["refresh_token"]
        if "expires_in" in token_data:
            expires_at = utc_now() + timedelta(seconds=int(token_data["expires_in"]))
            credentials["expires_at"] = format_utc_iso(expires_at)

        self.logger.info(f"Refreshed {self.provider_name} access token")


def graph_client() -> OAuthRestClient:
    return OAuthRestClient(
        provider_name="outlook",
        base_url=settings.graph_base_url,
        token_url=settings.microsoft_token_url,
        client_id=settings.microsoft_client_id,
        client_secret=settings.microsoft_client_secret,
    )


def gmail_client() -> OAuthRestClient:
    return OAuthRestClient(
        provider_name="gmail",
        base_url=settings.gmail_base_url,
        token_url=settings.google_token_url,
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
    )
