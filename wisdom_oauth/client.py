"""HTTP client for the Wisdom service OAuth and profile endpoints.

Every call is a single request with fixed headers and a form-encoded
body. Transport failures are logged with detail and re-raised as a
``TransportError`` carrying a generic message.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import Any

import httpx

from .exceptions import TransportError
from .log import redact_sensitive_data
from .types import TokenResponse, UserInfo


logger = logging.getLogger("wisdom_oauth.auth")

TOKEN_PATH = "/o/token/"
PROFILE_PATH = "/api/me/"

UNEXPECTED_ERROR = "An unexpected error occurred"

_FORM_HEADERS = {
    "Cache-Control": "no-cache",
    "Content-Type": "application/x-www-form-urlencoded",
}


class WisdomServiceClient:
    """Thin client for the token and profile endpoints.

    Parameters
    ----------
    base_path : str
        Base URL of the Wisdom service.
    timeout : float
        Per-request timeout in seconds (default 30).
    http_client : httpx.AsyncClient, optional
        Externally owned client; when given it is never closed here.
    """

    def __init__(
        self,
        base_path: str,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the service client."""
        self.base_path = base_path.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def token_url(self) -> str:
        """Token endpoint URL."""
        return f"{self.base_path}{TOKEN_PATH}"

    @property
    def profile_url(self) -> str:
        """Profile endpoint URL."""
        return f"{self.base_path}{PROFILE_PATH}"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if (
            self._owns_client
            and self._http_client is not None
            and not self._http_client.is_closed
        ):
            await self._http_client.aclose()
            self._http_client = None

    async def exchange_code(
        self,
        code: str,
        verifier: str,
        redirect_uri: str,
        client_id: str,
    ) -> TokenResponse:
        """Exchange an authorization code for tokens.

        Parameters
        ----------
        code : str
            The authorization code from the redirect.
        verifier : str
            The PKCE code verifier matching the challenge sent to authorize.
        redirect_uri : str
            The redirect URI used in the authorization request.
        client_id : str
            The OAuth2 client ID.

        Returns
        -------
        TokenResponse
            Access token, refresh token and lifetime.

        Raises
        ------
        TransportError
            If the request fails or the response is malformed.
        """
        logger.info("Sending request for access token...")
        data = {
            "client_id": client_id,
            "code": code,
            "code_verifier": verifier,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }
        return await self._post_token(data)

    async def refresh(self, refresh_token: str, client_id: str) -> TokenResponse:
        """Exchange a refresh token for a new access token.

        Parameters
        ----------
        refresh_token : str
            The current refresh token.
        client_id : str
            The OAuth2 client ID.

        Returns
        -------
        TokenResponse
            The new token set; ``refresh_token`` is None if not rotated.

        Raises
        ------
        TransportError
            If the request fails or the response is malformed.
        """
        logger.info("Sending request for a new access token...")
        data = {
            "client_id": client_id,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        return await self._post_token(data)

    async def fetch_profile(self, access_token: str) -> UserInfo:
        """Fetch the logged-in user's profile.

        Parameters
        ----------
        access_token : str
            A valid access token.

        Returns
        -------
        UserInfo
            The user profile.

        Raises
        ------
        TransportError
            With the transport's own message for HTTP failures, or a
            generic message for a malformed response.
        """
        logger.info("Sending request for logged-in user info...")
        try:
            client = await self._get_client()
            resp = await client.get(
                self.profile_url,
                headers={**_FORM_HEADERS, "Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            raw = resp.json()
            return UserInfo(username=str(raw["username"]))
        except httpx.HTTPStatusError as exc:
            logger.warning("Profile request failed: %s", exc)
            raise TransportError(str(exc), status_code=exc.response.status_code) from exc
        except httpx.HTTPError as exc:
            logger.warning("Profile request failed: %s", exc)
            raise TransportError(str(exc) or UNEXPECTED_ERROR) from exc
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Malformed profile response: %s", exc)
            raise TransportError(UNEXPECTED_ERROR) from exc

    async def _post_token(self, data: dict[str, str]) -> TokenResponse:
        """POST a form to the token endpoint and parse the token response."""
        logger.debug("POST %s %s", self.token_url, redact_sensitive_data(data))
        try:
            client = await self._get_client()
            resp = await client.post(
                self.token_url,
                data=data,
                headers=_FORM_HEADERS,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            raw: dict[str, Any] = resp.json()
            return TokenResponse(
                access_token=str(raw["access_token"]),
                refresh_token=raw.get("refresh_token"),
                expires_in=int(raw["expires_in"]),
            )
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Token request failed with status %s: %s",
                exc.response.status_code,
                exc.response.text,
            )
            raise TransportError(UNEXPECTED_ERROR, status_code=exc.response.status_code) from exc
        except httpx.HTTPError as exc:
            logger.warning("Token request failed: %s", exc)
            raise TransportError(UNEXPECTED_ERROR) from exc
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Malformed token response: %s", exc)
            raise TransportError(UNEXPECTED_ERROR) from exc
