"""Data model for the Wisdom OAuth session lifecycle."""

from __future__ import annotations

import time

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Literal


def calculate_token_expiry_time(expires_in: int | float, now: float | None = None) -> int:
    """Return the epoch second at which a token issued now expires.

    Parameters
    ----------
    expires_in : int or float
        Token lifetime in seconds, as reported by the token endpoint.
    now : float, optional
        Current epoch time (defaults to ``time.time()``).

    Returns
    -------
    int
        ``floor(now) + expires_in``.
    """
    current = time.time() if now is None else now
    return int(current) + int(expires_in)


@dataclass(frozen=True)
class TokenResponse:
    """Token endpoint response.

    Attributes
    ----------
    access_token : str
        The issued access token.
    refresh_token : str or None
        The refresh token, if the server issued a new one.
    expires_in : int
        Access token lifetime in seconds.
    """

    access_token: str
    refresh_token: str | None
    expires_in: int


@dataclass(frozen=True)
class UserInfo:
    """Logged-in user profile returned by ``/api/me/``."""

    username: str


@dataclass(frozen=True)
class OAuthAccount:
    """Internal token material backing a session.

    Serialized with the camelCase keys used by the persisted record.
    """

    access_token: str
    refresh_token: str
    expires_at_timestamp_in_seconds: int
    type: Literal["oauth"] = "oauth"

    def is_near_expiry(self, now: float, grace_time: float) -> bool:
        """Check whether the access token is within ``grace_time`` of expiry."""
        return now >= self.expires_at_timestamp_in_seconds - grace_time

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the persisted JSON shape."""
        return {
            "type": self.type,
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAtTimestampInSeconds": self.expires_at_timestamp_in_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OAuthAccount:
        """Deserialize from the persisted JSON shape."""
        return cls(
            access_token=data["accessToken"],
            refresh_token=data["refreshToken"],
            expires_at_timestamp_in_seconds=int(data["expiresAtTimestampInSeconds"]),
        )

    @classmethod
    def from_token_response(
        cls,
        response: TokenResponse,
        previous: OAuthAccount | None = None,
        now: float | None = None,
    ) -> OAuthAccount:
        """Build an account from a token response.

        The response fields overwrite the previous account. The previous
        refresh token is kept only when the response carries none.
        """
        refresh_token = response.refresh_token
        if not refresh_token and previous is not None:
            refresh_token = previous.refresh_token
        return cls(
            access_token=response.access_token,
            refresh_token=refresh_token or "",
            expires_at_timestamp_in_seconds=calculate_token_expiry_time(response.expires_in, now),
        )


@dataclass(frozen=True)
class SessionAccount:
    """Account descriptor shown to the user for a session."""

    id: str
    label: str


@dataclass(frozen=True)
class AuthenticationSession:
    """Externally visible identity record.

    Attributes
    ----------
    id : str
        Opaque unique session identifier.
    access_token : str
        Access token mirrored from the backing account.
    account : SessionAccount
        Display label and id of the logged-in user.
    scopes : tuple[str, ...]
        Scopes the session was created with.
    """

    id: str
    access_token: str
    account: SessionAccount
    scopes: tuple[str, ...] = ()

    def with_access_token(self, access_token: str) -> AuthenticationSession:
        """Return a copy carrying a rotated access token."""
        return replace(self, access_token=access_token)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the persisted JSON shape."""
        return {
            "id": self.id,
            "accessToken": self.access_token,
            "account": {"id": self.account.id, "label": self.account.label},
            "scopes": list(self.scopes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuthenticationSession:
        """Deserialize from the persisted JSON shape."""
        account = data.get("account") or {}
        return cls(
            id=data["id"],
            access_token=data["accessToken"],
            account=SessionAccount(
                id=account.get("id", data["id"]),
                label=account.get("label", ""),
            ),
            scopes=tuple(data.get("scopes") or ()),
        )


@dataclass(frozen=True)
class SessionChangeEvent:
    """Session set change notification for external observers."""

    added: tuple[AuthenticationSession, ...] = field(default_factory=tuple)
    removed: tuple[AuthenticationSession, ...] = field(default_factory=tuple)
    changed: tuple[AuthenticationSession, ...] = field(default_factory=tuple)


class AuthFlowState(str, Enum):
    """State of the authentication lifecycle."""

    IDLE = "idle"
    AWAITING_REDIRECT = "awaiting_redirect"
    EXCHANGING_CODE = "exchanging_code"
    AUTHENTICATED = "authenticated"
    REFRESHING_TOKEN = "refreshing_token"
    LOGGED_OUT = "logged_out"
