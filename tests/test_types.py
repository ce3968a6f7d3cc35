"""Tests for the session and account data model."""

from __future__ import annotations

from wisdom_oauth.types import (
    AuthenticationSession,
    OAuthAccount,
    SessionAccount,
    SessionChangeEvent,
    TokenResponse,
    calculate_token_expiry_time,
)


class TestExpiry:
    """Tests for expiry arithmetic."""

    def test_floor_of_now_plus_lifetime(self) -> None:
        """Expiry is the floored current second plus the lifetime."""
        assert calculate_token_expiry_time(3600, now=1000.9) == 4600

    def test_near_expiry_boundary(self) -> None:
        """The grace window is inclusive at its start."""
        account = OAuthAccount("T", "R", expires_at_timestamp_in_seconds=100)
        assert not account.is_near_expiry(now=89, grace_time=10)
        assert account.is_near_expiry(now=90, grace_time=10)
        assert account.is_near_expiry(now=200, grace_time=10)


class TestOAuthAccount:
    """Tests for OAuthAccount."""

    def test_persisted_shape(self) -> None:
        """Accounts serialize with camelCase keys and the oauth type tag."""
        account = OAuthAccount("T1", "R1", 4600)
        assert account.to_dict() == {
            "type": "oauth",
            "accessToken": "T1",
            "refreshToken": "R1",
            "expiresAtTimestampInSeconds": 4600,
        }
        assert OAuthAccount.from_dict(account.to_dict()) == account

    def test_from_token_response(self) -> None:
        """A token response becomes an account expiring after its lifetime."""
        account = OAuthAccount.from_token_response(TokenResponse("T1", "R1", 3600), now=1000.0)
        assert account == OAuthAccount("T1", "R1", 4600)

    def test_refresh_token_kept_when_not_rotated(self) -> None:
        """The previous refresh token is kept only when the response has none."""
        previous = OAuthAccount("T1", "R1", 10)

        kept = OAuthAccount.from_token_response(TokenResponse("T2", None, 60), previous, now=0)
        rotated = OAuthAccount.from_token_response(TokenResponse("T2", "R2", 60), previous, now=0)

        assert kept.refresh_token == "R1"
        assert rotated.refresh_token == "R2"


class TestAuthenticationSession:
    """Tests for AuthenticationSession."""

    def test_persisted_shape(self) -> None:
        """Sessions serialize with camelCase keys and a nested account."""
        session = AuthenticationSession(
            id="s1", access_token="T1", account=SessionAccount("s1", "alice"), scopes=("a",)
        )
        assert session.to_dict() == {
            "id": "s1",
            "accessToken": "T1",
            "account": {"id": "s1", "label": "alice"},
            "scopes": ["a"],
        }
        assert AuthenticationSession.from_dict(session.to_dict()) == session

    def test_from_dict_tolerates_missing_optional_keys(self) -> None:
        """Scopes and the account default when absent."""
        session = AuthenticationSession.from_dict({"id": "s1", "accessToken": "T1"})
        assert session.scopes == ()
        assert session.account == SessionAccount("s1", "")

    def test_with_access_token(self) -> None:
        """Rotating the token keeps id, account and scopes."""
        session = AuthenticationSession("s1", "T1", SessionAccount("s1", "alice"))
        fresh = session.with_access_token("T2")
        assert fresh.access_token == "T2"
        assert fresh.id == session.id
        assert fresh.account == session.account
        assert session.access_token == "T1"


def test_change_event_defaults() -> None:
    """Change events default to empty collections."""
    event = SessionChangeEvent()
    assert event.added == event.removed == event.changed == ()
