"""Session and account records persisted over a SecretStorage.

Two independent logical records are multiplexed by key:

- ``<auth_id>.sessions``: JSON array of sessions (at most one entry)
- ``<auth_id>.account``: JSON object holding the OAuth account

The store does not coordinate concurrent writers; callers serialize
their own read-modify-write sequences per record.
"""

from __future__ import annotations

import json
import logging

from typing import TYPE_CHECKING, Any

from .exceptions import StorageError
from .types import AuthenticationSession, OAuthAccount


if TYPE_CHECKING:
    from .secret_store import SecretStorage


logger = logging.getLogger("wisdom_oauth.auth")

DEFAULT_AUTH_ID = "auth-wisdom"


def _serialize_sessions(sessions: list[AuthenticationSession]) -> str:
    """Serialize a session list to JSON."""
    return json.dumps([session.to_dict() for session in sessions])


def _deserialize_sessions(data: str, key: str) -> list[AuthenticationSession]:
    """Deserialize a session list from JSON."""
    try:
        raw = json.loads(data)
        if not isinstance(raw, list):
            msg = "sessions record is not a list"
            raise TypeError(msg)
        return [AuthenticationSession.from_dict(item) for item in raw]
    except (ValueError, TypeError, KeyError) as exc:
        msg = f"Corrupt sessions record: {exc}"
        raise StorageError(msg, key=key) from exc


def _serialize_account(account: OAuthAccount) -> str:
    """Serialize an account to JSON."""
    return json.dumps(account.to_dict())


def _deserialize_account(data: str, key: str) -> OAuthAccount:
    """Deserialize an account from JSON."""
    try:
        raw: dict[str, Any] = json.loads(data)
        return OAuthAccount.from_dict(raw)
    except (ValueError, TypeError, KeyError) as exc:
        msg = f"Corrupt account record: {exc}"
        raise StorageError(msg, key=key) from exc


class TokenStore:
    """Reads and writes the sessions list and the OAuth account.

    Parameters
    ----------
    storage : SecretStorage
        Backing secret storage.
    auth_id : str
        Provider id used to namespace the record keys (default "auth-wisdom").
    """

    def __init__(self, storage: SecretStorage, auth_id: str = DEFAULT_AUTH_ID) -> None:
        """Initialize the token store."""
        self.storage = storage
        self.auth_id = auth_id

    @property
    def sessions_key(self) -> str:
        """Secret key of the sessions record."""
        return f"{self.auth_id}.sessions"

    @property
    def account_key(self) -> str:
        """Secret key of the account record."""
        return f"{self.auth_id}.account"

    async def get_sessions(self) -> list[AuthenticationSession]:
        """Load the persisted sessions.

        Returns
        -------
        list[AuthenticationSession]
            Zero or one session. A multi-entry record is normalized to its
            most recent (last) entry.
        """
        data = await self.storage.get(self.sessions_key)
        if not data:
            return []
        sessions = _deserialize_sessions(data, self.sessions_key)
        if len(sessions) > 1:
            logger.warning(
                "Found %d persisted sessions; keeping only the most recent", len(sessions)
            )
            sessions = sessions[-1:]
        return sessions

    async def store_sessions(self, sessions: list[AuthenticationSession]) -> None:
        """Persist the sessions list, overwriting the previous record.

        Parameters
        ----------
        sessions : list[AuthenticationSession]
            Sessions to persist (at most one).
        """
        if len(sessions) > 1:
            msg = "At most one session can be persisted"
            raise ValueError(msg)
        await self.storage.store(self.sessions_key, _serialize_sessions(sessions))

    async def get_account(self) -> OAuthAccount | None:
        """Load the persisted OAuth account, or None if absent."""
        data = await self.storage.get(self.account_key)
        if not data:
            return None
        return _deserialize_account(data, self.account_key)

    async def store_account(self, account: OAuthAccount) -> None:
        """Persist the OAuth account, overwriting the previous record."""
        await self.storage.store(self.account_key, _serialize_account(account))

    async def delete_account(self) -> None:
        """Delete the OAuth account record."""
        await self.storage.delete(self.account_key)

    async def get_account_record(self) -> str | None:
        """Load the raw account record without decoding it."""
        return await self.storage.get(self.account_key)

    async def restore_account_record(self, record: str | None) -> None:
        """Put back a record from ``get_account_record``, deleting when it was absent."""
        if record is None:
            await self.delete_account()
        else:
            await self.storage.store(self.account_key, record)
