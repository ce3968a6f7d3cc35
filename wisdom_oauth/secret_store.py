"""Pluggable secret storage backends.

Provides the SecretStorage ABC, the string-keyed secret capability the
host offers, and concrete implementations for in-memory and OS keyring
persistence.
"""

from __future__ import annotations

import asyncio
import logging
import threading

from abc import ABC, abstractmethod
from typing import Any

from .exceptions import StorageError


logger = logging.getLogger("wisdom_oauth.auth")


class SecretStorage(ABC):
    """Abstract base class for string-keyed secret persistence.

    All methods are async to support both local and OS-backed stores.
    Backend failures are raised as ``StorageError`` and never retried.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Read the secret stored under ``key``.

        Parameters
        ----------
        key : str
            Secret key.

        Returns
        -------
        str or None
            The stored value, or None if absent.
        """

    @abstractmethod
    async def store(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value.

        Parameters
        ----------
        key : str
            Secret key.
        value : str
            Secret value.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete the secret stored under ``key``.

        Deleting a missing key is a no-op.

        Parameters
        ----------
        key : str
            Secret key.
        """


class MemorySecretStorage(SecretStorage):
    """In-memory secret storage for tests and single-process use."""

    def __init__(self) -> None:
        """Initialize the memory secret storage."""
        self._secrets: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        """Read a secret from memory."""
        async with self._lock:
            return self._secrets.get(key)

    async def store(self, key: str, value: str) -> None:
        """Store a secret in memory."""
        async with self._lock:
            self._secrets[key] = value

    async def delete(self, key: str) -> None:
        """Delete a secret from memory."""
        async with self._lock:
            self._secrets.pop(key, None)


class KeyringSecretStorage(SecretStorage):
    """OS keyring-backed secret storage for persistent credentials.

    Requires the ``keyring`` package: ``pip install wisdom-oauth[keyring]``

    Parameters
    ----------
    service_name : str
        Service name for keyring storage (default "wisdom-oauth").
    """

    def __init__(self, service_name: str = "wisdom-oauth") -> None:
        """Initialize the keyring secret storage."""
        try:
            import keyring as _keyring
            import keyring.errors as _keyring_errors
        except ImportError:
            msg = "Install keyring for persistent secret storage: pip install wisdom-oauth[keyring]"
            raise ImportError(msg) from None
        self._service_name = service_name
        self._keyring = _keyring
        self._errors = _keyring_errors

    async def _call(self, key: str, func: Any, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func, self._service_name, key, *args)
        except self._errors.KeyringError as exc:
            logger.warning("Keyring operation failed for %s: %s", key, exc)
            msg = f"Secret storage failed: {exc}"
            raise StorageError(msg, key=key) from exc

    async def get(self, key: str) -> str | None:
        """Read a secret from the OS keyring."""
        return await self._call(key, self._keyring.get_password)  # type: ignore[no-any-return]

    async def store(self, key: str, value: str) -> None:
        """Store a secret in the OS keyring."""
        await self._call(key, self._keyring.set_password, value)

    async def delete(self, key: str) -> None:
        """Delete a secret from the OS keyring."""
        try:
            await self._call(key, self._keyring.delete_password)
        except StorageError as exc:
            # keyring raises PasswordDeleteError for missing entries
            if not isinstance(exc.__cause__, self._errors.PasswordDeleteError):
                raise


_storage_instance: SecretStorage | None = None
_storage_lock = threading.Lock()


def get_secret_storage(backend: str = "memory", **kwargs: Any) -> SecretStorage:
    """Factory function for secret storage.

    Returns a singleton instance. Call ``reset_secret_storage()`` to clear
    the cached instance (e.g. in tests).

    Parameters
    ----------
    backend : str
        Storage backend: "memory" or "keyring".
    **kwargs : Any
        Additional keyword arguments passed to the storage constructor.

    Returns
    -------
    SecretStorage
        A configured secret storage instance.
    """
    global _storage_instance  # noqa: PLW0603

    with _storage_lock:
        if _storage_instance is not None:
            return _storage_instance

        if backend == "memory":
            _storage_instance = MemorySecretStorage()
        elif backend == "keyring":
            service_name = kwargs.get("service_name", "wisdom-oauth")
            _storage_instance = KeyringSecretStorage(service_name=service_name)
        else:
            msg = f"Unknown secret storage backend: {backend}"
            raise ValueError(msg)

        return _storage_instance


def reset_secret_storage() -> None:
    """Reset the singleton secret storage instance."""
    global _storage_instance  # noqa: PLW0603

    with _storage_lock:
        _storage_instance = None
