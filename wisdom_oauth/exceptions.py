"""wisdom-oauth exception hierarchy.

All package exceptions inherit from WisdomAuthException, enabling
catch-all handling while supporting specific error types.
"""

from __future__ import annotations

from typing import Any


class WisdomAuthException(Exception):
    """Base exception for all wisdom-oauth errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize the exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (key, provider, flow_id, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items() if v is not None)
            if ctx:
                return f"{self.message} ({ctx})"
        return self.message


class StorageError(WisdomAuthException):
    """Secret storage operation failed.

    Raised when the secret backend cannot read, write or delete a
    record, or when a persisted record cannot be decoded.
    """

    def __init__(self, message: str, key: str | None = None, **context: Any) -> None:
        """Initialize storage error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        key : str, optional
            The secret key involved.
        **context : Any
            Additional context.
        """
        super().__init__(message, key=key, **context)
        self.key = key


class AuthenticationError(WisdomAuthException):
    """Base exception for all authentication failures.

    Raised when an authentication operation fails, including
    the login round-trip, token exchange, or token refresh.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        provider : str, optional
            The authentication provider id (e.g., "auth-wisdom").
        flow_id : str, optional
            The unique identifier of the auth flow that failed.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, **context)
        self.provider = provider
        self.flow_id = flow_id


class ValidationError(AuthenticationError):
    """Protocol or configuration validation failed.

    Raised when the redirect carries no authorization code, the
    provider reports an error, or required settings are missing.
    """


class AuthFlowCancelled(AuthenticationError):
    """Authentication flow was cancelled.

    Raised when the user aborts the login while it waits for
    the browser redirect.
    """


class AuthFlowTimeout(AuthenticationError):
    """Authentication flow timed out.

    Raised when no redirect arrives within the login timeout.
    """

    def __init__(
        self,
        message: str,
        timeout: float,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize timeout error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        timeout : float
            The timeout value in seconds.
        provider : str, optional
            The authentication provider id.
        flow_id : str, optional
            The unique identifier of the auth flow.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, timeout=timeout, **context)
        self.timeout = timeout


class TransportError(AuthenticationError):
    """HTTP request to the Wisdom service failed.

    The message is normalized; the underlying transport error is
    logged and chained as ``__cause__`` rather than surfaced.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        **context: Any,
    ) -> None:
        """Initialize transport error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        status_code : int, optional
            HTTP status code when the server answered.
        **context : Any
            Additional context.
        """
        super().__init__(message, status_code=status_code, **context)
        self.status_code = status_code


class InconsistencyError(AuthenticationError):
    """Persisted state is inconsistent.

    Raised when a session exists but its backing account record
    is missing.
    """


class TokenRefreshError(AuthenticationError):
    """Token refresh failed.

    Raised when exchanging the refresh token for a new access
    token fails.
    """
