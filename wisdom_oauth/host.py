"""Host capabilities consumed by the auth flow.

The provider never talks to a UI directly. It launches the browser and
reports progress through the small protocols defined here; hosts plug
in their own implementations.
"""

from __future__ import annotations

import asyncio
import logging
import webbrowser

from collections.abc import Awaitable, Callable
from typing import Protocol, TypeVar

from .events import CancellationToken, CancellationTokenSource


logger = logging.getLogger("wisdom_oauth.auth")

T = TypeVar("T")

# Opens a URL in the user's browser; returns whether the launch succeeded
BrowserLauncher = Callable[[str], Awaitable[bool]]


class Notifier(Protocol):
    """User-facing notification and progress surface."""

    async def show_error_message(self, message: str) -> None:
        """Report an error to the user."""

    async def show_warning_message(self, message: str, *items: str) -> str | None:
        """Show a warning with optional actions; return the chosen action."""

    async def show_information_message(self, message: str) -> None:
        """Show an informational message."""

    async def with_progress(
        self,
        title: str,
        task: Callable[[CancellationToken], Awaitable[T]],
        cancellable: bool = False,
    ) -> T:
        """Run ``task`` while displaying progress; pass it a cancellation token."""


class LoggingNotifier:
    """Notifier that writes every message to the package logger.

    Used when the host provides no UI. Warnings never select an action.
    """

    async def show_error_message(self, message: str) -> None:
        """Log an error message."""
        logger.error(message)

    async def show_warning_message(self, message: str, *items: str) -> str | None:  # noqa: ARG002
        """Log a warning message."""
        logger.warning(message)
        return None

    async def show_information_message(self, message: str) -> None:
        """Log an informational message."""
        logger.info(message)

    async def with_progress(
        self,
        title: str,
        task: Callable[[CancellationToken], Awaitable[T]],
        cancellable: bool = False,  # noqa: ARG002
    ) -> T:
        """Log the progress title and run the task."""
        logger.info(title)
        source = CancellationTokenSource()
        try:
            return await task(source.token)
        finally:
            source.dispose()


async def open_system_browser(url: str) -> bool:
    """Open ``url`` in the system browser without blocking the event loop."""
    loop = asyncio.get_running_loop()
    opened = await loop.run_in_executor(None, webbrowser.open, url)
    if not opened:
        logger.warning("Could not open a browser; navigate to %s to sign in", url)
    return bool(opened)


def build_redirect_uri(uri_scheme: str, publisher: str, name: str) -> str:
    """Build the redirect URI identifying the host application.

    Parameters
    ----------
    uri_scheme : str
        The host's URI scheme (e.g. ``"vscode"``).
    publisher : str
        Publisher of the host extension.
    name : str
        Name of the host extension.

    Returns
    -------
    str
        ``<scheme>://<publisher>.<name>``
    """
    return f"{uri_scheme}://{publisher}.{name}"
