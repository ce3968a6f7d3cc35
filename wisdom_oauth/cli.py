"""Command-line interface for signing in to the Wisdom service."""

from __future__ import annotations

import argparse
import asyncio
import sys

from datetime import datetime, timezone
from typing import TYPE_CHECKING, TypeVar

from . import log
from .callback_server import RedirectCallbackServer
from .config import get_settings
from .events import CancellationTokenSource, UriEventHandler
from .exceptions import WisdomAuthException
from .provider import WisdomAuthenticationProvider
from .secret_store import get_secret_storage
from .token_store import TokenStore


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .config import WisdomSettings
    from .events import CancellationToken


T = TypeVar("T")


class ConsoleNotifier:
    """Notifier that prints user-facing messages to stderr."""

    async def show_error_message(self, message: str) -> None:
        """Print an error message."""
        print(f"Error: {message}", file=sys.stderr)

    async def show_warning_message(self, message: str, *items: str) -> str | None:  # noqa: ARG002
        """Print a warning; the console never selects an action."""
        print(f"Warning: {message}", file=sys.stderr)
        return None

    async def show_information_message(self, message: str) -> None:
        """Print an informational message."""
        print(message, file=sys.stderr)

    async def with_progress(
        self,
        title: str,
        task: Callable[[CancellationToken], Awaitable[T]],
        cancellable: bool = False,
    ) -> T:
        """Print the progress title and run the task."""
        suffix = " (Ctrl+C to cancel)" if cancellable else ""
        print(f"{title}...{suffix}", file=sys.stderr)
        source = CancellationTokenSource()
        try:
            return await task(source.token)
        finally:
            source.dispose()


def main(argv: list[str] | None = None) -> int:
    """Run the main CLI entry point.

    Parameters
    ----------
    argv : list of str, optional
        Arguments to parse (defaults to ``sys.argv[1:]``).

    Returns
    -------
    int
        Exit code.
    """
    parser = argparse.ArgumentParser(
        prog="wisdom-oauth",
        description="Sign in to the Ansible Wisdom service and manage the stored session",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    subparsers.add_parser("login", help="Sign in through the browser")
    subparsers.add_parser("logout", help="Remove the stored session")
    subparsers.add_parser("token", help="Print a valid access token, refreshing it if needed")
    subparsers.add_parser("status", help="Show the signed-in account and token expiry")
    subparsers.add_parser("config", help="Show the current configuration")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    settings = get_settings()
    log.configure(settings.log.level, settings.log.format)
    if args.debug:
        log.enable_debug()

    if args.command == "config":
        print(settings.show())
        return 0

    handlers = {
        "login": handle_login,
        "logout": handle_logout,
        "token": handle_token,
        "status": handle_status,
    }
    try:
        return asyncio.run(handlers[args.command](settings))
    except WisdomAuthException as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except ImportError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nCancelled.", file=sys.stderr)
        return 1


def build_provider(settings: WisdomSettings, redirect_uri: str = "") -> WisdomAuthenticationProvider:
    """Build a provider backed by the configured secret storage.

    Parameters
    ----------
    settings : WisdomSettings
        Loaded settings.
    redirect_uri : str
        Redirect URI; only needed for ``login``.

    Returns
    -------
    WisdomAuthenticationProvider
        The configured provider.
    """
    storage = get_secret_storage(
        settings.storage.backend,
        service_name=settings.storage.service_name,
    )
    return WisdomAuthenticationProvider(
        redirect_uri,
        settings=settings.service,
        token_store=TokenStore(storage, settings.storage.auth_id),
        notifier=ConsoleNotifier(),
        auth_id=settings.storage.auth_id,
    )


async def handle_login(settings: WisdomSettings) -> int:
    """Handle the login command.

    Parameters
    ----------
    settings : WisdomSettings
        Loaded settings.

    Returns
    -------
    int
        Exit code.
    """
    inbound = UriEventHandler()
    server = RedirectCallbackServer(inbound, settings.callback.host, settings.callback.port)
    redirect_uri = server.start()
    try:
        async with build_provider(settings, redirect_uri) as provider:
            forward = inbound.subscribe(provider.uri_handler.handle_uri)
            try:
                session = await provider.create_session()
            finally:
                forward.dispose()
    finally:
        server.stop()

    print(f"Logged in as {session.account.label}")
    return 0


async def handle_logout(settings: WisdomSettings) -> int:
    """Handle the logout command.

    Parameters
    ----------
    settings : WisdomSettings
        Loaded settings.

    Returns
    -------
    int
        Exit code.
    """
    async with build_provider(settings) as provider:
        session = await provider.get_session()
        if session is None:
            print("Not logged in.")
            return 0
        await provider.remove_session(session.id)

    print(f"Logged out {session.account.label}")
    return 0


async def handle_token(settings: WisdomSettings) -> int:
    """Handle the token command.

    Parameters
    ----------
    settings : WisdomSettings
        Loaded settings.

    Returns
    -------
    int
        Exit code; 1 when no valid token could be obtained.
    """
    async with build_provider(settings) as provider:
        token = await provider.grant_access_token()

    if token is None:
        return 1
    print(token)
    return 0


async def handle_status(settings: WisdomSettings) -> int:
    """Handle the status command.

    Parameters
    ----------
    settings : WisdomSettings
        Loaded settings.

    Returns
    -------
    int
        Exit code.
    """
    async with build_provider(settings) as provider:
        session = await provider.get_session()
        account = await provider.token_store.get_account()

    if session is None:
        print("Not logged in.")
        return 0

    print(f"Logged in as {session.account.label}")
    if account is not None:
        expires = datetime.fromtimestamp(account.expires_at_timestamp_in_seconds, tz=timezone.utc)
        print(f"Token expires at {expires.isoformat()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
