"""Wisdom OAuth2 authentication provider.

Provides WisdomAuthenticationProvider, which owns the session/token
lifecycle: the PKCE authorization round-trip, persistence of the
account and session records, expiry tracking, and silent refresh.

Account and session are created together at login, mutated together
at refresh, and removed together at logout. The account record is
always written before the sessions record.
"""

# pylint: disable=logging-too-many-args,too-many-instance-attributes

from __future__ import annotations

import asyncio
import logging
import secrets
import time
import uuid

from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlencode, urlparse

from .client import WisdomServiceClient
from .config import get_settings
from .events import CancellationToken, EventEmitter, UriEventHandler
from .exceptions import (
    AuthenticationError,
    AuthFlowCancelled,
    AuthFlowTimeout,
    InconsistencyError,
    StorageError,
    TokenRefreshError,
    ValidationError,
)
from .host import LoggingNotifier, open_system_browser
from .pkce import PKCEChallenge
from .redirect import EventWaiter, wait_for_event
from .secret_store import MemorySecretStorage
from .token_store import DEFAULT_AUTH_ID, TokenStore
from .types import (
    AuthenticationSession,
    AuthFlowState,
    OAuthAccount,
    SessionAccount,
    SessionChangeEvent,
)


if TYPE_CHECKING:
    from .config import WisdomServiceSettings
    from .host import BrowserLauncher, Notifier
    from .secret_store import SecretStorage


logger = logging.getLogger("wisdom_oauth.auth")

AUTHORIZE_PATH = "/o/authorize/"
LOGIN_ACTION = "Login"


class WisdomAuthenticationProvider:
    """Single-account OAuth2 Authorization Code + PKCE provider.

    The PKCE pair is generated once, at construction, and used for every
    login performed by this instance.

    Parameters
    ----------
    redirect_uri : str
        Redirect URI identifying the host (see ``host.build_redirect_uri``).
    settings : WisdomServiceSettings, optional
        Service settings; defaults to ``get_settings().service``.
    token_store : TokenStore, optional
        Store for the session and account records.
    storage : SecretStorage, optional
        Secret storage used to build a ``TokenStore`` when none is given
        (defaults to ``MemorySecretStorage``).
    open_browser : BrowserLauncher, optional
        Coroutine function opening a URL (defaults to the system browser).
    notifier : Notifier, optional
        User-facing message and progress surface (defaults to logging).
    service_client : WisdomServiceClient, optional
        Endpoint client; built from ``settings`` when omitted.
    on_login_requested : callable, optional
        Invoked when the user picks "Login" from the not-logged-in warning.
    auth_id : str
        Provider id used to namespace persisted records.
    clock : callable
        Returns the current epoch time in seconds.
    """

    def __init__(
        self,
        redirect_uri: str,
        settings: WisdomServiceSettings | None = None,
        token_store: TokenStore | None = None,
        storage: SecretStorage | None = None,
        open_browser: BrowserLauncher | None = None,
        notifier: Notifier | None = None,
        service_client: WisdomServiceClient | None = None,
        on_login_requested: Callable[[], None] | None = None,
        auth_id: str = DEFAULT_AUTH_ID,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the provider."""
        self.redirect_uri = redirect_uri
        self.settings = settings if settings is not None else get_settings().service
        self.auth_id = auth_id
        self.pkce = PKCEChallenge.generate()

        self._token_store = token_store or TokenStore(storage or MemorySecretStorage(), auth_id)
        self._open_browser = open_browser or open_system_browser
        self._notifier: Notifier = notifier or LoggingNotifier()
        self._owns_client = service_client is None
        self._client = service_client or WisdomServiceClient(
            self.settings.base_path,
            timeout=self.settings.request_timeout_seconds,
        )
        self._on_login_requested = on_login_requested
        self._clock = clock

        self._uri_handler = UriEventHandler()
        self._session_change_emitter: EventEmitter[SessionChangeEvent] = EventEmitter()
        self._sessions_lock = asyncio.Lock()
        self._account_lock = asyncio.Lock()
        self._flow_state = AuthFlowState.IDLE
        self._flow_id: str | None = None

    async def __aenter__(self) -> WisdomAuthenticationProvider:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def flow_state(self) -> AuthFlowState:
        """Current state of the authentication lifecycle."""
        return self._flow_state

    @property
    def uri_handler(self) -> UriEventHandler:
        """Event source the host feeds inbound redirect URIs into."""
        return self._uri_handler

    @property
    def on_did_change_sessions(self) -> EventEmitter[SessionChangeEvent]:
        """Session change events for external observers."""
        return self._session_change_emitter

    @property
    def token_store(self) -> TokenStore:
        """The session and account record store."""
        return self._token_store

    def build_authorize_url(self) -> str:
        """Build the authorize URL for this provider's PKCE challenge.

        Returns
        -------
        str
            ``<base_path>/o/authorize/?response_type=code&...``
        """
        params = {
            "response_type": "code",
            "code_challenge": self.pkce.challenge,
            "code_challenge_method": self.pkce.method,
            "client_id": self.settings.client_id,
            "redirect_uri": self.redirect_uri,
        }
        return f"{self.settings.base_path}{AUTHORIZE_PATH}?{urlencode(params)}"

    async def get_sessions(self) -> list[AuthenticationSession]:
        """Return the persisted sessions (zero or one)."""
        return await self._token_store.get_sessions()

    async def get_session(self) -> AuthenticationSession | None:
        """Return the current session, or None when logged out."""
        sessions = await self._token_store.get_sessions()
        return sessions[0] if sessions else None

    async def create_session(
        self,
        scopes: Iterable[str] = (),
        cancellation: CancellationToken | None = None,
    ) -> AuthenticationSession:
        """Log in through the browser and install a new session.

        Parameters
        ----------
        scopes : iterable of str
            Scopes recorded on the session.
        cancellation : CancellationToken, optional
            Cancels the wait for the browser redirect.

        Returns
        -------
        AuthenticationSession
            The newly created session.

        Raises
        ------
        ValidationError
            If the redirect carries no code or the client is not configured.
        AuthFlowTimeout
            If no redirect arrives within the login timeout.
        AuthFlowCancelled
            If the wait is cancelled.
        TransportError
            If the token or profile request fails.
        """
        previous_state = self._flow_state
        self._flow_id = secrets.token_urlsafe(16)
        completed = False

        try:
            account = await self._login(cancellation)
            user_info = await self._client.fetch_profile(account.access_token)

            identifier = str(uuid.uuid4())
            session = AuthenticationSession(
                id=identifier,
                access_token=account.access_token,
                account=SessionAccount(id=identifier, label=user_info.username),
                scopes=tuple(scopes),
            )

            async with self._account_lock:
                previous_record = await self._token_store.get_account_record()
                await self._token_store.store_account(account)
            try:
                async with self._sessions_lock:
                    replaced = await self._read_sessions_for_replace()
                    await self._token_store.store_sessions([session])
            except BaseException:
                # The account must not outlive a failed sessions write.
                async with self._account_lock:
                    await self._token_store.restore_account_record(previous_record)
                raise

            self._flow_state = AuthFlowState.AUTHENTICATED
            completed = True
        except Exception as exc:
            logger.warning("Auth flow %s failed: %s", self._flow_id, exc)
            await self._notifier.show_error_message(f"Wisdom sign in failed: {exc}")
            raise
        finally:
            if not completed:
                self._flow_state = previous_state

        self._session_change_emitter.fire(
            SessionChangeEvent(added=(session,), removed=tuple(replaced))
        )
        logger.info("Session created...")
        return session

    async def remove_session(self, session_id: str) -> None:
        """Log out by removing the session with ``session_id``.

        Unknown ids are a no-op: nothing is written and no event fires.
        """
        async with self._sessions_lock:
            sessions = await self._token_store.get_sessions()
            session = next((s for s in sessions if s.id == session_id), None)
            if session is None:
                logger.debug("No session %s to remove", session_id)
                return
            await self._token_store.store_sessions([s for s in sessions if s.id != session_id])

        # The session is gone once the sessions write lands.
        self._flow_state = AuthFlowState.LOGGED_OUT
        self._session_change_emitter.fire(SessionChangeEvent(removed=(session,)))

        async with self._account_lock:
            await self._token_store.delete_account()
        logger.info("Session removed")

    async def grant_access_token(self) -> str | None:
        """Return a valid access token, refreshing it when near expiry.

        Returns
        -------
        str or None
            The access token, or None when the user is not logged in or
            the refresh failed (the caller should prompt a new login).

        Raises
        ------
        InconsistencyError
            If a session exists but its account record is missing.
        """
        logger.info("Granting access token...")

        session = await self.get_session()
        if session is None:
            logger.info("Session not found. Returning...")
            selection = await self._notifier.show_warning_message(
                "You must be logged in to use this feature.", LOGIN_ACTION
            )
            if selection == LOGIN_ACTION and self._on_login_requested is not None:
                self._on_login_requested()
            return None

        account = await self._token_store.get_account()
        if account is None:
            msg = "Unable to fetch account"
            raise InconsistencyError(msg, provider=self.auth_id, session_id=session.id)

        if account.is_near_expiry(self._clock(), self.settings.grace_time_seconds):
            logger.info("Wisdom token expired. Getting new token...")
            return await self._refresh(session, account)

        if session.access_token != account.access_token:
            # Account was persisted ahead of the session; re-derive it
            logger.info("Session token is stale; resyncing from account")
            await self._sync_session_token(session.id, account.access_token)

        return account.access_token

    async def aclose(self) -> None:
        """Release the HTTP client and drop all event listeners."""
        if self._owns_client:
            await self._client.close()
        self._uri_handler.dispose()
        self._session_change_emitter.dispose()

    async def _login(self, cancellation: CancellationToken | None) -> OAuthAccount:
        """Run the authorize round-trip and exchange the code for an account."""
        if not self.settings.client_id:
            msg = "Wisdom OAuth client ID is not configured"
            raise ValidationError(msg, provider=self.auth_id, flow_id=self._flow_id)

        logger.info("Logging in...")
        authorize_url = self.build_authorize_url()
        logger.debug("Authorize URL: %s", authorize_url)

        self._flow_state = AuthFlowState.AWAITING_REDIRECT
        # Subscribe before launching so an immediate redirect is not missed
        redirect: EventWaiter[str, str] = wait_for_event(self._uri_handler, self._handle_uri_for_code)
        try:
            await self._open_browser(authorize_url)
            code = await self._notifier.with_progress(
                "Waiting for authentication redirect from Ansible Wisdom service",
                lambda progress_token: self._race_redirect(redirect, cancellation, progress_token),
                cancellable=True,
            )
        finally:
            redirect.cancel()

        self._flow_state = AuthFlowState.EXCHANGING_CODE
        response = await self._client.exchange_code(
            code,
            self.pkce.verifier,
            self.redirect_uri,
            self.settings.client_id,
        )
        return OAuthAccount.from_token_response(response, now=self._clock())

    async def _race_redirect(
        self,
        redirect: EventWaiter[str, str],
        *tokens: CancellationToken | None,
    ) -> str:
        """Wait for the redirect, the login timeout, or a cancellation."""
        active = [token for token in tokens if token is not None]
        if any(token.is_cancellation_requested for token in active):
            raise AuthFlowCancelled("User Cancelled", provider=self.auth_id, flow_id=self._flow_id)

        def _reject_cancelled(_: Any, __: Any, reject: Callable[[BaseException], None]) -> None:
            reject(AuthFlowCancelled("User Cancelled", provider=self.auth_id, flow_id=self._flow_id))

        cancel_waiters = [
            wait_for_event(token.on_cancellation_requested, _reject_cancelled) for token in active
        ]
        timeout = self.settings.login_timeout_seconds
        try:
            done, _ = await asyncio.wait(
                {redirect.future, *(waiter.future for waiter in cancel_waiters)},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if not done:
                msg = f"Cancelling the Wisdom OAuth login after {timeout:g}s. Try again."
                raise AuthFlowTimeout(
                    msg, timeout=timeout, provider=self.auth_id, flow_id=self._flow_id
                )
            if redirect.future in done:
                return redirect.future.result()
            return next(iter(done)).result()  # type: ignore[no-any-return]
        finally:
            for waiter in cancel_waiters:
                waiter.cancel()

    def _handle_uri_for_code(
        self,
        uri: str,
        resolve: Callable[[str], None],
        reject: Callable[[BaseException], None],
    ) -> None:
        """Resolve with the ``code`` query parameter of a redirect URI."""
        query = parse_qs(urlparse(uri).query)

        error = query.get("error", [None])[0]
        if error:
            description = query.get("error_description", [None])[0] or error
            msg = f"Wisdom OAuth Server returned an error: {description}"
            reject(ValidationError(msg, provider=self.auth_id, flow_id=self._flow_id))
            return

        code = query.get("code", [None])[0]
        if not code:
            msg = "No code received from the Wisdom OAuth Server"
            reject(ValidationError(msg, provider=self.auth_id, flow_id=self._flow_id))
            return

        resolve(code)

    async def _read_sessions_for_replace(self) -> list[AuthenticationSession]:
        """Read the sessions about to be replaced; a corrupt record is dropped."""
        try:
            return await self._token_store.get_sessions()
        except StorageError as exc:
            logger.warning("Discarding unreadable sessions record: %s", exc)
            return []

    async def _refresh(self, session: AuthenticationSession, account: OAuthAccount) -> str | None:
        """Refresh the account and rotate the session token."""
        previous_state = self._flow_state
        self._flow_state = AuthFlowState.REFRESHING_TOKEN
        refreshed = False
        try:
            try:
                new_account = await self._notifier.with_progress(
                    "Refreshing token",
                    lambda _token: self._request_token_after_expiry(account),
                )
            except TokenRefreshError as exc:
                logger.warning("Failed to refresh token: %s", exc)
                await self._notifier.show_error_message(
                    "Failed to refresh token. Please log out and log in again"
                )
                return None

            async with self._account_lock:
                await self._token_store.store_account(new_account)
            await self._sync_session_token(session.id, new_account.access_token)
            refreshed = True
        finally:
            self._flow_state = AuthFlowState.AUTHENTICATED if refreshed else previous_state

        await self._notifier.show_information_message("Wisdom token refreshed!")
        return new_account.access_token

    async def _request_token_after_expiry(self, account: OAuthAccount) -> OAuthAccount:
        """Exchange the refresh token for a new account."""
        try:
            response = await self._client.refresh(account.refresh_token, self.settings.client_id)
        except AuthenticationError as exc:
            msg = f"Token refresh failed: {exc.message}"
            raise TokenRefreshError(msg, provider=self.auth_id) from exc
        return OAuthAccount.from_token_response(response, previous=account, now=self._clock())

    async def _sync_session_token(
        self, session_id: str, access_token: str
    ) -> AuthenticationSession | None:
        """Write ``access_token`` into the matching session and announce the change."""
        async with self._sessions_lock:
            sessions = await self._token_store.get_sessions()
            index = next((i for i, s in enumerate(sessions) if s.id == session_id), None)
            if index is None:
                logger.warning("Session %s no longer exists; not updating it", session_id)
                return None
            fresh = sessions[index].with_access_token(access_token)
            sessions[index] = fresh
            await self._token_store.store_sessions(sessions)

        self._session_change_emitter.fire(SessionChangeEvent(changed=(fresh,)))
        return fresh
