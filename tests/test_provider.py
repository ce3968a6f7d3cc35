"""Tests for the Wisdom authentication provider lifecycle."""

# pylint: disable=redefined-outer-name,protected-access

from __future__ import annotations

import asyncio

from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs, urlparse

import pytest

from tests.fakes import (
    CLIENT_ID,
    NOW,
    REDIRECT_URI,
    FailingSecretStorage,
    RecordingNotifier,
    seed_login,
)
from wisdom_oauth.config import WisdomServiceSettings
from wisdom_oauth.events import CancellationTokenSource
from wisdom_oauth.exceptions import (
    AuthFlowCancelled,
    AuthFlowTimeout,
    InconsistencyError,
    StorageError,
    TransportError,
    ValidationError,
)
from wisdom_oauth.provider import WisdomAuthenticationProvider
from wisdom_oauth.secret_store import MemorySecretStorage
from wisdom_oauth.token_store import TokenStore
from wisdom_oauth.types import AuthFlowState, SessionChangeEvent, TokenResponse, UserInfo


if TYPE_CHECKING:
    from collections.abc import Callable

    from tests.fakes import FakeBrowser, FakeClock


def _record_events(provider: WisdomAuthenticationProvider) -> list[SessionChangeEvent]:
    events: list[SessionChangeEvent] = []
    provider.on_did_change_sessions.subscribe(events.append)
    return events


def _slow_settings(timeout: float = 5.0) -> WisdomServiceSettings:
    return WisdomServiceSettings(
        base_path="https://wisdom.test",
        client_id=CLIENT_ID,
        login_timeout_seconds=timeout,
    )


# ── Authorize URL ───────────────────────────────────────────────────


class TestAuthorizeUrl:
    """Tests for the authorize URL built for the browser."""

    def test_url_carries_pkce_and_client(self, provider: WisdomAuthenticationProvider) -> None:
        """Authorize URL carries the S256 challenge, client id and redirect URI."""
        url = urlparse(provider.build_authorize_url())
        params = parse_qs(url.query)

        assert f"{url.scheme}://{url.netloc}{url.path}" == "https://wisdom.test/o/authorize/"
        assert params["response_type"] == ["code"]
        assert params["code_challenge"] == [provider.pkce.challenge]
        assert params["code_challenge_method"] == ["S256"]
        assert params["client_id"] == [CLIENT_ID]
        assert params["redirect_uri"] == [REDIRECT_URI]

    def test_pkce_pair_fixed_per_instance(self, provider: WisdomAuthenticationProvider) -> None:
        """The same challenge is used for every authorize URL of an instance."""
        assert provider.build_authorize_url() == provider.build_authorize_url()


# ── Login ───────────────────────────────────────────────────────────


class TestCreateSession:
    """Tests for the browser login flow."""

    @pytest.mark.asyncio
    async def test_happy_path(
        self,
        provider: WisdomAuthenticationProvider,
        token_store: TokenStore,
        service_client: AsyncMock,
        browser: FakeBrowser,
    ) -> None:
        """A redirect with code=ABC installs exactly one session for alice."""
        events = _record_events(provider)

        session = await provider.create_session(scopes=["wisdom"])

        assert session.access_token == "T1"
        assert session.account.label == "alice"
        assert session.account.id == session.id
        assert session.scopes == ("wisdom",)

        service_client.exchange_code.assert_awaited_once_with(
            "ABC", provider.pkce.verifier, REDIRECT_URI, CLIENT_ID
        )
        service_client.fetch_profile.assert_awaited_once_with("T1")

        assert await token_store.get_sessions() == [session]
        account = await token_store.get_account()
        assert account is not None
        assert account.access_token == "T1"
        assert account.refresh_token == "R1"
        assert account.expires_at_timestamp_in_seconds == int(NOW) + 3600

        assert events == [SessionChangeEvent(added=(session,))]
        assert provider.flow_state == AuthFlowState.AUTHENTICATED
        assert len(browser.urls) == 1

    @pytest.mark.asyncio
    async def test_waiter_released_after_login(
        self, provider: WisdomAuthenticationProvider
    ) -> None:
        """The redirect subscription is gone once the login completes."""
        await provider.create_session()
        assert provider.uri_handler.listener_count == 0

        # Late redirects are ignored
        provider.uri_handler.handle_uri(f"{REDIRECT_URI}?code=LATE")
        assert (await provider.get_session()) is not None

    @pytest.mark.asyncio
    async def test_progress_title(
        self, provider: WisdomAuthenticationProvider, notifier: RecordingNotifier
    ) -> None:
        """The redirect wait runs inside a progress surface."""
        await provider.create_session()
        assert notifier.progress_titles == [
            "Waiting for authentication redirect from Ansible Wisdom service"
        ]

    @pytest.mark.asyncio
    async def test_missing_code_rejects(
        self,
        provider: WisdomAuthenticationProvider,
        token_store: TokenStore,
        service_client: AsyncMock,
        browser: FakeBrowser,
        notifier: RecordingNotifier,
    ) -> None:
        """A redirect without a code fails the login and persists nothing."""
        browser.redirect = f"{REDIRECT_URI}?state=xyz"
        events = _record_events(provider)

        with pytest.raises(ValidationError, match="No code received from the Wisdom OAuth Server"):
            await provider.create_session()

        service_client.exchange_code.assert_not_awaited()
        assert await token_store.get_sessions() == []
        assert await token_store.get_account() is None
        assert events == []
        assert provider.flow_state == AuthFlowState.IDLE
        message = notifier.show_error_message.await_args.args[0]
        assert message.startswith("Wisdom sign in failed: No code received")

    @pytest.mark.asyncio
    async def test_provider_error_rejects(
        self, provider: WisdomAuthenticationProvider, browser: FakeBrowser
    ) -> None:
        """An error parameter on the redirect fails the login."""
        browser.redirect = f"{REDIRECT_URI}?error=access_denied"

        with pytest.raises(ValidationError, match="access_denied"):
            await provider.create_session()

    @pytest.mark.asyncio
    async def test_timeout(
        self,
        provider: WisdomAuthenticationProvider,
        token_store: TokenStore,
        browser: FakeBrowser,
    ) -> None:
        """No redirect within the login timeout fails the login."""
        browser.redirect = None

        with pytest.raises(AuthFlowTimeout) as exc_info:
            await provider.create_session()

        assert exc_info.value.message == "Cancelling the Wisdom OAuth login after 0.2s. Try again."
        assert exc_info.value.timeout == 0.2
        assert provider.uri_handler.listener_count == 0
        assert await token_store.get_sessions() == []

    @pytest.mark.asyncio
    async def test_cancellation_during_wait(
        self,
        provider_factory: Callable[..., WisdomAuthenticationProvider],
        browser: FakeBrowser,
    ) -> None:
        """Cancelling the caller's token ends the wait with User Cancelled."""
        provider = provider_factory(settings=_slow_settings())
        browser.redirect = None
        source = CancellationTokenSource()
        asyncio.get_running_loop().call_later(0.02, source.cancel)

        with pytest.raises(AuthFlowCancelled, match="User Cancelled"):
            await asyncio.wait_for(provider.create_session(cancellation=source.token), 2)

        assert source.token.on_cancellation_requested.listener_count == 0
        assert provider.uri_handler.listener_count == 0

    @pytest.mark.asyncio
    async def test_already_cancelled_token(
        self, provider: WisdomAuthenticationProvider, service_client: AsyncMock
    ) -> None:
        """A token cancelled before the wait fails immediately."""
        source = CancellationTokenSource()
        source.cancel()

        with pytest.raises(AuthFlowCancelled):
            await provider.create_session(cancellation=source.token)

        service_client.exchange_code.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_progress_cancellation(
        self,
        provider_factory: Callable[..., WisdomAuthenticationProvider],
        browser: FakeBrowser,
        notifier: RecordingNotifier,
    ) -> None:
        """Cancelling the progress surface also ends the wait."""
        provider = provider_factory(settings=_slow_settings())
        browser.redirect = None

        def _cancel_progress() -> None:
            assert notifier.progress_source is not None
            notifier.progress_source.cancel()

        asyncio.get_running_loop().call_later(0.02, _cancel_progress)

        with pytest.raises(AuthFlowCancelled):
            await asyncio.wait_for(provider.create_session(), 2)

    @pytest.mark.asyncio
    async def test_profile_failure_persists_nothing(
        self,
        provider: WisdomAuthenticationProvider,
        token_store: TokenStore,
        service_client: AsyncMock,
    ) -> None:
        """A failed profile fetch leaves no account and no session behind."""
        service_client.fetch_profile.side_effect = TransportError(
            "Request failed with status code 401", status_code=401
        )

        with pytest.raises(TransportError, match="401"):
            await provider.create_session()

        assert await token_store.get_account() is None
        assert await token_store.get_sessions() == []

    @pytest.mark.asyncio
    async def test_exchange_failure_persists_nothing(
        self,
        provider: WisdomAuthenticationProvider,
        token_store: TokenStore,
        service_client: AsyncMock,
    ) -> None:
        """A failed code exchange leaves no account and no session behind."""
        service_client.exchange_code.side_effect = TransportError("An unexpected error occurred")

        with pytest.raises(TransportError):
            await provider.create_session()

        service_client.fetch_profile.assert_not_awaited()
        assert await token_store.get_account() is None
        assert provider.flow_state == AuthFlowState.IDLE

    @pytest.mark.asyncio
    async def test_missing_client_id(
        self,
        provider_factory: Callable[..., WisdomAuthenticationProvider],
        browser: FakeBrowser,
    ) -> None:
        """Login refuses to start without a configured client id."""
        provider = provider_factory(
            settings=WisdomServiceSettings(base_path="https://wisdom.test", client_id="")
        )

        with pytest.raises(ValidationError, match="client ID"):
            await provider.create_session()

        assert browser.urls == []

    @pytest.mark.asyncio
    async def test_second_login_replaces_session(
        self, provider: WisdomAuthenticationProvider, token_store: TokenStore
    ) -> None:
        """Logging in again keeps a single session and reports the old one removed."""
        first = await provider.create_session()
        events = _record_events(provider)

        second = await provider.create_session()

        assert await token_store.get_sessions() == [second]
        assert second.id != first.id
        assert events == [SessionChangeEvent(added=(second,), removed=(first,))]

    @pytest.mark.asyncio
    async def test_corrupt_sessions_record_is_replaced(
        self, provider: WisdomAuthenticationProvider, token_store: TokenStore
    ) -> None:
        """An unreadable sessions record does not block a new login."""
        await token_store.storage.store(token_store.sessions_key, "not json")

        session = await provider.create_session()

        assert await token_store.get_sessions() == [session]

    @pytest.mark.asyncio
    async def test_sessions_write_failure_restores_previous_account(
        self,
        provider_factory: Callable[..., WisdomAuthenticationProvider],
        service_client: AsyncMock,
    ) -> None:
        """A failed sessions write puts the previous user's account back."""
        storage = FailingSecretStorage()
        store = TokenStore(storage)
        seeded = await seed_login(store)
        storage.fail_store.add(store.sessions_key)
        service_client.exchange_code.return_value = TokenResponse("BOB_T", "BOB_R", 3600)
        service_client.fetch_profile.return_value = UserInfo(username="bob")
        provider = provider_factory(token_store=store)
        events = _record_events(provider)

        with pytest.raises(StorageError):
            await provider.create_session()

        account = await store.get_account()
        assert account is not None
        assert account.access_token == "T1"
        assert await store.get_sessions() == [seeded]
        assert events == []

        storage.fail_store.clear()
        assert await provider.grant_access_token() == "T1"
        assert await store.get_sessions() == [seeded]

    @pytest.mark.asyncio
    async def test_sessions_write_failure_leaves_no_account(
        self,
        provider_factory: Callable[..., WisdomAuthenticationProvider],
    ) -> None:
        """A failed first login leaves no account record behind."""
        storage = FailingSecretStorage()
        store = TokenStore(storage)
        storage.fail_store.add(store.sessions_key)
        provider = provider_factory(token_store=store)

        with pytest.raises(StorageError):
            await provider.create_session()

        assert await storage.get(store.account_key) is None
        assert provider.flow_state == AuthFlowState.IDLE


# ── Access token ────────────────────────────────────────────────────


class TestGrantAccessToken:
    """Tests for access token retrieval and refresh."""

    @pytest.mark.asyncio
    async def test_not_logged_in(
        self, provider: WisdomAuthenticationProvider, notifier: RecordingNotifier
    ) -> None:
        """Without a session the user is prompted and nothing is returned."""
        assert await provider.grant_access_token() is None
        notifier.show_warning_message.assert_awaited_once_with(
            "You must be logged in to use this feature.", "Login"
        )

    @pytest.mark.asyncio
    async def test_login_action_requests_login(
        self, provider_factory: Callable[..., WisdomAuthenticationProvider]
    ) -> None:
        """Choosing Login from the prompt invokes the login hook."""
        on_login = MagicMock()
        provider = provider_factory(
            notifier=RecordingNotifier(warning_selection="Login"),
            on_login_requested=on_login,
        )

        assert await provider.grant_access_token() is None
        on_login.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_valid_token_no_network(
        self,
        provider: WisdomAuthenticationProvider,
        token_store: TokenStore,
        service_client: AsyncMock,
    ) -> None:
        """A token far from expiry is returned without any request."""
        await seed_login(token_store, expires_at=NOW + 3600)

        assert await provider.grant_access_token() == "T1"

        service_client.refresh.assert_not_awaited()
        service_client.exchange_code.assert_not_awaited()
        service_client.fetch_profile.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_near_expiry_refreshes(
        self,
        provider: WisdomAuthenticationProvider,
        token_store: TokenStore,
        service_client: AsyncMock,
        notifier: RecordingNotifier,
    ) -> None:
        """A token within the grace time is refreshed and rotated everywhere."""
        await seed_login(token_store, expires_at=NOW + 5)
        events = _record_events(provider)

        assert await provider.grant_access_token() == "T2"

        service_client.refresh.assert_awaited_once_with("R1", CLIENT_ID)
        account = await token_store.get_account()
        assert account is not None
        assert account.access_token == "T2"
        assert account.refresh_token == "R2"
        assert account.expires_at_timestamp_in_seconds == int(NOW) + 3600

        (session,) = await token_store.get_sessions()
        assert session.access_token == "T2"
        assert events == [SessionChangeEvent(changed=(session,))]
        assert notifier.progress_titles == ["Refreshing token"]
        notifier.show_information_message.assert_awaited_once_with("Wisdom token refreshed!")
        assert provider.flow_state == AuthFlowState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_grace_time_boundary(
        self,
        provider: WisdomAuthenticationProvider,
        token_store: TokenStore,
        service_client: AsyncMock,
        clock: FakeClock,
    ) -> None:
        """Refresh starts exactly at expiry minus the grace time."""
        await seed_login(token_store, expires_at=NOW + 11)
        assert await provider.grant_access_token() == "T1"
        service_client.refresh.assert_not_awaited()

        clock.now = NOW + 1
        assert await provider.grant_access_token() == "T2"
        service_client.refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_refresh_keeps_refresh_token_when_not_rotated(
        self,
        provider: WisdomAuthenticationProvider,
        token_store: TokenStore,
        service_client: AsyncMock,
    ) -> None:
        """The previous refresh token survives a response that omits one."""
        service_client.refresh.return_value = TokenResponse("T2", None, 3600)
        await seed_login(token_store, expires_at=NOW)

        await provider.grant_access_token()

        account = await token_store.get_account()
        assert account is not None
        assert account.refresh_token == "R1"

    @pytest.mark.asyncio
    async def test_refresh_failure(
        self,
        provider: WisdomAuthenticationProvider,
        token_store: TokenStore,
        service_client: AsyncMock,
        notifier: RecordingNotifier,
    ) -> None:
        """A failed refresh reports the error and leaves the records untouched."""
        service_client.refresh.side_effect = TransportError(
            "An unexpected error occurred", status_code=400
        )
        seeded = await seed_login(token_store, expires_at=NOW + 5)
        events = _record_events(provider)

        assert await provider.grant_access_token() is None

        notifier.show_error_message.assert_awaited_once_with(
            "Failed to refresh token. Please log out and log in again"
        )
        account = await token_store.get_account()
        assert account is not None
        assert account.access_token == "T1"
        assert await token_store.get_sessions() == [seeded]
        assert events == []
        assert provider.flow_state == AuthFlowState.IDLE

    @pytest.mark.asyncio
    async def test_session_without_account(
        self, provider: WisdomAuthenticationProvider, token_store: TokenStore
    ) -> None:
        """A session with no backing account is an inconsistency."""
        await seed_login(token_store)
        await token_store.delete_account()

        with pytest.raises(InconsistencyError, match="Unable to fetch account"):
            await provider.grant_access_token()

    @pytest.mark.asyncio
    async def test_stale_session_token_resynced(
        self, provider: WisdomAuthenticationProvider, token_store: TokenStore
    ) -> None:
        """A session lagging behind its account is re-derived from the account."""
        await seed_login(token_store, session_token="T0")
        events = _record_events(provider)

        assert await provider.grant_access_token() == "T1"

        (session,) = await token_store.get_sessions()
        assert session.access_token == "T1"
        assert events == [SessionChangeEvent(changed=(session,))]

    @pytest.mark.asyncio
    async def test_concurrent_refresh_stays_consistent(
        self,
        provider: WisdomAuthenticationProvider,
        token_store: TokenStore,
    ) -> None:
        """Concurrent grants near expiry leave the session matching the account."""
        await seed_login(token_store, expires_at=NOW + 5)

        results = await asyncio.gather(provider.grant_access_token(), provider.grant_access_token())

        assert results == ["T2", "T2"]
        account = await token_store.get_account()
        (session,) = await token_store.get_sessions()
        assert account is not None
        assert session.access_token == account.access_token


# ── Logout ──────────────────────────────────────────────────────────


class TestRemoveSession:
    """Tests for logout."""

    @pytest.mark.asyncio
    async def test_unknown_id_is_noop(
        self, provider: WisdomAuthenticationProvider, token_store: TokenStore
    ) -> None:
        """Removing an unknown id changes nothing and fires nothing."""
        seeded = await seed_login(token_store)
        events = _record_events(provider)

        with (
            patch.object(token_store.storage, "store", AsyncMock()) as store_spy,
            patch.object(token_store.storage, "delete", AsyncMock()) as delete_spy,
        ):
            await provider.remove_session("does-not-exist")

        store_spy.assert_not_awaited()
        delete_spy.assert_not_awaited()
        assert await token_store.get_sessions() == [seeded]
        assert events == []

    @pytest.mark.asyncio
    async def test_empty_store_is_noop(
        self, provider: WisdomAuthenticationProvider, token_store: TokenStore
    ) -> None:
        """Logout with nothing persisted writes nothing."""
        await provider.remove_session("session-1")
        assert await token_store.storage.get(token_store.sessions_key) is None

    @pytest.mark.asyncio
    async def test_removes_session_and_account(
        self, provider: WisdomAuthenticationProvider, token_store: TokenStore
    ) -> None:
        """Removing the current session clears both records."""
        seeded = await seed_login(token_store)
        events = _record_events(provider)

        await provider.remove_session(seeded.id)

        assert await token_store.get_sessions() == []
        assert await token_store.get_account() is None
        assert events == [SessionChangeEvent(removed=(seeded,))]
        assert provider.flow_state == AuthFlowState.LOGGED_OUT

    @pytest.mark.asyncio
    async def test_account_delete_failure_still_reports_removal(
        self,
        provider_factory: Callable[..., WisdomAuthenticationProvider],
    ) -> None:
        """Once the session is gone from storage, observers hear about it."""
        storage = FailingSecretStorage()
        store = TokenStore(storage)
        seeded = await seed_login(store)
        storage.fail_delete.add(store.account_key)
        provider = provider_factory(token_store=store)
        events = _record_events(provider)

        with pytest.raises(StorageError):
            await provider.remove_session(seeded.id)

        assert await store.get_sessions() == []
        assert events == [SessionChangeEvent(removed=(seeded,))]
        assert provider.flow_state == AuthFlowState.LOGGED_OUT
        assert await provider.get_session() is None

    @pytest.mark.asyncio
    async def test_login_after_logout(
        self, provider: WisdomAuthenticationProvider, token_store: TokenStore
    ) -> None:
        """A full login, logout, login cycle ends with one fresh session."""
        first = await provider.create_session()
        await provider.remove_session(first.id)
        second = await provider.create_session()

        assert await token_store.get_sessions() == [second]
        assert await provider.grant_access_token() == "T1"


# ── Lifecycle ───────────────────────────────────────────────────────


class TestProviderLifecycle:
    """Tests for provider construction and shutdown."""

    @pytest.mark.asyncio
    async def test_aclose_drops_listeners(
        self, provider_factory: Callable[..., WisdomAuthenticationProvider]
    ) -> None:
        """Closing the provider drops every session listener."""
        async with provider_factory(service_client=None) as provider:
            _record_events(provider)
            assert provider.on_did_change_sessions.listener_count == 1

        assert provider.on_did_change_sessions.listener_count == 0

    def test_default_store_is_memory(self, service_settings: WisdomServiceSettings) -> None:
        """Without a store or storage the provider keeps records in memory."""
        provider = WisdomAuthenticationProvider(REDIRECT_URI, settings=service_settings)

        assert isinstance(provider.token_store.storage, MemorySecretStorage)
        assert provider.flow_state == AuthFlowState.IDLE
